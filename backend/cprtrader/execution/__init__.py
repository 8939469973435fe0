"""
Execution Package
CPR Options Trader

Contract resolution, signal derivation, sizing, risk, the per-credential
trade lifecycle and the tick scheduler that drives them.
"""

from cprtrader.execution.instrument_resolver import InstrumentResolver, UnderlyingPolicy
from cprtrader.execution.lifecycle import TradeLifecycleController
from cprtrader.execution.position_sizing import PositionSizer, PositionSizeResult
from cprtrader.execution.risk import RiskGuard
from cprtrader.execution.signals import LevelSignalEngine, SignalRules

__all__ = [
    "InstrumentResolver",
    "UnderlyingPolicy",
    "LevelSignalEngine",
    "SignalRules",
    "PositionSizer",
    "PositionSizeResult",
    "RiskGuard",
    "TradeLifecycleController",
]
