"""
Trading Orchestrator

Runs one tick's worth of trading work:

    signal  = LevelSignalEngine(latest candle, day's levels)
    contract = InstrumentResolver(underlying, target strike, direction)   # once
    for each active credential (isolated):
        balance -> P&L -> RiskGuard            # every evaluation
        LTP -> PositionSizer -> controller     # decision window only

Failures for one credential are logged with the credential id, signal and
attempted step, counted in the report, and never stop the other credentials.

Usage:
    orchestrator = TradingOrchestrator(brokers, resolver, engine, sizer, guard, controller, store)
    report = await orchestrator.run_cycle(context, sample, now, decide=True)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from loguru import logger

from cprtrader.brokers import BrokerFactory
from cprtrader.brokers.base import BaseBroker
from cprtrader.core.errors import ErrorCategory, TradingError
from cprtrader.execution.context import TradingContext
from cprtrader.execution.instrument_resolver import InstrumentResolver
from cprtrader.execution.lifecycle import TradeLifecycleController
from cprtrader.execution.position_sizing import PositionSizer
from cprtrader.execution.risk import RiskGuard
from cprtrader.execution.signals import LevelSignalEngine
from cprtrader.schemas.trading import (
    Credential,
    PnLSnapshot,
    PriceSample,
    ResolvedContract,
    Signal,
    TransitionOutcome,
)
from cprtrader.services.stores import CredentialStore


@dataclass
class CycleReport:
    """What one tick did."""
    started_at: datetime
    signal: Optional[Signal] = None
    contract: Optional[ResolvedContract] = None
    decided: bool = False
    outcomes: List[TransitionOutcome] = field(default_factory=list)
    skipped: Dict[int, str] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def order_count(self) -> int:
        return sum(len(o.orders) for o in self.outcomes)


@dataclass
class LiquidationReport:
    closed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class TradingOrchestrator:
    """Wires the signal, sizing, risk and lifecycle components per tick."""

    def __init__(
        self,
        brokers: BrokerFactory,
        resolver: InstrumentResolver,
        engine: LevelSignalEngine,
        sizer: PositionSizer,
        guard: RiskGuard,
        controller: TradeLifecycleController,
        credentials: CredentialStore,
    ):
        self.brokers = brokers
        self.resolver = resolver
        self.engine = engine
        self.sizer = sizer
        self.guard = guard
        self.controller = controller
        self.credentials = credentials

    # =========================================================================
    # Tick body
    # =========================================================================

    async def run_cycle(
        self,
        context: TradingContext,
        sample: PriceSample,
        now: datetime,
        decide: bool = True,
    ) -> CycleReport:
        """
        Evaluate one price sample for every active credential.

        Args:
            context: Ready per-day context (levels and underlying loaded)
            sample: Latest candle of the underlying
            now: Exchange-local time of the tick
            decide: Whether orders may be placed for signals this tick; risk
                checks run regardless

        Returns:
            CycleReport with per-credential outcomes, skips and errors
        """
        report = CycleReport(started_at=now, decided=decide)
        report.signal = self.engine.derive_from_sample(sample, context.levels)
        logger.debug(f"Signal at {sample.close}: {report.signal.describe()} ({report.signal.reason})")

        if decide and report.signal.is_entry:
            report.contract = self.resolver.resolve(
                context.asset.name,
                report.signal.target_strike,
                report.signal.direction,
                not_before=now.date(),
            )
            if report.contract is None:
                logger.bind(category=ErrorCategory.RESOLUTION_MISS.value).warning(
                    f"No contract for {context.asset.name} {report.signal.target_strike} "
                    f"{report.signal.direction.value}"
                )

        for credential in context.active_credentials():
            try:
                outcome = await self._process_credential(credential, context, report)
            except TradingError as e:
                report.errors[credential.id] = e.message
                logger.bind(
                    credential_id=credential.id,
                    category=e.category.value,
                    signal=report.signal.describe(),
                    context=e.context,
                ).warning(f"Credential {credential.id} skipped: {e.message}")
                continue
            except Exception as e:
                report.errors[credential.id] = str(e)
                logger.bind(credential_id=credential.id, signal=report.signal.describe()).exception(
                    f"Unexpected error for credential {credential.id}: {e}"
                )
                continue

            if outcome is not None:
                report.outcomes.append(outcome)

        return report

    async def _process_credential(
        self,
        credential: Credential,
        context: TradingContext,
        report: CycleReport,
    ) -> Optional[TransitionOutcome]:
        broker = await self.brokers.for_credential(credential)
        balance = await self._balance(credential, broker)
        if balance <= 0:
            report.skipped[credential.id] = "no balance"
            return None

        pnl = PnLSnapshot.from_positions(await broker.get_positions())
        verdict = self.guard.evaluate(pnl.total, balance)
        if verdict.breach:
            return await self.controller.on_risk_breach(credential, broker, verdict.reason)

        signal = report.signal
        if not report.decided or signal.event is None:
            return None

        quantity = 0
        if signal.is_entry:
            if report.contract is None:
                report.skipped[credential.id] = "resolution miss"
                return None
            ltp = await broker.get_ltp(report.contract.ref)
            quantity = self.sizer.size(self.sizer.usable_capital(balance), ltp, report.contract.lot_size)
            if quantity <= 0:
                report.skipped[credential.id] = "quantity is zero"
                logger.info(
                    f"Credential {credential.id}: cannot size {report.contract.trading_symbol} "
                    f"at {ltp} with balance {balance}"
                )
                return None

        return await self.controller.on_signal(
            credential,
            broker,
            signal,
            contract=report.contract,
            quantity=quantity,
            asset_id=context.asset.id if context.asset else None,
        )

    @staticmethod
    async def _balance(credential: Credential, broker: BaseBroker) -> float:
        """Stored balance, else the broker's available cash."""
        if credential.balance:
            return float(credential.balance)
        funds = await broker.get_funds()
        return funds.available_cash

    # =========================================================================
    # Forced close
    # =========================================================================

    async def flatten(self, credentials: Iterable[Credential], reason: str) -> LiquidationReport:
        """Force-close and deactivate each credential; failures stay active."""
        report = LiquidationReport()
        for credential in credentials:
            try:
                broker = await self.brokers.for_credential(credential)
                outcome = await self.controller.force_close(credential, broker, reason)
            except Exception as e:
                report.failed.append(credential.id)
                logger.bind(credential_id=credential.id, action="force_close").exception(
                    f"Force close failed for credential {credential.id}: {e}"
                )
                continue

            if outcome.deactivated:
                report.closed.append(credential.id)
            else:
                report.failed.append(credential.id)
        return report

    async def liquidate(self, credential_id: Optional[int] = None, reason: str = "operator stop") -> LiquidationReport:
        """Operator command: flatten every active credential, or the named one."""
        if credential_id is None:
            targets = await self.credentials.list_active()
        else:
            credential = await self.credentials.get(credential_id)
            targets = [credential] if credential else []

        logger.warning(f"Liquidating {len(targets)} credential(s): {reason}")
        return await self.flatten(targets, reason)
