"""
Trading Domain Types
CPR Options Trader

Closed enumerations and value objects shared by the resolver, signal engine,
sizer, risk guard, lifecycle controller and scheduler.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class OptionType(str, Enum):
    """Option side, also the trading direction."""
    CE = "CE"
    PE = "PE"

    @property
    def opposite(self) -> "OptionType":
        return OptionType.PE if self is OptionType.CE else OptionType.CE


class SignalKind(str, Enum):
    """Signal produced by the level engine."""
    NONE = "none"
    BUY = "buy"                            # Go long calls
    SELL = "sell"                          # Go long puts
    EXIT = "exit"                          # Close whatever is open
    DIRECTIONAL_EXIT = "directional_exit"  # Close only the given direction


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class PositionState(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class TradeEvent(str, Enum):
    """Lifecycle events fed to the controller."""
    ENTER = "enter"
    EXIT = "exit"
    DIRECTIONAL_EXIT = "directional_exit"
    RISK_BREACH = "risk_breach"
    FORCED_CLOSE = "forced_close"


class TradeAction(str, Enum):
    """What the controller decided to do."""
    NOOP = "noop"
    ENTER = "enter"
    EXIT = "exit"
    FLIP = "flip"
    DEACTIVATE = "deactivate"


class MarketPhase(str, Enum):
    """Calendar-driven scheduler state."""
    CLOSED = "closed"
    PRE_OPEN = "pre_open"
    ACTIVE = "active"
    FORCE_FLAT = "force_flat"


# =============================================================================
# Catalog & Contracts
# =============================================================================

@dataclass(frozen=True)
class InstrumentCatalogRow:
    """One raw scrip master record. Strike is kept as the catalog encodes it."""
    name: str
    trading_symbol: str
    exchange_segment: str
    instrument_type: str
    strike: float
    expiry: str
    lot_size: int
    tick_size: float
    token: str
    strike_scale: int = 1

    def __post_init__(self):
        if not self.token or not self.trading_symbol:
            raise ValueError("catalog row needs a token and a trading symbol")
        if self.lot_size <= 0:
            raise ValueError(f"lot size must be positive, got {self.lot_size}")

    @classmethod
    def from_angel(cls, data: Dict[str, Any]) -> "InstrumentCatalogRow":
        """Parse an Angel One scrip master entry (strike encoded x100)."""
        return cls(
            name=str(data.get("name") or "").strip().upper(),
            trading_symbol=str(data.get("symbol") or "").strip().upper(),
            exchange_segment=str(data.get("exch_seg") or "").strip().upper(),
            instrument_type=str(data.get("instrumenttype") or "").strip().upper(),
            strike=_to_float(data.get("strike")),
            expiry=str(data.get("expiry") or "").strip().upper(),
            lot_size=_to_lot(data.get("lotsize")),
            tick_size=_to_float(data.get("tick_size")),
            token=str(data.get("token") or ""),
            strike_scale=100,
        )


@dataclass(frozen=True)
class ContractRef:
    """Structured reference to a traded contract."""
    exchange: str
    trading_symbol: str
    token: str


@dataclass(frozen=True)
class ResolvedContract:
    """Tradable contract picked from the catalog for one decision."""
    exchange: str
    trading_symbol: str
    token: str
    lot_size: int
    strike: float
    option_type: OptionType
    expiry: Optional[date] = None

    @property
    def ref(self) -> ContractRef:
        return ContractRef(self.exchange, self.trading_symbol, self.token)


# =============================================================================
# Levels & Signals
# =============================================================================

@dataclass(frozen=True)
class PivotLevelSet:
    """Central pivot range plus support/resistance levels for one day."""
    bc: float
    tc: float
    r1: float
    r2: float
    r3: float
    r4: float
    s1: float
    s2: float
    s3: float
    s4: float
    buffer: float
    for_day: Optional[date] = None

    def secondary_levels(self) -> Dict[str, float]:
        return {
            "r1": self.r1, "r2": self.r2, "r3": self.r3, "r4": self.r4,
            "s1": self.s1, "s2": self.s2, "s3": self.s3, "s4": self.s4,
        }

    def extended_levels(self) -> Dict[str, float]:
        return {"tc": self.tc, "bc": self.bc, **self.secondary_levels()}


@dataclass(frozen=True)
class PriceSample:
    """Latest candle of the underlying: open is the previous sample, close the current."""
    open: float
    close: float
    timestamp: Optional[datetime] = None

    @property
    def price(self) -> float:
        return self.close


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    direction: Optional[OptionType] = None
    reason: str = ""
    price: Optional[float] = None
    target_strike: Optional[int] = None

    @property
    def is_entry(self) -> bool:
        return self.kind in (SignalKind.BUY, SignalKind.SELL)

    @property
    def event(self) -> Optional[TradeEvent]:
        """Lifecycle event this signal maps to, None for no action."""
        if self.is_entry:
            return TradeEvent.ENTER
        if self.kind == SignalKind.EXIT:
            return TradeEvent.EXIT
        if self.kind == SignalKind.DIRECTIONAL_EXIT:
            return TradeEvent.DIRECTIONAL_EXIT
        return None

    def describe(self) -> str:
        if self.kind == SignalKind.DIRECTIONAL_EXIT and self.direction:
            return f"{self.direction.value} Exit"
        if self.direction:
            return f"{self.kind.value}/{self.direction.value}"
        return self.kind.value


# =============================================================================
# Credentials, Positions & Risk
# =============================================================================

@dataclass
class Credential:
    """Broker key the engine trades for."""
    id: int
    access_token: str
    api_key: str
    balance: Optional[float] = None
    active: bool = True
    user_id: Optional[int] = None
    broker_id: Optional[int] = None


@dataclass
class OpenPosition:
    """Trade log record; state ENTRY means the credential holds it."""
    credential_id: int
    contract: ContractRef
    direction: OptionType
    quantity: int
    state: PositionState = PositionState.ENTRY
    id: Optional[int] = None
    asset_id: Optional[int] = None


@dataclass(frozen=True)
class BrokerPosition:
    """Day position as reported by the broker."""
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    product_type: str = ""
    trading_symbol: str = ""
    net_quantity: int = 0


@dataclass(frozen=True)
class PnLSnapshot:
    realized: float = 0.0
    unrealized: float = 0.0

    @property
    def total(self) -> float:
        return self.realized + self.unrealized

    @classmethod
    def from_positions(cls, positions: List[BrokerPosition]) -> "PnLSnapshot":
        return cls(
            realized=sum(p.realized_pnl for p in positions),
            unrealized=sum(p.unrealized_pnl for p in positions),
        )


@dataclass(frozen=True)
class RiskVerdict:
    breach: bool
    reason: str
    pnl: float
    max_loss: float
    max_profit: float


@dataclass(frozen=True)
class DailyAsset:
    """Underlying chosen for the day."""
    id: int
    name: str
    market_data_token: int


# =============================================================================
# Orders & Outcomes
# =============================================================================

@dataclass(frozen=True)
class OrderResult:
    order_id: str
    side: OrderSide
    contract: ContractRef
    quantity: int


@dataclass
class TransitionOutcome:
    """Result of one controller transition for one credential."""
    credential_id: int
    event: Optional[TradeEvent]
    action: TradeAction = TradeAction.NOOP
    orders: List[OrderResult] = field(default_factory=list)
    completed: bool = True
    deactivated: bool = False
    reason: str = ""
    error: Optional[str] = None

    @property
    def order_sides(self) -> List[OrderSide]:
        return [o.side for o in self.orders]


def _to_lot(value: Any) -> int:
    """Lot sizes must be whole numbers; anything else is a malformed row."""
    lot = float(value)
    if not lot.is_integer():
        raise ValueError(f"lot size {value!r} is not a whole number")
    return int(lot)


def _to_float(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0
