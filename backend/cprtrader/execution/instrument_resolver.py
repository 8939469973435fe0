"""
Instrument Resolver

Maps (underlying, strike, option type) to one tradable option contract from
the catalog snapshot. Underlyings are matched through explicit per-family
policies so that sibling indices sharing a name prefix (NIFTY vs NIFTYNXT50,
SENSEX vs SENSEX50) never cross-match. Among matches the nearest parseable
expiry wins.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, Optional, Protocol, Tuple

from loguru import logger

from cprtrader.schemas.trading import InstrumentCatalogRow, OptionType, ResolvedContract


EXPIRY_FORMATS = ("%Y-%m-%d", "%d%b%Y", "%d-%b-%Y")

# Strikes are compared as integers at this fixed-point scale
STRIKE_FIXED_POINT = 100


@dataclass(frozen=True)
class UnderlyingPolicy:
    """Inclusion/exclusion rule for one underlying family."""
    name: str
    exchanges: Tuple[str, ...]
    symbol_prefix: str
    exclude_prefixes: Tuple[str, ...] = ()

    def matches(self, row: InstrumentCatalogRow) -> bool:
        if row.name != self.name:
            return False
        if row.exchange_segment not in self.exchanges:
            return False
        symbol = row.trading_symbol
        if not symbol.startswith(self.symbol_prefix):
            return False
        return not any(symbol.startswith(prefix) for prefix in self.exclude_prefixes)


DEFAULT_POLICIES: Dict[str, UnderlyingPolicy] = {
    "NIFTY": UnderlyingPolicy(
        name="NIFTY",
        exchanges=("NFO",),
        symbol_prefix="NIFTY",
        exclude_prefixes=("NIFTYNXT", "NIFTYMID", "NIFTYFIN", "NIFTYBANK"),
    ),
    "BANKNIFTY": UnderlyingPolicy(name="BANKNIFTY", exchanges=("NFO",), symbol_prefix="BANKNIFTY"),
    "FINNIFTY": UnderlyingPolicy(name="FINNIFTY", exchanges=("NFO",), symbol_prefix="FINNIFTY"),
    "MIDCPNIFTY": UnderlyingPolicy(name="MIDCPNIFTY", exchanges=("NFO",), symbol_prefix="MIDCPNIFTY"),
    "SENSEX": UnderlyingPolicy(
        name="SENSEX",
        exchanges=("BFO",),
        symbol_prefix="SENSEX",
        exclude_prefixes=("SENSEX50",),
    ),
    "BANKEX": UnderlyingPolicy(name="BANKEX", exchanges=("BFO",), symbol_prefix="BANKEX"),
}


class CatalogSource(Protocol):
    @property
    def rows(self) -> Tuple[InstrumentCatalogRow, ...]: ...


def parse_expiry(value: str) -> Optional[date]:
    """Parse ISO (2025-09-23) or compact (23SEP2025) expiry strings."""
    text = (value or "").strip()
    if not text:
        return None
    for fmt in EXPIRY_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_strike(strike: float, scale: int = 1) -> int:
    """Express a strike encoded at `scale` as an integer at the fixed-point scale."""
    return round(float(strike) * STRIKE_FIXED_POINT / scale)


def option_type_of(row: InstrumentCatalogRow) -> Optional[OptionType]:
    """Option type of an options-segment row, None for anything else."""
    inst = row.instrument_type
    if inst in ("CE", "PE"):
        return OptionType(inst)
    if inst.startswith("OPT"):
        for option_type in OptionType:
            if row.trading_symbol.endswith(option_type.value):
                return option_type
    return None


class InstrumentResolver:
    """Resolves option contracts against the current catalog snapshot."""

    def __init__(
        self,
        catalog: CatalogSource,
        policies: Optional[Dict[str, UnderlyingPolicy]] = None,
    ):
        self.catalog = catalog
        self.policies = dict(DEFAULT_POLICIES if policies is None else policies)

    def policy_for(self, underlying: str) -> UnderlyingPolicy:
        base = (underlying or "").strip().upper()
        policy = self.policies.get(base)
        if policy is None:
            # Unlisted underlyings still require an exact name match
            policy = UnderlyingPolicy(name=base, exchanges=("NFO", "BFO"), symbol_prefix=base)
        return policy

    def candidates(
        self,
        underlying: str,
        strike: float,
        option_type: OptionType,
    ) -> Iterable[InstrumentCatalogRow]:
        policy = self.policy_for(underlying)
        target = normalize_strike(strike)
        for row in self.catalog.rows:
            if option_type_of(row) != option_type:
                continue
            if not policy.matches(row):
                continue
            if normalize_strike(row.strike, row.strike_scale) != target:
                continue
            yield row

    def resolve(
        self,
        underlying: str,
        strike: float,
        option_type: OptionType,
        not_before: Optional[date] = None,
    ) -> Optional[ResolvedContract]:
        """
        Resolve one contract.

        Args:
            underlying: Underlying family name (e.g. NIFTY)
            strike: Strike in rupees
            option_type: CE or PE
            not_before: Drop rows whose parseable expiry is earlier than this

        Returns:
            ResolvedContract, or None when nothing matches (including an
            empty catalog). Callers skip the cycle on None.
        """
        option_type = OptionType(option_type)
        ranked = []
        for row in self.candidates(underlying, strike, option_type):
            expiry = parse_expiry(row.expiry)
            if not_before and expiry and expiry < not_before:
                continue
            # Unparsable expiries sort after every parseable one
            ranked.append(((expiry is None, expiry or date.max, row.trading_symbol, row.token), row, expiry))

        if not ranked:
            logger.debug(f"No contract for {underlying} {strike} {option_type.value}")
            return None

        _, chosen, expiry = min(ranked, key=lambda item: item[0])
        return ResolvedContract(
            exchange=chosen.exchange_segment,
            trading_symbol=chosen.trading_symbol,
            token=chosen.token,
            lot_size=chosen.lot_size,
            strike=chosen.strike / chosen.strike_scale,
            option_type=option_type,
            expiry=expiry,
        )
