"""
Level Signal Engine

Turns the latest underlying price and the day's pivot levels into a signal:

1. Price in [TC, TC + buffer]          -> BUY / CE  (breakout above the range)
2. Price in [BC - buffer, BC]          -> SELL / PE (breakdown below the range)
3. BC < price < TC                     -> EXIT      (inside the central range)
4. Price just past an R/S level, within the buffer band, overrides the
   direction (evaluated after the central range, so it wins)
5. Nothing fired and the latest candle crossed any level strictly
   -> directional exit for the side the move goes against

Once a direction is chosen, the at-the-money strike is shifted away from the
money by the configured offset.
"""

from dataclasses import dataclass
from typing import Optional

from cprtrader.core.config import TradingSettings, settings
from cprtrader.schemas.trading import OptionType, PivotLevelSet, PriceSample, Signal, SignalKind


@dataclass(frozen=True)
class SignalRules:
    """Rule precedence and strike selection parameters."""
    secondary_levels_override: bool = True
    crossover_exits: bool = True
    strike_step: int = 100
    strike_offset: int = 400
    midpoint_rounds_up: bool = False

    @classmethod
    def from_settings(cls, trading: Optional[TradingSettings] = None, interval: Optional[str] = None) -> "SignalRules":
        trading = trading or settings.trading
        interval = interval or settings.kite.candle_interval
        return cls(
            secondary_levels_override=trading.secondary_levels_override,
            crossover_exits=trading.crossover_exits,
            midpoint_rounds_up=trading.midpoint_rounds_up,
            strike_step=trading.strike_step,
            strike_offset=trading.strike_offset(interval),
        )


class LevelSignalEngine:
    """Stateless CPR/pivot signal derivation."""

    def __init__(self, rules: Optional[SignalRules] = None):
        self.rules = rules or SignalRules()

    def atm_strike(self, price: float) -> int:
        """Round the price to the strike grid; only a remainder above half a step rounds up."""
        step = self.rules.strike_step
        base = int(price // step) * step
        remainder = price - base
        half = step / 2
        if remainder > half or (self.rules.midpoint_rounds_up and remainder == half):
            base += step
        return base

    def target_strike(self, price: float, direction: OptionType) -> int:
        """Out-of-the-money strike for the direction."""
        atm = self.atm_strike(price)
        if direction == OptionType.CE:
            return atm + self.rules.strike_offset
        return atm - self.rules.strike_offset

    def derive_signal(
        self,
        price: float,
        levels: PivotLevelSet,
        previous: Optional[float] = None,
    ) -> Signal:
        """
        Derive the signal for one price observation.

        Args:
            price: Current underlying price
            levels: Day's pivot levels
            previous: Previous sample (open of the latest candle) for
                crossover exits; crossover rules are skipped without it

        Returns:
            Signal with direction and target strike when an entry fired
        """
        buffer = levels.buffer
        kind = SignalKind.NONE
        direction: Optional[OptionType] = None
        reason = ""

        if levels.tc <= price <= levels.tc + buffer:
            kind, direction, reason = SignalKind.BUY, OptionType.CE, "breakout above TC"
        elif levels.bc - buffer <= price <= levels.bc:
            kind, direction, reason = SignalKind.SELL, OptionType.PE, "breakdown below BC"
        elif levels.bc < price < levels.tc:
            kind, direction, reason = SignalKind.EXIT, None, "inside central range"

        if self.rules.secondary_levels_override or kind == SignalKind.NONE:
            for name, level in levels.secondary_levels().items():
                if level < price <= level + buffer:
                    kind, direction, reason = SignalKind.BUY, OptionType.CE, f"above {name.upper()}"
                elif level - buffer <= price < level:
                    kind, direction, reason = SignalKind.SELL, OptionType.PE, f"below {name.upper()}"

        if kind == SignalKind.NONE and self.rules.crossover_exits and previous is not None:
            crossover = self._crossover_exit(previous, price, levels)
            if crossover is not None:
                return crossover

        if direction is None:
            return Signal(kind=kind, reason=reason, price=price)

        return Signal(
            kind=kind,
            direction=direction,
            reason=reason,
            price=price,
            target_strike=self.target_strike(price, direction),
        )

    def derive_from_sample(self, sample: PriceSample, levels: PivotLevelSet) -> Signal:
        return self.derive_signal(sample.close, levels, previous=sample.open)

    @staticmethod
    def _crossover_exit(previous: float, price: float, levels: PivotLevelSet) -> Optional[Signal]:
        for name, level in levels.extended_levels().items():
            if previous < level < price:
                # Rally through a level invalidates puts
                return Signal(
                    kind=SignalKind.DIRECTIONAL_EXIT,
                    direction=OptionType.PE,
                    reason=f"crossed above {name.upper()}",
                    price=price,
                )
            if previous > level > price:
                return Signal(
                    kind=SignalKind.DIRECTIONAL_EXIT,
                    direction=OptionType.CE,
                    reason=f"crossed below {name.upper()}",
                    price=price,
                )
        return None
