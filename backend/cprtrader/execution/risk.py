from typing import Optional

from loguru import logger

from cprtrader.core.config import TradingSettings, settings
from cprtrader.schemas.trading import RiskVerdict


class RiskGuard:
    """
    Daily loss cap and profit target per credential.

    Limits are percentages of the balance and are recomputed on every call,
    since the balance may change during the day.
    """

    def __init__(self, max_loss_pct: float = 4.0, max_profit_pct: float = 8.0):
        self.max_loss_pct = max_loss_pct
        self.max_profit_pct = max_profit_pct

    @classmethod
    def from_settings(cls, trading: Optional[TradingSettings] = None) -> "RiskGuard":
        trading = trading or settings.trading
        return cls(max_loss_pct=trading.max_loss_pct, max_profit_pct=trading.max_profit_pct)

    def evaluate(self, pnl: float, balance: float) -> RiskVerdict:
        """
        Check today's P&L against the caps.

        Returns:
            RiskVerdict with breach=True when the loss cap is hit
            (pnl + max_loss <= 0) or the profit target is reached
            (pnl >= max_profit)
        """
        max_loss = balance / 100 * self.max_loss_pct
        max_profit = balance / 100 * self.max_profit_pct

        if pnl + max_loss <= 0:
            reason = f"Max loss reached: pnl {pnl:.2f} <= -{max_loss:.2f}"
        elif pnl >= max_profit:
            reason = f"Profit target reached: pnl {pnl:.2f} >= {max_profit:.2f}"
        else:
            return RiskVerdict(breach=False, reason="", pnl=pnl, max_loss=max_loss, max_profit=max_profit)

        logger.warning(f"Risk breach: {reason}")
        return RiskVerdict(breach=True, reason=reason, pnl=pnl, max_loss=max_loss, max_profit=max_profit)
