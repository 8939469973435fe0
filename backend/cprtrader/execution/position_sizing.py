"""
Position Sizing Module

Lot-based sizing for option buying:

    usable capital = balance * usable_capital_pct / 100
    quantity       = floor(usable / (ltp * lot_size)) * lot_size

A quantity of zero means "cannot size, skip the entry"; it is never sent to
the broker.

Usage:
    sizer = PositionSizer(usable_capital_pct=Decimal("10"))
    result = sizer.calculate(balance=200000, last_traded_price=120.5, lot_size=75)
"""

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any, Dict, Optional, Union

from loguru import logger

Number = Union[int, float, Decimal]


@dataclass
class PositionSizeResult:
    """Result of position sizing calculation."""
    quantity: int
    lots: int
    position_value: Decimal
    usable_capital: Decimal
    calculation_details: Dict[str, Any]

    @property
    def can_trade(self) -> bool:
        return self.quantity > 0


class PositionSizer:
    """Converts capital and contract price into a lot-multiple quantity."""

    def __init__(self, usable_capital_pct: Number = Decimal("10")):
        self.usable_capital_pct = _to_decimal(usable_capital_pct) or Decimal("0")

    def usable_capital(self, balance: Optional[Number]) -> Decimal:
        """Configured share of the balance available for one entry."""
        balance_dec = _to_decimal(balance)
        if balance_dec is None or balance_dec <= 0:
            return Decimal("0")
        return balance_dec * self.usable_capital_pct / Decimal("100")

    def size(
        self,
        usable_capital: Optional[Number],
        last_traded_price: Optional[Number],
        lot_size: Optional[int],
    ) -> int:
        """
        Quantity affordable with the usable capital.

        Returns:
            A multiple of lot_size, or 0 when price, lot size or capital is
            missing or non-positive
        """
        capital = _to_decimal(usable_capital)
        price = _to_decimal(last_traded_price)
        if capital is None or price is None or not lot_size:
            return 0
        if capital <= 0 or price <= 0 or lot_size <= 0:
            return 0

        lots = (capital / (price * lot_size)).to_integral_value(rounding=ROUND_DOWN)
        return int(lots) * int(lot_size)

    def calculate(
        self,
        balance: Optional[Number],
        last_traded_price: Optional[Number],
        lot_size: int,
    ) -> PositionSizeResult:
        """Size from the raw balance, with details for logging."""
        usable = self.usable_capital(balance)
        quantity = self.size(usable, last_traded_price, lot_size)
        price = _to_decimal(last_traded_price) or Decimal("0")

        result = PositionSizeResult(
            quantity=quantity,
            lots=quantity // lot_size if lot_size else 0,
            position_value=price * quantity,
            usable_capital=usable,
            calculation_details={
                "balance": float(_to_decimal(balance) or 0),
                "usable_capital_pct": float(self.usable_capital_pct),
                "ltp": float(price),
                "lot_size": lot_size,
            },
        )
        if not result.can_trade:
            logger.debug(f"Cannot size entry: {result.calculation_details}")
        return result


def _to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None
