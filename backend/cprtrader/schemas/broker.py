from typing import Optional

from pydantic import BaseModel, Field

from cprtrader.schemas.trading import ContractRef, OrderSide


class OrderRequest(BaseModel):
    exchange: str
    trading_symbol: str
    token: str
    side: OrderSide
    quantity: int = Field(gt=0)
    order_type: str = "MARKET"
    product_type: str = "INTRADAY"
    variety: str = "NORMAL"
    duration: str = "DAY"

    @classmethod
    def market(cls, contract: ContractRef, side: OrderSide, quantity: int) -> "OrderRequest":
        return cls(
            exchange=contract.exchange,
            trading_symbol=contract.trading_symbol,
            token=contract.token,
            side=side,
            quantity=quantity,
        )


class OrderResponse(BaseModel):
    order_id: str
    message: Optional[str] = None


class Funds(BaseModel):
    available_cash: float = 0.0
