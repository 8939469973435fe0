import uuid
from typing import Dict, List, Optional

from loguru import logger

from cprtrader.brokers.base import BaseBroker
from cprtrader.core.errors import MarketDataUnavailable
from cprtrader.schemas.broker import Funds, OrderRequest, OrderResponse
from cprtrader.schemas.trading import BrokerPosition, ContractRef


class PaperBroker(BaseBroker):
    """
    In-memory broker for paper trading and tests.
    Fills every order immediately and keeps the order book locally.
    """

    def __init__(
        self,
        available_cash: float = 100000.0,
        default_ltp: Optional[float] = 100.0,
        realized_pnl: float = 0.0,
        unrealized_pnl: float = 0.0,
    ):
        self.available_cash = available_cash
        self.default_ltp = default_ltp
        self.ltps: Dict[str, float] = {}
        self.realized_pnl = realized_pnl
        self.unrealized_pnl = unrealized_pnl
        self.orders: List[OrderRequest] = []

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        order_id = f"PAPER-{uuid.uuid4().hex[:12]}"
        self.orders.append(order)
        logger.info(f"[PAPER] {order.side.value} {order.quantity} {order.trading_symbol} -> {order_id}")
        return OrderResponse(order_id=order_id, message="Paper order filled")

    async def get_ltp(self, contract: ContractRef) -> float:
        ltp = self.ltps.get(contract.token, self.default_ltp)
        if ltp is None:
            raise MarketDataUnavailable("LTP not available", context={"symbol": contract.trading_symbol})
        return ltp

    async def get_positions(self) -> List[BrokerPosition]:
        return [
            BrokerPosition(
                realized_pnl=self.realized_pnl,
                unrealized_pnl=self.unrealized_pnl,
                product_type="INTRADAY",
            )
        ]

    async def get_funds(self) -> Funds:
        return Funds(available_cash=self.available_cash)
