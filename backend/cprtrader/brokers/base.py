from abc import ABC, abstractmethod
from typing import List

from cprtrader.schemas.broker import Funds, OrderRequest, OrderResponse
from cprtrader.schemas.trading import BrokerPosition, ContractRef


class BaseBroker(ABC):
    """
    Abstract Base Class for all Broker implementations.
    Ensures a unified interface for the trading orchestrator.

    Failures surface as exceptions from cprtrader.core.errors; a method that
    returns normally has succeeded.
    """

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """Place a new order. Raises OrderPlacementError when not accepted."""
        pass

    @abstractmethod
    async def get_ltp(self, contract: ContractRef) -> float:
        """Last traded price. Raises MarketDataUnavailable."""
        pass

    @abstractmethod
    async def get_positions(self) -> List[BrokerPosition]:
        """Fetch today's positions with realized/unrealized P&L."""
        pass

    @abstractmethod
    async def get_funds(self) -> Funds:
        """Fetch available cash."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
