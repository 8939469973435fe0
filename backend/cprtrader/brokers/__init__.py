"""
Broker Integrations
CPR Options Trader

Trading Brokers:
    - AngelOneBroker: order routing, LTP, positions and funds per credential
    - PaperBroker: in-memory fills for paper trading

Market Data:
    - KiteCandleFeed: underlying candles through the admin Kite key

BrokerFactory hands the orchestrator one broker per credential and shares a
single HTTP session between them.
"""

from typing import Dict, Optional

import aiohttp

from cprtrader.brokers.angelone import AngelOneBroker
from cprtrader.brokers.base import BaseBroker
from cprtrader.brokers.kite import KiteCandleFeed
from cprtrader.brokers.paper import PaperBroker
from cprtrader.core.config import settings
from cprtrader.schemas.trading import Credential


class BrokerFactory:
    """Builds brokers for credentials in the configured trading mode."""

    def __init__(self, mode: Optional[str] = None):
        self.mode = mode or settings.trading.mode
        self._session: Optional[aiohttp.ClientSession] = None
        self._paper: Dict[int, PaperBroker] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=settings.angel.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def for_credential(self, credential: Credential) -> BaseBroker:
        if self.mode == "PAPER":
            if credential.id not in self._paper:
                self._paper[credential.id] = PaperBroker(available_cash=credential.balance or 100000.0)
            return self._paper[credential.id]

        return AngelOneBroker(
            access_token=credential.access_token,
            api_key=credential.api_key,
            session=await self._get_session(),
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


__all__ = [
    "BaseBroker",
    "AngelOneBroker",
    "PaperBroker",
    "KiteCandleFeed",
    "BrokerFactory",
]
