"""
Kite Connect Candle Feed

Reads the underlying index candles with the admin (market data) key. Only the
latest candle is used: its open is the previous sample and its close the
current price.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, List, Optional

import aiohttp
from loguru import logger

from cprtrader.core.config import KiteSettings, settings
from cprtrader.core.errors import MarketDataUnavailable
from cprtrader.schemas.trading import PriceSample


class KiteCandleFeed:
    """Historical candle client for the underlying."""

    def __init__(
        self,
        api_key: str,
        access_token: str,
        session: Optional[aiohttp.ClientSession] = None,
        config: Optional[KiteSettings] = None,
    ):
        self.api_key = api_key
        self.access_token = access_token
        self.config = config or settings.kite
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    @staticmethod
    def format_time(moment: datetime) -> str:
        """Kite expects exchange-local wall time truncated to the minute."""
        return moment.strftime("%Y-%m-%d %H:%M:00")

    async def get_candles(
        self,
        instrument_token: int,
        from_time: datetime,
        to_time: datetime,
        interval: Optional[str] = None,
    ) -> List[List[Any]]:
        """
        Fetch historical candles.

        Returns:
            Raw candle rows: [timestamp, open, high, low, close, volume]
        """
        interval = interval or self.config.candle_interval
        url = f"{self.config.base_url}/instruments/historical/{instrument_token}/{interval}"
        params = {
            "from": self.format_time(from_time),
            "to": self.format_time(to_time),
            "continuous": "false",
        }
        headers = {
            "X-Kite-Version": self.config.api_version,
            "Authorization": f"token {self.api_key}:{self.access_token}",
        }

        session = await self._get_session()
        try:
            async with session.get(url, params=params, headers=headers) as response:
                if response.status != 200:
                    body = await response.text()
                    raise MarketDataUnavailable(
                        f"Kite candles failed with HTTP {response.status}",
                        context={"token": instrument_token, "body": body[:500]},
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MarketDataUnavailable(f"Kite candles request error: {e}") from e

        candles = ((payload or {}).get("data") or {}).get("candles")
        return candles if isinstance(candles, list) else []

    async def latest_sample(self, instrument_token: int, now: datetime) -> PriceSample:
        """Latest candle of the underlying as a price sample."""
        from_time = now - timedelta(minutes=self.config.lookback_minutes)
        candles = await self.get_candles(instrument_token, from_time, now)
        if not candles:
            raise MarketDataUnavailable("No candle data available", context={"token": instrument_token})

        latest = candles[-1]
        try:
            sample = PriceSample(open=float(latest[1]), close=float(latest[4]))
        except (IndexError, TypeError, ValueError) as e:
            raise MarketDataUnavailable(f"Invalid candle: {latest}") from e

        logger.debug(f"Underlying {instrument_token}: open={sample.open} close={sample.close}")
        return sample
