"""
Per-day trading context.

The scheduler owns one TradingContext and passes it into every tick. Levels
and the day's underlying are loaded once per day on first need; the active
credential list is reloaded on a coarse cadence so keys activated or
deactivated elsewhere are picked up.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from cprtrader.core.errors import ContextRefreshError
from cprtrader.schemas.trading import Credential, DailyAsset, PivotLevelSet
from cprtrader.services.stores import CredentialStore, MarketContextStore


@dataclass
class TradingContext:
    """Levels, underlying and credentials for one trading day."""
    day: Optional[date] = None
    levels: Optional[PivotLevelSet] = None
    asset: Optional[DailyAsset] = None
    credentials: List[Credential] = field(default_factory=list)
    credentials_refreshed_at: Optional[datetime] = None
    market_data_credential: Optional[Credential] = None

    @property
    def is_ready(self) -> bool:
        return self.levels is not None and self.asset is not None

    def reset(self, day: date) -> None:
        self.day = day
        self.levels = None
        self.asset = None
        self.credentials = []
        self.credentials_refreshed_at = None
        self.market_data_credential = None

    def active_credentials(self) -> List[Credential]:
        return [c for c in self.credentials if c.active]

    def status(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat() if self.day else None,
            "underlying": self.asset.name if self.asset else None,
            "levels_loaded": self.levels is not None,
            "credentials": len(self.active_credentials()),
            "credentials_refreshed_at": (
                self.credentials_refreshed_at.isoformat() if self.credentials_refreshed_at else None
            ),
        }


class ContextLoader:
    """Fills a TradingContext from the stores with the staleness rules above."""

    def __init__(
        self,
        market: MarketContextStore,
        credentials: CredentialStore,
        credential_refresh_seconds: int = 40,
    ):
        self.market = market
        self.credentials = credentials
        self.credential_refresh_seconds = credential_refresh_seconds

    def credentials_stale(self, context: TradingContext, now: datetime) -> bool:
        if context.credentials_refreshed_at is None:
            return True
        elapsed = (now - context.credentials_refreshed_at).total_seconds()
        return elapsed >= self.credential_refresh_seconds

    async def refresh(
        self,
        context: TradingContext,
        now: datetime,
        require_market: bool = True,
    ) -> TradingContext:
        """
        Bring the context up to date for `now`.

        With require_market=False only credentials are needed (force-flat),
        so missing levels or underlying are not an error.

        Raises:
            ContextRefreshError: a store call failed, or no levels or
                underlying exist for the day. The tick is aborted and the
                next one retries.
        """
        day = now.date()
        if context.day != day:
            if context.day is not None:
                logger.info(f"New trading day {day}, dropping context for {context.day}")
            context.reset(day)

        try:
            if context.levels is None:
                context.levels = await self.market.levels_for(day)
                if context.levels:
                    logger.info(f"Loaded levels for {day}: tc={context.levels.tc} bc={context.levels.bc}")

            if context.asset is None:
                context.asset = await self.market.asset_for(now.strftime("%A"))
                if context.asset:
                    logger.info(f"Underlying for {day}: {context.asset.name}")

            if self.credentials_stale(context, now):
                context.credentials = await self.credentials.list_active()
                context.market_data_credential = await self.credentials.market_data_credential()
                context.credentials_refreshed_at = now
                logger.debug(f"Refreshed credentials: {len(context.credentials)} active")
        except Exception as e:
            raise ContextRefreshError(f"Context refresh failed: {e}", context={"day": day.isoformat()}) from e

        if not require_market:
            return context
        if context.levels is None:
            raise ContextRefreshError(f"No levels for {day}", context={"day": day.isoformat()})
        if context.asset is None:
            raise ContextRefreshError(f"No underlying for {now.strftime('%A')}", context={"day": day.isoformat()})

        return context
