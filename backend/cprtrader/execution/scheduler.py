"""
Tick Scheduler

Calendar-driven loop, one tick per second in exchange time:

    CLOSED     -> nothing (weekends, nights)
    PRE_OPEN   -> warm the per-day context
    ACTIVE     -> evaluate signals every N seconds, place orders only in the
                  decision window (first seconds of every 5th minute)
    FORCE_FLAT -> close every open position and deactivate every credential

A tick that starts while the previous one is still in flight is skipped, not
queued. The daily catalog refresh runs as a separate task so a slow download
never holds up a tick.
"""

import asyncio
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from loguru import logger

from cprtrader.brokers.kite import KiteCandleFeed
from cprtrader.core.config import TradingSettings, settings
from cprtrader.core.errors import ContextRefreshError, MarketDataUnavailable
from cprtrader.execution.context import ContextLoader, TradingContext
from cprtrader.execution.orchestrator import CycleReport, LiquidationReport, TradingOrchestrator
from cprtrader.schemas.trading import Credential, MarketPhase
from cprtrader.services.instrument_catalog import InstrumentCatalog

CATALOG_RETRY_SECONDS = 300
CATALOG_CHECK_SECONDS = 30


class SingleFlight:
    """Runs at most one job at a time; calls made while busy are dropped."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.ran = 0
        self.skipped = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, job: Callable[[], Awaitable[Any]]) -> bool:
        if self._lock.locked():
            self.skipped += 1
            return False
        async with self._lock:
            self.ran += 1
            await job()
        return True


def phase_at(now: datetime, trading: TradingSettings) -> MarketPhase:
    """Market phase for an exchange-local time."""
    if now.weekday() >= 5:
        return MarketPhase.CLOSED
    t = now.time()
    if trading.pre_open_start <= t < trading.active_start:
        return MarketPhase.PRE_OPEN
    if trading.active_start <= t < trading.hard_cutoff:
        return MarketPhase.ACTIVE
    if trading.hard_cutoff <= t < trading.session_end:
        return MarketPhase.FORCE_FLAT
    return MarketPhase.CLOSED


class TickScheduler:
    """Drives the orchestrator from wall-clock time."""

    def __init__(
        self,
        orchestrator: TradingOrchestrator,
        loader: ContextLoader,
        catalog: Optional[InstrumentCatalog] = None,
        trading: Optional[TradingSettings] = None,
        feed_factory: Optional[Callable[[Credential], KiteCandleFeed]] = None,
    ):
        self.orchestrator = orchestrator
        self.loader = loader
        self.catalog = catalog
        self.trading = trading or settings.trading
        self.feed_factory = feed_factory or self._default_feed
        self.tz = ZoneInfo(self.trading.timezone)

        self.context = TradingContext()
        self.phase = MarketPhase.CLOSED
        self.last_report: Optional[CycleReport] = None
        self.last_error: Optional[str] = None

        self._guard = SingleFlight()
        self._feeds: Dict[int, KiteCandleFeed] = {}
        self._catalog_refreshed_on: Optional[date] = None
        self._catalog_attempted_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._catalog_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._running = False

    # =========================================================================
    # Clock
    # =========================================================================

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def phase_at(self, now: datetime) -> MarketPhase:
        return phase_at(now, self.trading)

    def is_evaluation_tick(self, now: datetime) -> bool:
        return now.second % self.trading.evaluation_every_seconds == 0

    def in_decision_window(self, now: datetime) -> bool:
        return (
            now.minute % self.trading.decision_every_minutes == 0
            and now.second < self.trading.decision_window_seconds
        )

    @property
    def busy(self) -> bool:
        return self._guard.busy

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """
        Run one tick unless the previous one is still running.

        Returns:
            False when the tick was skipped
        """
        now = now or self.now()
        return await self._guard.run(lambda: self._safe_tick(now))

    async def _safe_tick(self, now: datetime) -> None:
        try:
            await self._tick(now)
        except ContextRefreshError as e:
            self.last_error = e.message
            logger.bind(category=e.category.value, context=e.context).warning(f"Tick aborted: {e.message}")
        except MarketDataUnavailable as e:
            self.last_error = e.message
            logger.bind(category=e.category.value, context=e.context).warning(f"No market data: {e.message}")
        except Exception as e:
            self.last_error = str(e)
            logger.exception(f"Tick failed: {e}")

    async def _tick(self, now: datetime) -> None:
        self.phase = self.phase_at(now)
        if self.phase == MarketPhase.CLOSED:
            return

        if self.phase == MarketPhase.FORCE_FLAT:
            await self.loader.refresh(self.context, now, require_market=False)
            await self._force_flat()
            return

        await self.loader.refresh(self.context, now)
        if self.phase == MarketPhase.PRE_OPEN or not self.is_evaluation_tick(now):
            return

        admin = self.context.market_data_credential
        if admin is None:
            logger.warning("No market data credential, skipping evaluation")
            return

        feed = self._feed_for(admin)
        sample = await feed.latest_sample(self.context.asset.market_data_token, now)
        self.last_report = await self.orchestrator.run_cycle(
            self.context,
            sample,
            now,
            decide=self.in_decision_window(now),
        )
        self.last_error = None

    async def _force_flat(self) -> None:
        credentials = self.context.active_credentials()
        if not credentials:
            return
        report = await self.orchestrator.flatten(credentials, reason="hard cutoff")
        if report.failed:
            logger.warning(f"Hard cutoff: {len(report.failed)} credential(s) still open, retrying next tick")

    # =========================================================================
    # Catalog
    # =========================================================================

    def catalog_refresh_due(self, now: datetime) -> bool:
        if self.catalog is None or now.time() < self.trading.catalog_refresh_at:
            return False
        if self._catalog_refreshed_on == now.date():
            return False
        if self._catalog_attempted_at and (now - self._catalog_attempted_at).total_seconds() < CATALOG_RETRY_SECONDS:
            return False
        return True

    async def refresh_catalog(self, now: Optional[datetime] = None) -> bool:
        """Daily scrip master refresh; failures are retried every CATALOG_RETRY_SECONDS."""
        now = now or self.now()
        if not self.catalog_refresh_due(now):
            return False
        self._catalog_attempted_at = now
        if await self.catalog.refresh():
            self._catalog_refreshed_on = now.date()
            return True
        return False

    async def _catalog_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_catalog()
            except Exception as e:
                logger.exception(f"Catalog refresh failed: {e}")
            await asyncio.sleep(CATALOG_CHECK_SECONDS)

    def _feed_for(self, credential: Credential) -> KiteCandleFeed:
        feed = self._feeds.get(credential.id)
        if feed is None or feed.access_token != credential.access_token:
            feed = self.feed_factory(credential)
            self._feeds[credential.id] = feed
        return feed

    @staticmethod
    def _default_feed(credential: Credential) -> KiteCandleFeed:
        return KiteCandleFeed(api_key=credential.api_key, access_token=credential.access_token)

    # =========================================================================
    # Operator commands
    # =========================================================================

    async def liquidate(self, credential_id: Optional[int] = None) -> LiquidationReport:
        """Flatten now, outside the tick cadence, and keep the context in step."""
        report = await self.orchestrator.liquidate(credential_id)
        closed = set(report.closed)
        for credential in self.context.credentials:
            if credential.id in closed:
                credential.active = False
        return report

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(self) -> None:
        """Fire a tick every interval; slow ticks cause later ones to be skipped."""
        self._running = True
        logger.info(f"Tick scheduler running every {self.trading.tick_interval_seconds}s ({self.trading.mode})")
        while self._running:
            task = asyncio.create_task(self.tick())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await asyncio.sleep(self.trading.tick_interval_seconds)

    def start(self) -> asyncio.Task:
        self._running = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        if self.catalog is not None and (self._catalog_task is None or self._catalog_task.done()):
            self._catalog_task = asyncio.create_task(self._catalog_loop())
        return self._task

    async def stop(self) -> None:
        self._running = False
        for task in (self._task, self._catalog_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        for feed in self._feeds.values():
            await feed.close()
        self._feeds.clear()
        logger.info("Tick scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "busy": self.busy,
            "ticks_run": self._guard.ran,
            "ticks_skipped": self._guard.skipped,
            "catalog_size": self.catalog.size if self.catalog else 0,
            "context": self.context.status(),
            "last_error": self.last_error,
        }
