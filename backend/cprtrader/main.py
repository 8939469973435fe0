"""
CPR Options Trader - FastAPI Application
Main entry point with lifecycle management.

Service Architecture:
    InstrumentCatalog (daily scrip master)
        ↓
    TickScheduler (one tick per second, single flight)
        ↓
    TradingOrchestrator (signal → risk → sizing per credential)
        ↓
    TradeLifecycleController (orders + trade log)
        ↓
    BrokerFactory (Angel One or paper broker per credential)
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from cprtrader import __version__
from cprtrader.api import api_router
from cprtrader.brokers import BrokerFactory
from cprtrader.core.config import settings
from cprtrader.core.logging import setup_logging
from cprtrader.execution.context import ContextLoader
from cprtrader.execution.instrument_resolver import InstrumentResolver
from cprtrader.execution.lifecycle import TradeLifecycleController
from cprtrader.execution.orchestrator import TradingOrchestrator
from cprtrader.execution.position_sizing import PositionSizer
from cprtrader.execution.risk import RiskGuard
from cprtrader.execution.scheduler import TickScheduler
from cprtrader.execution.signals import LevelSignalEngine, SignalRules
from cprtrader.services.instrument_catalog import InstrumentCatalog
from cprtrader.services.stores import CredentialStore, MarketContextStore, TradeStore


# =============================================================================
# Service Registry
# =============================================================================

class ServiceRegistry:
    """Builds and owns the trading components."""

    def __init__(self):
        self.catalog: Optional[InstrumentCatalog] = None
        self.brokers: Optional[BrokerFactory] = None
        self.orchestrator: Optional[TradingOrchestrator] = None
        self.scheduler: Optional[TickScheduler] = None
        self._uses_database = False

    def initialize(
        self,
        trades: Optional[TradeStore] = None,
        credentials: Optional[CredentialStore] = None,
        market: Optional[MarketContextStore] = None,
        catalog: Optional[InstrumentCatalog] = None,
        brokers: Optional[BrokerFactory] = None,
    ) -> None:
        """Wire components; stores default to the database repositories."""
        if trades is None or credentials is None or market is None:
            from cprtrader.db.repositories import (
                CredentialRepository,
                MarketContextRepository,
                TradeLogRepository,
            )
            trades = trades or TradeLogRepository()
            credentials = credentials or CredentialRepository()
            market = market or MarketContextRepository()
            self._uses_database = True

        trading = settings.trading
        self.catalog = catalog or InstrumentCatalog()
        self.brokers = brokers or BrokerFactory()
        self.orchestrator = TradingOrchestrator(
            brokers=self.brokers,
            resolver=InstrumentResolver(self.catalog),
            engine=LevelSignalEngine(SignalRules.from_settings(trading)),
            sizer=PositionSizer(usable_capital_pct=trading.usable_capital_pct),
            guard=RiskGuard.from_settings(trading),
            controller=TradeLifecycleController(trades, credentials),
            credentials=credentials,
        )
        self.scheduler = TickScheduler(
            orchestrator=self.orchestrator,
            loader=ContextLoader(market, credentials, trading.credential_refresh_seconds),
            catalog=self.catalog,
            trading=trading,
        )
        logger.info(f"Trading services initialized ({trading.mode} mode)")

    async def start(self) -> None:
        if self._uses_database:
            from cprtrader.db.session import init_db
            await init_db()
            logger.info("✓ Database tables ready")

        if not await self.catalog.load():
            logger.warning("⚠ Instrument catalog unavailable, resolutions will miss until a refresh succeeds")
        else:
            logger.info(f"✓ Instrument catalog loaded ({self.catalog.size} rows)")

        self.scheduler.start()

    async def stop(self) -> None:
        if self.scheduler:
            await self.scheduler.stop()
        if self.brokers:
            await self.brokers.close()
        if self.catalog:
            await self.catalog.close()
        if self._uses_database:
            from cprtrader.db.session import close_db
            await close_db()


services = ServiceRegistry()


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info(f"Starting {settings.PROJECT_NAME} v{__version__}")
    logger.info(f"Environment: {settings.ENVIRONMENT}, mode: {settings.trading.mode}")
    logger.info("=" * 60)

    if services.scheduler is None:
        services.initialize()
    app.state.services = services
    await services.start()

    yield

    logger.info("Shutting down...")
    await services.stop()
    logger.info("Shutdown complete")


def create_application() -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        version=__version__,
        lifespan=lifespan,
    )
    application.state.services = services
    application.include_router(api_router)
    return application


app = create_application()


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "cprtrader.main:app",
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
