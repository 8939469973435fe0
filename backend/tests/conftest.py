"""
Test configuration and shared fixtures for the CPR options trader tests.
"""

from datetime import date, datetime
from itertools import count
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from cprtrader.brokers.base import BaseBroker
from cprtrader.schemas.broker import Funds, OrderResponse
from cprtrader.schemas.trading import (
    Credential,
    DailyAsset,
    InstrumentCatalogRow,
    OptionType,
    PivotLevelSet,
    ResolvedContract,
)
from cprtrader.services.stores import InMemoryStore


# =============================================================================
# Broker Mocks
# =============================================================================

@pytest.fixture
def mock_broker():
    """Create a mock broker that accepts every order."""
    ids = count(1)
    broker = MagicMock(spec=BaseBroker)
    broker.place_order = AsyncMock(side_effect=lambda order: OrderResponse(order_id=f"ORD-{next(ids)}"))
    broker.get_ltp = AsyncMock(return_value=100.0)
    broker.get_positions = AsyncMock(return_value=[])
    broker.get_funds = AsyncMock(return_value=Funds(available_cash=1000000.0))
    broker.close = AsyncMock()
    return broker


@pytest.fixture
def mock_broker_factory(mock_broker):
    """BrokerFactory stand-in that hands out the same mock broker."""
    factory = MagicMock()
    factory.for_credential = AsyncMock(return_value=mock_broker)
    factory.close = AsyncMock()
    return factory


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def ist_timezone():
    return ZoneInfo("Asia/Kolkata")


@pytest.fixture
def trading_day():
    """A Wednesday."""
    return date(2025, 1, 15)


@pytest.fixture
def levels(trading_day):
    return PivotLevelSet(
        bc=23900.0, tc=24000.0,
        r1=24300.0, r2=24600.0, r3=24900.0, r4=25200.0,
        s1=23600.0, s2=23300.0, s3=23000.0, s4=22700.0,
        buffer=20.0,
        for_day=trading_day,
    )


@pytest.fixture
def nifty_asset():
    return DailyAsset(id=1, name="NIFTY", market_data_token=256265)


@pytest.fixture
def credential():
    return Credential(id=7, access_token="jwt-token", api_key="angel-key", balance=200000.0, user_id=3, broker_id=2)


@pytest.fixture
def admin_credential():
    return Credential(id=99, access_token="kite-token", api_key="kite-key", user_id=1, broker_id=1)


@pytest.fixture
def store(credential, admin_credential, levels, nifty_asset, trading_day):
    return InMemoryStore(
        credentials=[credential],
        levels={trading_day: levels},
        assets={"Wednesday": nifty_asset},
        admin=admin_credential,
    )


@pytest.fixture
def ce_contract():
    return ResolvedContract(
        exchange="NFO",
        trading_symbol="NIFTY16JAN2524500CE",
        token="41001",
        lot_size=75,
        strike=24500.0,
        option_type=OptionType.CE,
        expiry=date(2025, 1, 16),
    )


@pytest.fixture
def pe_contract():
    return ResolvedContract(
        exchange="NFO",
        trading_symbol="NIFTY16JAN2523500PE",
        token="41002",
        lot_size=75,
        strike=23500.0,
        option_type=OptionType.PE,
        expiry=date(2025, 1, 16),
    )


def angel_row(symbol, name="NIFTY", strike=24500, expiry="16JAN2025", token="41001", exch="NFO", lot=75):
    """Raw Angel One scrip master entry (strike encoded x100)."""
    return {
        "token": token,
        "symbol": symbol,
        "name": name,
        "expiry": expiry,
        "strike": f"{strike * 100:.6f}",
        "lotsize": str(lot),
        "instrumenttype": "OPTIDX",
        "exch_seg": exch,
        "tick_size": "5.000000",
    }


@pytest.fixture
def scrip_master():
    """Angel One scrip master sample with siblings and several expiries."""
    return [
        angel_row("NIFTY23JAN2524500CE", expiry="23JAN2025", token="41010"),
        angel_row("NIFTY16JAN2524500CE", expiry="16JAN2025", token="41001"),
        angel_row("NIFTY30JAN2524500CE", expiry="30JAN2025", token="41020"),
        angel_row("NIFTY16JAN2524500PE", expiry="16JAN2025", token="41003"),
        angel_row("NIFTY16JAN2523500PE", strike=23500, expiry="16JAN2025", token="41002"),
        angel_row("NIFTYNXT5016JAN2524500CE", name="NIFTYNXT50", expiry="09JAN2025", token="51001", lot=25),
        angel_row("BANKNIFTY16JAN2524500CE", name="BANKNIFTY", expiry="16JAN2025", token="61001", lot=30),
        angel_row("SENSEX17JAN2524500CE", name="SENSEX", expiry="17JAN2025", token="71001", exch="BFO", lot=20),
        {
            "token": "26000", "symbol": "NIFTY", "name": "NIFTY", "expiry": "", "strike": "0.000000",
            "lotsize": "1", "instrumenttype": "AMXIDX", "exch_seg": "NSE", "tick_size": "0.000000",
        },
    ]


@pytest.fixture
def catalog_rows(scrip_master):
    return [InstrumentCatalogRow.from_angel(item) for item in scrip_master]


@pytest.fixture
def market_time(ist_timezone, trading_day):
    """10:05:00 IST on the trading day, inside a decision window."""
    return datetime(trading_day.year, trading_day.month, trading_day.day, 10, 5, 0, tzinfo=ist_timezone)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
