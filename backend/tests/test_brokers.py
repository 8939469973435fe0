"""
Tests for the broker integrations and BrokerFactory
"""

import math
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from cprtrader.brokers import BrokerFactory
from cprtrader.brokers.angelone import AngelOneBroker
from cprtrader.brokers.kite import KiteCandleFeed
from cprtrader.brokers.paper import PaperBroker
from cprtrader.core.config import AngelOneSettings
from cprtrader.core.errors import BrokerError, MarketDataUnavailable, OrderPlacementError
from cprtrader.schemas.broker import OrderRequest
from cprtrader.schemas.trading import ContractRef, OrderSide


@pytest.fixture
def angel():
    return AngelOneBroker(access_token="jwt", api_key="key", config=AngelOneSettings())


@pytest.fixture
def buy_order(ce_contract):
    return OrderRequest.market(ce_contract, OrderSide.BUY, 150)


class TestAngelOneBroker:

    def test_headers(self, angel):
        headers = angel._headers()
        assert headers["Authorization"] == "Bearer jwt"
        assert headers["X-PrivateKey"] == "key"
        assert headers["X-UserType"] == "USER"
        assert headers["X-SourceID"] == "WEB"

    @pytest.mark.asyncio
    async def test_place_order_payload(self, angel, buy_order):
        with patch.object(angel, "_request", AsyncMock(return_value={"orderid": "240115000123"})) as request:
            response = await angel.place_order(buy_order)

        assert response.order_id == "240115000123"
        method, path, payload = request.call_args.args
        assert (method, path) == ("POST", AngelOneBroker.PLACE_ORDER_PATH)
        assert payload["tradingsymbol"] == "NIFTY16JAN2524500CE"
        assert payload["symboltoken"] == "41001"
        assert payload["transactiontype"] == "BUY"
        assert payload["ordertype"] == "MARKET"
        assert payload["producttype"] == "INTRADAY"
        assert payload["quantity"] == "150"
        assert request.call_args.kwargs["error_cls"] is OrderPlacementError

    @pytest.mark.asyncio
    async def test_place_order_without_id_fails(self, angel, buy_order):
        with patch.object(angel, "_request", AsyncMock(return_value={})):
            with pytest.raises(OrderPlacementError):
                await angel.place_order(buy_order)

    @pytest.mark.asyncio
    async def test_ltp(self, angel, ce_contract):
        with patch.object(angel, "_request", AsyncMock(return_value={"ltp": 112.35})) as request:
            assert await angel.get_ltp(ce_contract) == 112.35
        assert request.call_args.args[2]["exchange"] == "NFO"

    @pytest.mark.asyncio
    async def test_ltp_unknown_exchange_quoted_on_nse(self, angel):
        contract = ContractRef(exchange="MCX", trading_symbol="X", token="1")
        with patch.object(angel, "_request", AsyncMock(return_value={"ltp": 1.0})) as request:
            await angel.get_ltp(contract)
        assert request.call_args.args[2]["exchange"] == "NSE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data", [None, {}, {"ltp": None}, {"ltp": "abc"}, {"ltp": math.inf}])
    async def test_ltp_not_finite(self, angel, ce_contract, data):
        with patch.object(angel, "_request", AsyncMock(return_value=data)):
            with pytest.raises(MarketDataUnavailable):
                await angel.get_ltp(ce_contract)

    @pytest.mark.asyncio
    async def test_ltp_broker_error_is_market_data(self, angel, ce_contract):
        with patch.object(angel, "_request", AsyncMock(side_effect=BrokerError("HTTP 500"))):
            with pytest.raises(MarketDataUnavailable):
                await angel.get_ltp(ce_contract)

    @pytest.mark.asyncio
    async def test_positions(self, angel):
        data = [
            {"realised": "-1200.50", "unrealised": "300", "producttype": "INTRADAY",
             "tradingsymbol": "NIFTY16JAN2524500CE", "netqty": "75"},
            {"realised": None, "unrealised": "", "producttype": "DELIVERY", "netqty": "0"},
        ]
        with patch.object(angel, "_request", AsyncMock(return_value=data)):
            positions = await angel.get_positions()

        assert len(positions) == 2
        assert positions[0].realized_pnl == -1200.50
        assert positions[0].unrealized_pnl == 300.0
        assert positions[0].net_quantity == 75
        assert positions[1].realized_pnl == 0.0
        assert positions[1].product_type == "DELIVERY"

    @pytest.mark.asyncio
    async def test_positions_empty(self, angel):
        with patch.object(angel, "_request", AsyncMock(return_value=None)):
            assert await angel.get_positions() == []

    @pytest.mark.asyncio
    async def test_funds(self, angel):
        with patch.object(angel, "_request", AsyncMock(return_value={"availablecash": "250000.75"})):
            funds = await angel.get_funds()
        assert funds.available_cash == 250000.75


class TestPaperBroker:

    @pytest.mark.asyncio
    async def test_fills_and_records(self, buy_order):
        broker = PaperBroker(available_cash=50000.0)
        response = await broker.place_order(buy_order)

        assert response.order_id.startswith("PAPER-")
        assert broker.orders == [buy_order]
        assert (await broker.get_funds()).available_cash == 50000.0

    @pytest.mark.asyncio
    async def test_ltp_per_token(self, ce_contract, pe_contract):
        broker = PaperBroker(default_ltp=None)
        broker.ltps[ce_contract.token] = 95.0

        assert await broker.get_ltp(ce_contract) == 95.0
        with pytest.raises(MarketDataUnavailable):
            await broker.get_ltp(pe_contract)

    @pytest.mark.asyncio
    async def test_positions_carry_pnl(self):
        broker = PaperBroker(realized_pnl=-500.0, unrealized_pnl=-250.0)
        positions = await broker.get_positions()
        assert positions[0].realized_pnl + positions[0].unrealized_pnl == -750.0


class TestBrokerFactory:

    @pytest.mark.asyncio
    async def test_paper_broker_cached_per_credential(self, credential, admin_credential):
        factory = BrokerFactory(mode="PAPER")

        first = await factory.for_credential(credential)
        again = await factory.for_credential(credential)
        other = await factory.for_credential(admin_credential)

        assert isinstance(first, PaperBroker)
        assert first is again
        assert other is not first
        assert first.available_cash == credential.balance

    @pytest.mark.asyncio
    async def test_live_builds_angel_broker(self, credential):
        factory = BrokerFactory(mode="LIVE")
        try:
            broker = await factory.for_credential(credential)
            assert isinstance(broker, AngelOneBroker)
            assert broker.access_token == credential.access_token
            assert broker.api_key == credential.api_key
        finally:
            await factory.close()


class TestKiteCandleFeed:

    def test_format_time_truncates_seconds(self):
        assert KiteCandleFeed.format_time(datetime(2025, 1, 15, 10, 5, 42)) == "2025-01-15 10:05:00"

    @pytest.mark.asyncio
    async def test_latest_sample_uses_last_candle(self, market_time):
        feed = KiteCandleFeed(api_key="k", access_token="t")
        candles = [
            ["2025-01-15T10:03:00+0530", 24010, 24030, 24000, 24020, 0],
            ["2025-01-15T10:04:00+0530", 24020, 24095, 24015, 24090, 0],
        ]
        with patch.object(feed, "get_candles", AsyncMock(return_value=candles)) as get_candles:
            sample = await feed.latest_sample(256265, market_time)

        assert (sample.open, sample.close) == (24020.0, 24090.0)
        token, from_time, to_time = get_candles.call_args.args
        assert token == 256265
        assert (to_time - from_time).total_seconds() == 5 * 60

    @pytest.mark.asyncio
    async def test_no_candles(self, market_time):
        feed = KiteCandleFeed(api_key="k", access_token="t")
        with patch.object(feed, "get_candles", AsyncMock(return_value=[])):
            with pytest.raises(MarketDataUnavailable):
                await feed.latest_sample(256265, market_time)

    @pytest.mark.asyncio
    async def test_malformed_candle(self, market_time):
        feed = KiteCandleFeed(api_key="k", access_token="t")
        with patch.object(feed, "get_candles", AsyncMock(return_value=[["2025-01-15T10:04:00+0530"]])):
            with pytest.raises(MarketDataUnavailable):
                await feed.latest_sample(256265, market_time)
