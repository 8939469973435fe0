"""
Angel One (Angel Broking) SmartAPI REST Integration

Per-credential REST client:
- Order placement (MARKET, INTRADAY)
- Last traded price
- Day positions (realised / unrealised P&L)
- Funds (RMS available cash)

Every request carries the credential's JWT as a bearer token and its API key
as X-PrivateKey, plus the static client headers SmartAPI requires.
"""

import asyncio
import math
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger

from cprtrader.brokers.base import BaseBroker
from cprtrader.core.config import AngelOneSettings, settings
from cprtrader.core.errors import BrokerError, MarketDataUnavailable, OrderPlacementError
from cprtrader.schemas.broker import Funds, OrderRequest, OrderResponse
from cprtrader.schemas.trading import BrokerPosition, ContractRef


class AngelOneBroker(BaseBroker):
    """
    Angel One SmartAPI Implementation.

    Holds no order state; the trade log is the source of truth for what the
    engine believes is open.
    """

    PLACE_ORDER_PATH = "/order/v1/placeOrder"
    LTP_PATH = "/order/v1/getLtpData"
    POSITIONS_PATH = "/portfolio/v1/getpositions"
    FUNDS_PATH = "/user/v1/getRMS"

    # Exchanges quoted directly; everything else is quoted on NSE
    QUOTE_EXCHANGES = {"NFO", "BFO", "NSE", "BSE"}

    def __init__(
        self,
        access_token: str,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        config: Optional[AngelOneSettings] = None,
    ):
        """
        Initialize Angel One broker.

        Args:
            access_token: SmartAPI JWT for the credential
            api_key: SmartAPI API key (sent as X-PrivateKey)
            session: Shared HTTP session; one is created lazily if omitted
            config: Angel One settings override
        """
        self.access_token = access_token
        self.api_key = api_key
        self.config = config or settings.angel
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
        """Close HTTP session if this broker created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            **self.config.client_headers(),
        }
        if self.api_key:
            headers["X-PrivateKey"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        error_cls: type = BrokerError,
    ) -> Any:
        """Send a SmartAPI request and return its `data` field."""
        session = await self._get_session()
        url = f"{self.config.base_url}{path}"

        try:
            async with session.request(method, url, json=payload, headers=self._headers()) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = await response.text()

                if response.status >= 400:
                    raise error_cls(
                        f"Angel One {path} failed with HTTP {response.status}",
                        status_code=response.status,
                        response_body=body,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise error_cls(f"Angel One {path} request error: {e}") from e

        if not isinstance(body, dict) or body.get("status") is False:
            message = body.get("message") if isinstance(body, dict) else "Unexpected response"
            raise error_cls(
                f"Angel One {path} rejected: {message}",
                status_code=response.status,
                response_body=body,
            )
        return body.get("data")

    async def place_order(self, order: OrderRequest) -> OrderResponse:
        """
        Place a new order.

        Args:
            order: OrderRequest with contract, side and quantity

        Returns:
            OrderResponse with the broker order id
        """
        payload = {
            "variety": order.variety,
            "tradingsymbol": order.trading_symbol,
            "symboltoken": order.token,
            "transactiontype": order.side.value,
            "exchange": order.exchange,
            "ordertype": order.order_type,
            "producttype": order.product_type,
            "duration": order.duration,
            "price": "0",
            "squareoff": "0",
            "stoploss": "0",
            "quantity": str(order.quantity),
            "triggerprice": "0",
            "disclosedquantity": "0",
        }

        data = await self._request("POST", self.PLACE_ORDER_PATH, payload, error_cls=OrderPlacementError)
        order_id = str((data or {}).get("orderid") or "")
        if not order_id:
            raise OrderPlacementError(
                f"Angel One returned no order id for {order.trading_symbol}",
                response_body=data,
            )

        logger.info(f"Angel One order placed: {order_id} {order.side.value} {order.quantity} {order.trading_symbol}")
        return OrderResponse(order_id=order_id, message="Order placed successfully")

    async def get_ltp(self, contract: ContractRef) -> float:
        """Fetch last traded price for a contract."""
        payload = {
            "exchange": contract.exchange if contract.exchange in self.QUOTE_EXCHANGES else "NSE",
            "tradingsymbol": contract.trading_symbol,
            "symboltoken": contract.token,
        }
        try:
            data = await self._request("POST", self.LTP_PATH, payload)
        except BrokerError as e:
            raise MarketDataUnavailable(str(e), context={"symbol": contract.trading_symbol}) from e

        try:
            ltp = float((data or {}).get("ltp"))
        except (TypeError, ValueError):
            ltp = math.nan
        if not math.isfinite(ltp):
            raise MarketDataUnavailable("LTP not available", context={"symbol": contract.trading_symbol})
        return ltp

    async def get_positions(self) -> List[BrokerPosition]:
        """Fetch current day positions."""
        data = await self._request("GET", self.POSITIONS_PATH)
        if not isinstance(data, list):
            return []

        return [
            BrokerPosition(
                realized_pnl=_num(pos.get("realised")),
                unrealized_pnl=_num(pos.get("unrealised")),
                product_type=str(pos.get("producttype") or ""),
                trading_symbol=str(pos.get("tradingsymbol") or ""),
                net_quantity=int(_num(pos.get("netqty"))),
            )
            for pos in data
        ]

    async def get_funds(self) -> Funds:
        """Fetch available cash from RMS."""
        data = await self._request("GET", self.FUNDS_PATH)
        return Funds(available_cash=_num((data or {}).get("availablecash")))


def _num(value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0
