"""
Error Taxonomy
CPR Options Trader

Exceptions raised by collaborators (brokers, market data, catalog, stores)
and caught at the per-credential loop boundary. Resolution misses and risk
breaches are ordinary return values, not exceptions.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Error categories, bound to log records as `category`."""
    RESOLUTION_MISS = "resolution_miss"   # Contract not in catalog
    MARKET_DATA = "market_data"           # LTP / candle unavailable
    ORDER_PLACEMENT = "order_placement"   # Network or broker rejection
    RISK_BREACH = "risk_breach"           # Expected terminal condition
    CATALOG = "catalog"                   # Scrip master load failure
    CONTEXT = "context"                   # Per-day context refresh failure
    UNKNOWN = "unknown"


class TradingError(Exception):
    """Base class for engine errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "context": self.context,
        }


class BrokerError(TradingError):
    """Broker API call failed."""

    category = ErrorCategory.ORDER_PLACEMENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        self.response_body = response_body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["response_body"] = self.response_body
        return data


class OrderPlacementError(BrokerError):
    """Order was not accepted; the caller must not assume it executed."""


class MarketDataUnavailable(TradingError):
    """Price, LTP or candle data could not be fetched."""

    category = ErrorCategory.MARKET_DATA


class CatalogLoadError(TradingError):
    """Instrument catalog could not be downloaded or parsed."""

    category = ErrorCategory.CATALOG


class ContextRefreshError(TradingError):
    """Per-day context (levels, asset, credentials) could not be loaded."""

    category = ErrorCategory.CONTEXT
