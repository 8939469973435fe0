"""
Core Configuration Management
CPR Options Trader

Environment-based settings grouped per concern. Every group reads its own
env prefix; `get_settings()` caches the aggregate.
"""

from datetime import time
from functools import lru_cache
from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="user", description="Database user")
    password: str = Field(default="password", description="Database password")
    name: str = Field(default="cprtrader", description="Database name")

    # Connection pool settings
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=1800, description="Recycle connections after seconds")
    echo: bool = Field(default=False, description="Log SQL statements")

    @property
    def async_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.name}"


class AngelOneSettings(BaseSettings):
    """Angel One SmartAPI REST settings (order routing and quotes)."""

    model_config = SettingsConfigDict(env_prefix="ANGEL_")

    base_url: str = Field(
        default="https://apiconnect.angelone.in/rest/secure/angelbroking",
        description="SmartAPI REST root",
    )
    scrip_master_url: str = Field(
        default="https://margincalculator.angelbroking.com/OpenAPI_File/files/OpenAPIScripMaster.json",
        description="Scrip master (instrument catalog) JSON",
    )
    scrip_master_cache: str = Field(
        default="data/angel_scrip_master_cache.json",
        description="Disk cache for the last good scrip master",
    )
    catalog_timeout_seconds: float = Field(default=30.0, description="Scrip master download timeout")
    timeout_seconds: float = Field(default=10.0, description="REST call timeout")

    # Static client headers required by SmartAPI
    user_type: str = Field(default="USER")
    source_id: str = Field(default="WEB")
    client_local_ip: str = Field(default="127.0.0.1")
    client_public_ip: str = Field(default="127.0.0.1")
    mac_address: str = Field(default="AA-BB-CC-DD-EE-FF")

    def client_headers(self) -> Dict[str, str]:
        """Headers sent with every SmartAPI request."""
        return {
            "X-UserType": self.user_type,
            "X-SourceID": self.source_id,
            "X-ClientLocalIP": self.client_local_ip,
            "X-ClientPublicIP": self.client_public_ip,
            "X-MACAddress": self.mac_address,
        }


class KiteSettings(BaseSettings):
    """Kite Connect settings (underlying candles via the admin key)."""

    model_config = SettingsConfigDict(env_prefix="KITE_")

    base_url: str = Field(default="https://api.kite.trade", description="Kite REST root")
    api_version: str = Field(default="3", description="X-Kite-Version header")
    candle_interval: str = Field(default="5minute", description="Candle interval for signals")
    lookback_minutes: int = Field(default=5, description="Candle window fetched per evaluation")
    timeout_seconds: float = Field(default=10.0, description="REST call timeout")


class TradingSettings(BaseSettings):
    """Trading engine settings."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    # Mode
    mode: Literal["LIVE", "PAPER"] = Field(default="PAPER", description="Trading mode")
    timezone: str = Field(default="Asia/Kolkata", description="Exchange timezone")

    # Session windows (IST)
    pre_open_start: time = Field(default=time(8, 30), description="Context warm-up starts")
    active_start: time = Field(default=time(9, 30), description="Signals acted upon from")
    hard_cutoff: time = Field(default=time(15, 15), description="Force-flat cutoff")
    session_end: time = Field(default=time(15, 30), description="Scheduler goes idle after")
    catalog_refresh_at: time = Field(default=time(7, 5), description="Daily scrip master refresh")

    # Cadence
    tick_interval_seconds: float = Field(default=1.0, description="Scheduler tick period")
    evaluation_every_seconds: int = Field(default=10, description="Signal evaluated when second % N == 0")
    decision_every_minutes: int = Field(default=5, description="Orders only on minutes divisible by N")
    decision_window_seconds: int = Field(default=10, description="Orders only in the first N seconds")
    credential_refresh_seconds: int = Field(default=40, description="Active credential list refresh")

    # Capital and risk
    usable_capital_pct: float = Field(default=10.0, description="Share of balance used for sizing")
    max_loss_pct: float = Field(default=4.0, description="Daily loss cap, % of balance")
    max_profit_pct: float = Field(default=8.0, description="Daily profit target, % of balance")

    # Strike selection
    strike_step: int = Field(default=100, description="Strike rounding step")
    strike_offset_by_interval: Dict[str, int] = Field(
        default={"5minute": 400},
        description="Out-of-the-money offset per candle interval",
    )
    default_strike_offset: int = Field(default=400, description="Offset for unlisted intervals")

    # Signal rule toggles
    secondary_levels_override: bool = Field(default=True, description="R/S bands override the CPR check")
    crossover_exits: bool = Field(default=True, description="Emit directional exits on level crossovers")
    midpoint_rounds_up: bool = Field(default=False, description="ATM strike rounds up when exactly between two strikes")

    # Broker selection
    broker_name: str = Field(default="Angel One", description="Broker whose keys are traded")
    market_data_broker_name: str = Field(default="Zerodha", description="Admin key broker for candles")

    def strike_offset(self, interval: str) -> int:
        """Offset applied away from the money for the given candle interval."""
        return self.strike_offset_by_interval.get(interval, self.default_strike_offset)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        description="Log format"
    )

    # File logging
    file_enabled: bool = Field(default=True, description="Enable file logging")
    file_path: str = Field(default="logs/cprtrader.json", description="Log file path")
    error_file_path: str = Field(default="logs/error.log", description="Error log file path")
    file_rotation: str = Field(default="10 MB", description="Log rotation size")
    file_retention: str = Field(default="30 days", description="Log retention period")


class APISettings(BaseSettings):
    """Control API settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="0.0.0.0", description="API host")
    port: int = Field(default=3004, description="API port")


class Settings(BaseSettings):
    """
    Main application settings.

    Aggregates all sub-settings and provides environment-based configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    PROJECT_NAME: str = Field(default="CPR Options Trader", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Environment"
    )

    @property
    def db(self) -> DatabaseSettings:
        """Get database settings."""
        return DatabaseSettings()

    @property
    def angel(self) -> AngelOneSettings:
        """Get Angel One settings."""
        return AngelOneSettings()

    @property
    def kite(self) -> KiteSettings:
        """Get Kite settings."""
        return KiteSettings()

    @property
    def trading(self) -> TradingSettings:
        """Get trading settings."""
        return TradingSettings()

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings()

    @property
    def api(self) -> APISettings:
        """Get API settings."""
        return APISettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call get_settings.cache_clear() to reload settings.
    """
    return Settings()


settings = get_settings()
