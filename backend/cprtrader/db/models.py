"""
Domain Models
CPR Options Trader

SQLAlchemy models for:
- Brokers, users and their broker keys (credentials)
- Assets and the underlying chosen per weekday
- Daily pivot levels
- Trade log (one row per entry, flipped to exit when closed)
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric,
    String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cprtrader.db.base import Base, TimestampMixin


class Broker(Base, TimestampMixin):
    __tablename__ = "broker"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)  # Zerodha, Upstox, Angel One

    keys: Mapped[List["BrokerKey"]] = relationship(back_populates="broker")


class User(Base, TimestampMixin):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), default="user", nullable=False)  # user, admin

    keys: Mapped[List["BrokerKey"]] = relationship(back_populates="user")


class BrokerKey(Base, TimestampMixin):
    """
    A user's API credentials at one broker.

    `status` is the daily active flag: the engine only trades active keys and
    clears it on risk breach, hard cutoff or operator stop.
    """
    __tablename__ = "broker_key"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    broker_id: Mapped[int] = mapped_column(ForeignKey("broker.id"), nullable=False)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    api_secret: Mapped[str] = mapped_column(Text, nullable=False)
    token: Mapped[Optional[str]] = mapped_column(Text)
    token_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))  # Overrides broker funds when set

    broker: Mapped["Broker"] = relationship(back_populates="keys")
    user: Mapped["User"] = relationship(back_populates="keys")

    __table_args__ = (
        UniqueConstraint("user_id", "broker_id", name="uq_broker_key_user_broker"),
        Index("idx_broker_key_status", "status"),
    )


class Asset(Base, TimestampMixin):
    """Tradable underlying with its per-broker instrument tokens."""
    __tablename__ = "asset"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)  # NIFTY, SENSEX
    zerodha_token: Mapped[Optional[int]] = mapped_column(Integer)
    upstox_token: Mapped[Optional[str]] = mapped_column(String(50))
    angelone_token: Mapped[Optional[str]] = mapped_column(String(50))


class DailyAsset(Base, TimestampMixin):
    """Which underlying is traded on each weekday."""
    __tablename__ = "daily_asset"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day: Mapped[str] = mapped_column(String(10), unique=True, nullable=False)  # Monday .. Friday
    asset_id: Mapped[int] = mapped_column(ForeignKey("asset.id"), nullable=False)

    asset: Mapped["Asset"] = relationship()


class DailyLevels(Base, TimestampMixin):
    """Pivot levels computed from the previous session."""
    __tablename__ = "daily_levels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    for_day: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    bc: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    tc: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    r1: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    r2: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    r3: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    r4: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    s1: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    s2: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    s3: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    s4: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    buffer: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)


class TradeLog(Base, TimestampMixin):
    """Position record per broker key; `type` is entry while open, exit once closed."""
    __tablename__ = "trade_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    broker_id: Mapped[int] = mapped_column(ForeignKey("broker.id"), nullable=False)
    broker_key_id: Mapped[int] = mapped_column(ForeignKey("broker_key.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    base_asset_id: Mapped[Optional[int]] = mapped_column(ForeignKey("asset.id"))

    exchange: Mapped[str] = mapped_column(String(10), nullable=False)
    trading_symbol: Mapped[str] = mapped_column(String(100), nullable=False)
    token: Mapped[str] = mapped_column(String(50), nullable=False)

    direction: Mapped[str] = mapped_column(String(2), nullable=False)  # CE, PE
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)  # entry, exit

    __table_args__ = (
        Index("idx_trade_log_key_type", "broker_key_id", "type"),
        # At most one open position per broker key
        Index(
            "uq_trade_log_open_entry", "broker_key_id",
            unique=True, postgresql_where=text("type = 'entry'"),
        ),
    )
