"""
Repositories
CPR Options Trader

SQLAlchemy implementations of the store interfaces. Each call opens its own
short session, so the repositories can live as long as the scheduler.
"""

from datetime import date
from typing import AsyncContextManager, Callable, List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cprtrader.core.config import settings
from cprtrader.db.models import Broker, BrokerKey, DailyAsset as DailyAssetModel, DailyLevels, TradeLog, User
from cprtrader.db.session import get_db_context
from cprtrader.schemas.trading import (
    ContractRef,
    Credential,
    DailyAsset,
    OpenPosition,
    OptionType,
    PivotLevelSet,
    PositionState,
    ResolvedContract,
)
from cprtrader.services.stores import CredentialStore, MarketContextStore, TradeStore

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class CredentialRepository(CredentialStore):
    """Broker keys for the trading broker plus the admin market-data key."""

    def __init__(
        self,
        session_factory: SessionFactory = get_db_context,
        broker_name: Optional[str] = None,
        market_data_broker_name: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.broker_name = broker_name or settings.trading.broker_name
        self.market_data_broker_name = market_data_broker_name or settings.trading.market_data_broker_name

    async def list_active(self) -> List[Credential]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BrokerKey)
                .join(Broker, BrokerKey.broker_id == Broker.id)
                .where(Broker.name == self.broker_name, BrokerKey.status.is_(True))
                .order_by(BrokerKey.id)
            )
            return [_to_credential(key) for key in result.scalars().all()]

    async def get(self, credential_id: int) -> Optional[Credential]:
        async with self.session_factory() as session:
            key = await session.get(BrokerKey, credential_id)
            return _to_credential(key) if key else None

    async def deactivate(self, credential_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(BrokerKey).where(BrokerKey.id == credential_id).values(status=False)
            )
        logger.debug(f"Broker key {credential_id} marked inactive")

    async def market_data_credential(self) -> Optional[Credential]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BrokerKey)
                .join(User, BrokerKey.user_id == User.id)
                .join(Broker, BrokerKey.broker_id == Broker.id)
                .where(User.role == "admin", Broker.name == self.market_data_broker_name)
                .limit(1)
            )
            key = result.scalar_one_or_none()
            return _to_credential(key) if key else None


class LevelsRepository:
    def __init__(self, session_factory: SessionFactory = get_db_context):
        self.session_factory = session_factory

    async def levels_for(self, day: date) -> Optional[PivotLevelSet]:
        async with self.session_factory() as session:
            result = await session.execute(select(DailyLevels).where(DailyLevels.for_day == day))
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return PivotLevelSet(
                bc=float(row.bc), tc=float(row.tc),
                r1=float(row.r1), r2=float(row.r2), r3=float(row.r3), r4=float(row.r4),
                s1=float(row.s1), s2=float(row.s2), s3=float(row.s3), s4=float(row.s4),
                buffer=float(row.buffer),
                for_day=row.for_day,
            )


class AssetRepository:
    def __init__(self, session_factory: SessionFactory = get_db_context):
        self.session_factory = session_factory

    async def asset_for(self, weekday: str) -> Optional[DailyAsset]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DailyAssetModel)
                .options(selectinload(DailyAssetModel.asset))
                .where(DailyAssetModel.day == weekday)
            )
            row = result.scalar_one_or_none()
            if row is None or row.asset is None:
                return None
            return DailyAsset(
                id=row.asset.id,
                name=row.asset.name,
                market_data_token=row.asset.zerodha_token,
            )


class MarketContextRepository(MarketContextStore):
    """Levels and daily underlying behind one store interface."""

    def __init__(self, session_factory: SessionFactory = get_db_context):
        self.levels = LevelsRepository(session_factory)
        self.assets = AssetRepository(session_factory)

    async def levels_for(self, day: date) -> Optional[PivotLevelSet]:
        return await self.levels.levels_for(day)

    async def asset_for(self, weekday: str) -> Optional[DailyAsset]:
        return await self.assets.asset_for(weekday)


class TradeLogRepository(TradeStore):
    """Open position lookup and entry/exit recording."""

    def __init__(self, session_factory: SessionFactory = get_db_context):
        self.session_factory = session_factory

    async def find_open_position(self, credential_id: int) -> Optional[OpenPosition]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TradeLog)
                .where(
                    TradeLog.broker_key_id == credential_id,
                    TradeLog.type == PositionState.ENTRY.value,
                )
                .order_by(TradeLog.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_position(row) if row else None

    async def record_entry(
        self,
        credential: Credential,
        contract: ResolvedContract,
        direction: OptionType,
        quantity: int,
        asset_id: Optional[int] = None,
    ) -> OpenPosition:
        async with self.session_factory() as session:
            row = TradeLog(
                broker_id=credential.broker_id,
                broker_key_id=credential.id,
                user_id=credential.user_id,
                base_asset_id=asset_id,
                exchange=contract.exchange,
                trading_symbol=contract.trading_symbol,
                token=contract.token,
                direction=direction.value,
                quantity=quantity,
                type=PositionState.ENTRY.value,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ValueError(f"Credential {credential.id} already holds an open position") from e
            return _to_position(row)

    async def record_exit(self, position: OpenPosition) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(TradeLog).where(TradeLog.id == position.id).values(type=PositionState.EXIT.value)
            )
        position.state = PositionState.EXIT


def _to_credential(key: BrokerKey) -> Credential:
    return Credential(
        id=key.id,
        access_token=key.token or "",
        api_key=key.api_key,
        balance=float(key.balance) if key.balance is not None else None,
        active=key.status,
        user_id=key.user_id,
        broker_id=key.broker_id,
    )


def _to_position(row: TradeLog) -> OpenPosition:
    return OpenPosition(
        id=row.id,
        credential_id=row.broker_key_id,
        contract=ContractRef(exchange=row.exchange, trading_symbol=row.trading_symbol, token=row.token),
        direction=OptionType(row.direction),
        quantity=row.quantity,
        state=PositionState(row.type),
        asset_id=row.base_asset_id,
    )
