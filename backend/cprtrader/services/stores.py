"""
Store Interfaces
CPR Options Trader

Abstract persistence collaborators consumed by the engine, plus an in-memory
implementation used for paper trading and tests. The SQLAlchemy repositories
in cprtrader.db.repositories implement the same interfaces.
"""

from abc import ABC, abstractmethod
from datetime import date
from itertools import count
from typing import Dict, List, Optional

from cprtrader.schemas.trading import (
    Credential,
    DailyAsset,
    OpenPosition,
    OptionType,
    PivotLevelSet,
    PositionState,
    ResolvedContract,
)


class TradeStore(ABC):
    """Trade log: at most one ENTRY record per credential."""

    @abstractmethod
    async def find_open_position(self, credential_id: int) -> Optional[OpenPosition]:
        pass

    @abstractmethod
    async def record_entry(
        self,
        credential: Credential,
        contract: ResolvedContract,
        direction: OptionType,
        quantity: int,
        asset_id: Optional[int] = None,
    ) -> OpenPosition:
        pass

    @abstractmethod
    async def record_exit(self, position: OpenPosition) -> None:
        pass


class CredentialStore(ABC):
    """Broker keys the engine trades for."""

    @abstractmethod
    async def list_active(self) -> List[Credential]:
        pass

    @abstractmethod
    async def get(self, credential_id: int) -> Optional[Credential]:
        pass

    @abstractmethod
    async def deactivate(self, credential_id: int) -> None:
        pass

    @abstractmethod
    async def market_data_credential(self) -> Optional[Credential]:
        """Admin key used for underlying candles."""
        pass


class MarketContextStore(ABC):
    """Per-day levels and the day's underlying."""

    @abstractmethod
    async def levels_for(self, day: date) -> Optional[PivotLevelSet]:
        pass

    @abstractmethod
    async def asset_for(self, weekday: str) -> Optional[DailyAsset]:
        pass


class InMemoryStore(TradeStore, CredentialStore, MarketContextStore):
    """Dictionary-backed implementation of every store interface."""

    def __init__(
        self,
        credentials: Optional[List[Credential]] = None,
        levels: Optional[Dict[date, PivotLevelSet]] = None,
        assets: Optional[Dict[str, DailyAsset]] = None,
        admin: Optional[Credential] = None,
    ):
        self.credentials: Dict[int, Credential] = {c.id: c for c in credentials or []}
        self.levels = dict(levels or {})
        self.assets = dict(assets or {})
        self.admin = admin
        self.positions: List[OpenPosition] = []
        self._ids = count(1)

    # Trade store

    async def find_open_position(self, credential_id: int) -> Optional[OpenPosition]:
        for position in reversed(self.positions):
            if position.credential_id == credential_id and position.state == PositionState.ENTRY:
                return position
        return None

    async def record_entry(
        self,
        credential: Credential,
        contract: ResolvedContract,
        direction: OptionType,
        quantity: int,
        asset_id: Optional[int] = None,
    ) -> OpenPosition:
        if await self.find_open_position(credential.id):
            raise ValueError(f"Credential {credential.id} already holds an open position")
        position = OpenPosition(
            id=next(self._ids),
            credential_id=credential.id,
            contract=contract.ref,
            direction=direction,
            quantity=quantity,
            asset_id=asset_id,
        )
        self.positions.append(position)
        return position

    async def record_exit(self, position: OpenPosition) -> None:
        position.state = PositionState.EXIT

    # Credential store

    async def list_active(self) -> List[Credential]:
        return [c for c in self.credentials.values() if c.active]

    async def get(self, credential_id: int) -> Optional[Credential]:
        return self.credentials.get(credential_id)

    async def deactivate(self, credential_id: int) -> None:
        credential = self.credentials.get(credential_id)
        if credential:
            credential.active = False

    async def market_data_credential(self) -> Optional[Credential]:
        return self.admin

    # Market context store

    async def levels_for(self, day: date) -> Optional[PivotLevelSet]:
        return self.levels.get(day)

    async def asset_for(self, weekday: str) -> Optional[DailyAsset]:
        return self.assets.get(weekday)
