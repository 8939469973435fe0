"""
Trade Lifecycle Controller

Per-credential position state machine:

    State      Event                    Action                       New state
    Flat       ENTER(D)                 BUY D                        Entry(D)
    Entry(D)   ENTER(D)                 none                         Entry(D)
    Entry(D)   ENTER(D')                SELL D, then BUY D'          Entry(D')
    Entry(D)   EXIT                     SELL D                       Flat
    Entry(D)   DIRECTIONAL_EXIT(D)      SELL D                       Flat
    Entry(D)   DIRECTIONAL_EXIT(D')     none                         Entry(D)
    any        RISK_BREACH              SELL if open, deactivate     Flat (inactive)
    any        FORCED_CLOSE             SELL if open, deactivate     Flat (inactive)

Every order is recorded in the trade store before the next step runs. When
an order cannot be confirmed the transition stops there: a failed close never
leads to an open, and a credential is only deactivated once it is flat.
Signals for a credential the store reports inactive are ignored, so a stop or
breach holds for the rest of the day.
"""

import asyncio
from typing import Dict, Optional

from loguru import logger

from cprtrader.brokers.base import BaseBroker
from cprtrader.core.errors import BrokerError
from cprtrader.schemas.broker import OrderRequest
from cprtrader.schemas.trading import (
    ContractRef,
    Credential,
    OpenPosition,
    OptionType,
    OrderResult,
    OrderSide,
    ResolvedContract,
    Signal,
    TradeAction,
    TradeEvent,
    TransitionOutcome,
)
from cprtrader.services.stores import CredentialStore, TradeStore


class TradeLifecycleController:
    """Decides and issues the next order for one credential, exactly once."""

    def __init__(self, trades: TradeStore, credentials: CredentialStore):
        self.trades = trades
        self.credentials = credentials
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, credential_id: int) -> asyncio.Lock:
        if credential_id not in self._locks:
            self._locks[credential_id] = asyncio.Lock()
        return self._locks[credential_id]

    # =========================================================================
    # Public events
    # =========================================================================

    async def on_signal(
        self,
        credential: Credential,
        broker: BaseBroker,
        signal: Signal,
        contract: Optional[ResolvedContract] = None,
        quantity: int = 0,
        asset_id: Optional[int] = None,
    ) -> TransitionOutcome:
        """Apply an ENTER, EXIT or DIRECTIONAL_EXIT signal."""
        event = signal.event
        if event is None:
            return TransitionOutcome(credential_id=credential.id, event=None, reason="no signal")

        async with self._lock_for(credential.id):
            # A stop or breach may have landed while the caller awaited the broker
            current = await self.credentials.get(credential.id)
            if current is None or not current.active:
                credential.active = False
                return TransitionOutcome(credential_id=credential.id, event=event, reason="credential inactive")

            position = await self.trades.find_open_position(credential.id)

            if event == TradeEvent.ENTER:
                return await self._enter(credential, broker, position, signal.direction, contract, quantity, asset_id)

            if position is None:
                return TransitionOutcome(credential_id=credential.id, event=event, reason="flat")

            if event == TradeEvent.DIRECTIONAL_EXIT and position.direction != signal.direction:
                return TransitionOutcome(
                    credential_id=credential.id,
                    event=event,
                    reason=f"holding {position.direction.value}, signal targets {signal.direction.value}",
                )

            outcome = TransitionOutcome(credential_id=credential.id, event=event, action=TradeAction.EXIT)
            await self._close(credential, broker, position, outcome)
            return outcome

    async def on_risk_breach(self, credential: Credential, broker: BaseBroker, reason: str) -> TransitionOutcome:
        """Flatten and deactivate after a loss cap or profit target."""
        return await self._flatten_and_deactivate(credential, broker, TradeEvent.RISK_BREACH, reason)

    async def force_close(self, credential: Credential, broker: BaseBroker, reason: str = "hard cutoff") -> TransitionOutcome:
        """Flatten and deactivate at the cutoff or on operator command."""
        return await self._flatten_and_deactivate(credential, broker, TradeEvent.FORCED_CLOSE, reason)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def _enter(
        self,
        credential: Credential,
        broker: BaseBroker,
        position: Optional[OpenPosition],
        direction: Optional[OptionType],
        contract: Optional[ResolvedContract],
        quantity: int,
        asset_id: Optional[int],
    ) -> TransitionOutcome:
        outcome = TransitionOutcome(credential_id=credential.id, event=TradeEvent.ENTER)

        if position is not None and position.direction == direction:
            outcome.reason = f"already holding {direction.value}"
            return outcome

        if contract is None or contract.option_type != direction:
            outcome.reason = "no contract resolved"
            return outcome
        if quantity <= 0:
            outcome.reason = "quantity is zero"
            return outcome

        if position is not None:
            outcome.action = TradeAction.FLIP
            if not await self._close(credential, broker, position, outcome):
                return outcome
        else:
            outcome.action = TradeAction.ENTER

        order = await self._submit(credential, broker, contract.ref, OrderSide.BUY, quantity, outcome)
        if order is None:
            return outcome

        await self.trades.record_entry(credential, contract, direction, quantity, asset_id)
        outcome.reason = f"entered {direction.value} {contract.trading_symbol} x{quantity}"
        logger.info(f"Credential {credential.id}: {outcome.action.value} -> {outcome.reason}")
        return outcome

    async def _flatten_and_deactivate(
        self,
        credential: Credential,
        broker: BaseBroker,
        event: TradeEvent,
        reason: str,
    ) -> TransitionOutcome:
        async with self._lock_for(credential.id):
            outcome = TransitionOutcome(
                credential_id=credential.id,
                event=event,
                action=TradeAction.DEACTIVATE,
                reason=reason,
            )
            position = await self.trades.find_open_position(credential.id)
            if position is not None and not await self._close(credential, broker, position, outcome):
                # Stay active so the next tick retries the close
                return outcome

            await self.credentials.deactivate(credential.id)
            credential.active = False
            outcome.deactivated = True
            logger.info(f"Credential {credential.id} deactivated ({event.value}): {reason}")
            return outcome

    async def _close(
        self,
        credential: Credential,
        broker: BaseBroker,
        position: OpenPosition,
        outcome: TransitionOutcome,
    ) -> bool:
        order = await self._submit(credential, broker, position.contract, OrderSide.SELL, position.quantity, outcome)
        if order is None:
            return False
        await self.trades.record_exit(position)
        logger.info(
            f"Credential {credential.id}: closed {position.direction.value} "
            f"{position.contract.trading_symbol} x{position.quantity}"
        )
        return True

    async def _submit(
        self,
        credential: Credential,
        broker: BaseBroker,
        contract: ContractRef,
        side: OrderSide,
        quantity: int,
        outcome: TransitionOutcome,
    ) -> Optional[OrderResult]:
        request = OrderRequest.market(contract, side, quantity)
        try:
            response = await broker.place_order(request)
        except BrokerError as e:
            outcome.completed = False
            outcome.error = e.message
            logger.bind(
                credential_id=credential.id,
                category=e.category.value,
                event=outcome.event.value if outcome.event else None,
                action=f"{side.value} {contract.trading_symbol} x{quantity}",
                response_body=e.response_body,
            ).error(f"Order failed for credential {credential.id}: {e.message}")
            return None

        order = OrderResult(order_id=response.order_id, side=side, contract=contract, quantity=quantity)
        outcome.orders.append(order)
        return order
