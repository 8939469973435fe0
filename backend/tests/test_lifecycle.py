"""
Tests for TradeLifecycleController

Walks the transition table and the fail-closed rules around broker errors.
"""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from cprtrader.core.errors import OrderPlacementError
from cprtrader.execution.lifecycle import TradeLifecycleController
from cprtrader.schemas.broker import OrderResponse
from cprtrader.schemas.trading import (
    OptionType,
    OrderSide,
    PositionState,
    Signal,
    SignalKind,
    TradeAction,
)


BUY_CE = Signal(kind=SignalKind.BUY, direction=OptionType.CE, target_strike=24500)
BUY_PE = Signal(kind=SignalKind.SELL, direction=OptionType.PE, target_strike=23500)
EXIT = Signal(kind=SignalKind.EXIT)
CE_EXIT = Signal(kind=SignalKind.DIRECTIONAL_EXIT, direction=OptionType.CE)
PE_EXIT = Signal(kind=SignalKind.DIRECTIONAL_EXIT, direction=OptionType.PE)


@pytest.fixture
def controller(store):
    return TradeLifecycleController(trades=store, credentials=store)


def placed(broker):
    """(side, symbol, quantity) for every order the broker received."""
    return [
        (call.args[0].side, call.args[0].trading_symbol, call.args[0].quantity)
        for call in broker.place_order.call_args_list
    ]


class TestEntries:

    @pytest.mark.asyncio
    async def test_flat_enter_buys_and_records(self, controller, store, credential, mock_broker, ce_contract):
        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=150, asset_id=1)

        assert outcome.action == TradeAction.ENTER
        assert outcome.completed
        assert outcome.order_sides == [OrderSide.BUY]
        assert placed(mock_broker) == [(OrderSide.BUY, "NIFTY16JAN2524500CE", 150)]

        position = await store.find_open_position(credential.id)
        assert position.direction == OptionType.CE
        assert position.contract == ce_contract.ref
        assert position.quantity == 150
        assert position.asset_id == 1

    @pytest.mark.asyncio
    async def test_same_direction_is_noop(self, controller, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=150)
        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=150)

        assert outcome.action == TradeAction.NOOP
        assert mock_broker.place_order.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_quantity_never_ordered(self, controller, store, credential, mock_broker, ce_contract):
        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=0)

        assert outcome.action == TradeAction.NOOP
        mock_broker.place_order.assert_not_awaited()
        assert await store.find_open_position(credential.id) is None

    @pytest.mark.asyncio
    async def test_missing_contract_is_noop(self, controller, credential, mock_broker):
        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, None, quantity=75)
        assert outcome.action == TradeAction.NOOP
        mock_broker.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_buy_records_nothing(self, controller, store, credential, mock_broker, ce_contract):
        mock_broker.place_order = AsyncMock(side_effect=OrderPlacementError("rejected", response_body={"status": False}))

        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)

        assert not outcome.completed
        assert outcome.error == "rejected"
        assert await store.find_open_position(credential.id) is None


class TestFlips:

    @pytest.mark.asyncio
    async def test_enter_flip_exit_sequence(self, controller, store, credential, mock_broker, ce_contract, pe_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=150)
        flip = await controller.on_signal(credential, mock_broker, BUY_PE, pe_contract, quantity=75)
        exit_ = await controller.on_signal(credential, mock_broker, EXIT)

        assert flip.action == TradeAction.FLIP
        assert flip.order_sides == [OrderSide.SELL, OrderSide.BUY]
        assert exit_.action == TradeAction.EXIT
        assert placed(mock_broker) == [
            (OrderSide.BUY, "NIFTY16JAN2524500CE", 150),
            (OrderSide.SELL, "NIFTY16JAN2524500CE", 150),
            (OrderSide.BUY, "NIFTY16JAN2523500PE", 75),
            (OrderSide.SELL, "NIFTY16JAN2523500PE", 75),
        ]
        assert await store.find_open_position(credential.id) is None
        assert [p.state for p in store.positions] == [PositionState.EXIT, PositionState.EXIT]

    @pytest.mark.asyncio
    async def test_failed_close_never_opens(self, controller, store, credential, mock_broker, ce_contract, pe_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        mock_broker.place_order = AsyncMock(side_effect=OrderPlacementError("network down"))

        outcome = await controller.on_signal(credential, mock_broker, BUY_PE, pe_contract, quantity=75)

        assert not outcome.completed
        assert mock_broker.place_order.await_count == 1
        assert mock_broker.place_order.call_args.args[0].side == OrderSide.SELL
        position = await store.find_open_position(credential.id)
        assert position.direction == OptionType.CE

    @pytest.mark.asyncio
    async def test_failed_open_after_close_leaves_flat(self, controller, store, credential, mock_broker, ce_contract, pe_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        mock_broker.place_order = AsyncMock(side_effect=[OrderResponse(order_id="S1"), OrderPlacementError("rejected")])

        outcome = await controller.on_signal(credential, mock_broker, BUY_PE, pe_contract, quantity=75)

        assert not outcome.completed
        assert outcome.order_sides == [OrderSide.SELL]
        assert await store.find_open_position(credential.id) is None

    @pytest.mark.asyncio
    async def test_flip_skipped_when_unsizable(self, controller, store, credential, mock_broker, ce_contract, pe_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        outcome = await controller.on_signal(credential, mock_broker, BUY_PE, pe_contract, quantity=0)

        assert outcome.action == TradeAction.NOOP
        assert mock_broker.place_order.await_count == 1
        assert (await store.find_open_position(credential.id)).direction == OptionType.CE


class TestExits:

    @pytest.mark.asyncio
    async def test_exit_when_flat_is_noop(self, controller, credential, mock_broker):
        outcome = await controller.on_signal(credential, mock_broker, EXIT)
        assert outcome.action == TradeAction.NOOP
        mock_broker.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_directional_exit_matching(self, controller, store, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        outcome = await controller.on_signal(credential, mock_broker, CE_EXIT)

        assert outcome.action == TradeAction.EXIT
        assert outcome.order_sides == [OrderSide.SELL]
        assert await store.find_open_position(credential.id) is None

    @pytest.mark.asyncio
    async def test_directional_exit_other_side_is_noop(self, controller, store, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        outcome = await controller.on_signal(credential, mock_broker, PE_EXIT)

        assert outcome.action == TradeAction.NOOP
        assert mock_broker.place_order.await_count == 1
        assert (await store.find_open_position(credential.id)).direction == OptionType.CE

    @pytest.mark.asyncio
    async def test_none_signal_is_noop(self, controller, credential, mock_broker):
        outcome = await controller.on_signal(credential, mock_broker, Signal(kind=SignalKind.NONE))
        assert outcome.event is None
        mock_broker.place_order.assert_not_awaited()


class TestRiskBreachAndForcedClose:

    @pytest.mark.asyncio
    async def test_breach_with_position_sells_once_then_deactivates(self, controller, store, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        mock_broker.place_order.reset_mock()

        outcome = await controller.on_risk_breach(credential, mock_broker, "Max loss reached")

        assert outcome.deactivated
        assert outcome.order_sides == [OrderSide.SELL]
        assert mock_broker.place_order.await_count == 1
        assert not store.credentials[credential.id].active
        assert await store.find_open_position(credential.id) is None

    @pytest.mark.asyncio
    async def test_breach_when_flat_places_no_orders(self, controller, store, credential, mock_broker):
        outcome = await controller.on_risk_breach(credential, mock_broker, "Profit target reached")

        assert outcome.deactivated
        mock_broker.place_order.assert_not_awaited()
        assert await store.list_active() == []

    @pytest.mark.asyncio
    async def test_failed_forced_close_stays_active(self, controller, store, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        mock_broker.place_order = AsyncMock(side_effect=OrderPlacementError("timeout"))

        outcome = await controller.force_close(credential, mock_broker)

        assert not outcome.deactivated
        assert not outcome.completed
        assert credential.active
        assert await store.find_open_position(credential.id) is not None

    @pytest.mark.asyncio
    async def test_concurrent_events_issue_one_close(self, controller, store, credential, mock_broker, ce_contract):
        await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)
        mock_broker.place_order.reset_mock()

        await asyncio.gather(
            controller.force_close(credential, mock_broker, "operator stop"),
            controller.on_signal(credential, mock_broker, EXIT),
        )

        assert mock_broker.place_order.await_count == 1


class TestInactiveCredentials:

    @pytest.mark.asyncio
    async def test_signal_after_deactivation_is_ignored(self, controller, store, credential, mock_broker, ce_contract):
        await store.deactivate(credential.id)

        outcome = await controller.on_signal(credential, mock_broker, BUY_CE, ce_contract, quantity=75)

        assert outcome.action == TradeAction.NOOP
        assert outcome.reason == "credential inactive"
        mock_broker.place_order.assert_not_awaited()
        assert await store.find_open_position(credential.id) is None

    @pytest.mark.asyncio
    async def test_store_state_wins_over_stale_copy(self, controller, store, credential, mock_broker, ce_contract):
        # Tick holds a copy loaded before the stop
        stale = replace(credential)
        await controller.force_close(credential, mock_broker, "operator stop")

        outcome = await controller.on_signal(stale, mock_broker, BUY_CE, ce_contract, quantity=75)

        assert outcome.reason == "credential inactive"
        assert not stale.active
        mock_broker.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_credential_is_ignored(self, controller, credential, mock_broker, ce_contract):
        stranger = replace(credential, id=4242)

        outcome = await controller.on_signal(stranger, mock_broker, BUY_CE, ce_contract, quantity=75)

        assert outcome.reason == "credential inactive"
        mock_broker.place_order.assert_not_awaited()
