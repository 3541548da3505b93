"""
Tests for fill processing in OrderManager.

Tests cover:
- Partial fills: proceeds, remaining size, PARTIAL state
- Full fills: conversion to SPREAD and rebalance tally
- No double-crediting of the same fill; equal partial fills both count
- Late reports on vacated slots; fills on slots that never held an order
- Malformed and unmatched records
- Mapping raw chain operations to fills
- fetch_order_updates cheap path and error handling
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import make_manager, slot
from dexgrid.execution.orders import FillBatchResult, FillRecord, OrderState, OrderType, RebalanceResult


def fill_grid():
    return [
        slot("sell-0", OrderType.SELL, OrderState.ACTIVE, 1920.0, 10.0, "1.7.10"),
        slot("sell-1", OrderType.SPREAD, OrderState.VIRTUAL, 1905.0),
        slot("buy-0", OrderType.SPREAD, OrderState.VIRTUAL, 1895.0),
        slot("buy-1", OrderType.BUY, OrderState.ACTIVE, 1880.0, 200.0, "1.7.11"),
    ]


def fill_manager(**kwargs):
    return make_manager(fill_grid(), market_price=1900.0, **kwargs)


class TestPartialFills:
    @pytest.mark.asyncio
    async def test_partial_sell_fill(self):
        manager = fill_manager()
        result = await manager.process_filled_orders(
            [{"id": "sell-0", "type": "sell", "size": 0.1031, "price": 1920}]
        )

        order = manager.orders["sell-0"]
        assert manager.funds.pending_proceeds.buy == pytest.approx(197.952)
        assert order.size == pytest.approx(9.8969)
        assert order.state is OrderState.PARTIAL
        assert order.external_order_id == "1.7.10"
        assert result.partial_fills == ["sell-0"]
        assert result.filled_counts[OrderType.SELL] == 0

    @pytest.mark.asyncio
    async def test_partial_then_completion_credits_total_once(self):
        manager = fill_manager()
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 0.1031, 1920.0)])
        result = await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 9.8969, 1920.0)])

        order = manager.orders["sell-0"]
        # a rebalance may consume proceeds into orders; the credit itself is exact
        assert result.filled_counts[OrderType.SELL] == 1
        assert order.type is OrderType.SPREAD
        assert order.state is OrderState.VIRTUAL
        assert order.size == 0
        assert order.external_order_id is None

    @pytest.mark.asyncio
    async def test_partial_fill_uses_asset_precision(self):
        manager = fill_manager()
        manager.assets = {"a": {"id": "1.3.1", "precision": 4}, "b": {"id": "1.3.0", "precision": 5}}
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 0.33333333, 1920.0)])
        assert manager.orders["sell-0"].size == pytest.approx(9.6667)


class TestFullFills:
    @pytest.mark.asyncio
    async def test_full_sell_fill_converts_and_replenishes_buy(self):
        manager = fill_manager()
        result = await manager.process_filled_orders(
            [{"id": "sell-0", "type": "sell", "size": 10, "price": 1920}]
        )

        assert isinstance(result, FillBatchResult)
        assert result.filled_counts[OrderType.SELL] == 1
        assert manager.orders["sell-0"].type is OrderType.SPREAD
        assert [o.id for o in result.orders_to_place] == ["buy-0"]
        assert manager.orders["buy-0"].type is OrderType.BUY
        assert manager.orders["buy-0"].state is OrderState.ACTIVE

    @pytest.mark.asyncio
    async def test_full_buy_fill_credits_sell_side(self):
        manager = fill_manager()
        await manager.process_filled_orders([{"id": "buy-1", "type": "buy", "size": 200, "price": 1880}])
        # activation consumes proceeds, so check the remaining plus the new order
        placed = manager.orders["sell-1"]
        assert placed.type is OrderType.SELL
        assert placed.size + manager.funds.pending_proceeds.sell == pytest.approx(200 / 1880)

    @pytest.mark.asyncio
    async def test_spread_counts_follow_conversion(self):
        orders = [o for o in fill_grid() if o["id"] != "buy-1"]
        manager = make_manager(orders, market_price=1900.0, activeOrders={"buy": 0, "sell": 0})
        before = manager.current_spread_count
        await manager.process_filled_orders([{"id": "sell-0", "type": "sell", "size": 10, "price": 1920}])
        assert manager.current_spread_count == before + 1


class TestVacatedSlots:
    def quiet_manager(self):
        manager = fill_manager()
        manager.rebalance_orders = AsyncMock(return_value=RebalanceResult())
        return manager

    @pytest.mark.asyncio
    async def test_fill_on_never_live_spread_slot_is_unmatched(self):
        manager = fill_manager()
        result = await manager.process_filled_orders(
            [{"id": "buy-0", "type": "sell", "size": 5, "price": 1895}]
        )

        assert result.applied == []
        assert result.skipped == [{"id": "buy-0", "reason": "unmatched: slot never held an order"}]
        assert manager.funds.pending_proceeds.buy == 0
        assert result.orders_to_place == []
        assert manager.orders["buy-0"].type is OrderType.SPREAD

    @pytest.mark.asyncio
    async def test_late_report_on_vacated_slot_is_capped(self):
        manager = self.quiet_manager()
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 10.0, 1920.0, fill_id="1.11.1")])
        result = await manager.process_filled_orders(
            [FillRecord("sell-0", OrderType.SELL, 12.0, 1920.0, fill_id="1.11.2")]
        )

        assert len(result.applied) == 1
        assert result.filled_counts[OrderType.SELL] == 1
        assert manager.funds.pending_proceeds.buy == pytest.approx(2 * 10.0 * 1920.0)

    @pytest.mark.asyncio
    async def test_vacated_slot_accepts_one_late_report(self):
        manager = self.quiet_manager()
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 10.0, 1920.0, fill_id="1.11.1")])
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 1.0, 1920.0, fill_id="1.11.2")])
        result = await manager.process_filled_orders(
            [FillRecord("sell-0", OrderType.SELL, 1.0, 1920.0, fill_id="1.11.3")]
        )

        assert result.applied == []
        assert len(result.skipped) == 1
        assert manager.funds.pending_proceeds.buy == pytest.approx(11.0 * 1920.0)

    @pytest.mark.asyncio
    async def test_late_report_of_other_type_is_rejected(self):
        manager = self.quiet_manager()
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 10.0, 1920.0, fill_id="1.11.1")])
        result = await manager.process_filled_orders(
            [FillRecord("sell-0", OrderType.BUY, 10.0, 1920.0, fill_id="1.11.2")]
        )

        assert result.applied == []
        assert manager.funds.pending_proceeds.sell == 0


class TestDoubleCredit:
    @pytest.mark.asyncio
    async def test_same_fill_twice_is_ignored(self):
        manager = fill_manager()
        record = {"id": "sell-0", "type": "sell", "size": 0.5, "price": 1920, "fillId": "1.11.7"}
        await manager.process_filled_orders([record])
        result = await manager.process_filled_orders([record])

        assert manager.funds.pending_proceeds.buy == pytest.approx(960)
        assert manager.orders["sell-0"].size == pytest.approx(9.5)
        assert len(result.duplicates) == 1
        assert result.applied == []

    @pytest.mark.asyncio
    async def test_equal_partial_fills_both_apply(self):
        manager = fill_manager()
        await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 1.0, 1920.0)])
        result = await manager.process_filled_orders([FillRecord("sell-0", OrderType.SELL, 1.0, 1920.0)])

        assert result.duplicates == []
        assert manager.orders["sell-0"].size == pytest.approx(8.0)
        assert manager.funds.pending_proceeds.buy == pytest.approx(2 * 1920.0)

    @pytest.mark.asyncio
    async def test_repeated_completing_fill_is_ignored(self):
        manager = fill_manager()
        record = {"id": "sell-0", "type": "sell", "size": 10, "price": 1920}
        await manager.process_filled_orders([record])
        result = await manager.process_filled_orders([record])

        assert len(result.duplicates) == 1
        assert result.applied == []
        assert result.filled_counts[OrderType.SELL] == 0

    @pytest.mark.asyncio
    async def test_recalculation_does_not_credit_again(self):
        manager = fill_manager()
        await manager.process_filled_orders([{"id": "sell-0", "type": "sell", "size": 0.5, "price": 1920}])
        for _ in range(3):
            manager.recalculate_funds()
        assert manager.funds.pending_proceeds.buy == pytest.approx(960)

    @pytest.mark.asyncio
    async def test_distinct_fill_ids_both_apply(self):
        manager = fill_manager()
        await manager.process_filled_orders([
            FillRecord("sell-0", OrderType.SELL, 0.5, 1920.0, fill_id="1.11.1"),
            FillRecord("sell-0", OrderType.SELL, 0.5, 1920.0, fill_id="1.11.2"),
        ])
        assert manager.orders["sell-0"].size == pytest.approx(9.0)


class TestMalformedFills:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("record", [
        {"id": "sell-0", "type": "sell", "size": -1, "price": 1920},
        {"id": "sell-0", "type": "sell", "size": 1, "price": 0},
        {"id": "sell-99", "type": "sell", "size": 1, "price": 1920},
        {"id": "sell-1", "type": "spread", "size": 1, "price": 1905},
        {"id": "sell-0", "type": "buy", "size": 1, "price": 1920},
        {"id": "sell-0", "size": 1},
        {"id": "sell-0", "type": "bogus", "size": 1, "price": 1920},
    ])
    async def test_skipped_not_fatal(self, record):
        manager = fill_manager()
        result = await manager.process_filled_orders([record])

        assert len(result.skipped) == 1
        assert result.applied == []
        assert manager.funds.pending_proceeds.buy == 0
        assert manager.orders["sell-0"].size == 10

    @pytest.mark.asyncio
    async def test_batch_continues_after_bad_record(self):
        manager = fill_manager()
        result = await manager.process_filled_orders([
            {"id": "nope", "type": "sell", "size": 1, "price": 1},
            {"id": "sell-0", "type": "sell", "size": 1, "price": 1920},
        ])
        assert len(result.skipped) == 1
        assert len(result.applied) == 1

    @pytest.mark.asyncio
    async def test_empty_batch_returns_result(self):
        manager = fill_manager()
        result = await manager.process_filled_orders([])
        assert isinstance(result, FillBatchResult)
        assert result.orders_to_place == []


class TestChainOperations:
    def test_fill_from_chain_operation(self):
        manager = fill_manager()
        manager.assets = {"a": {"id": "1.3.1", "precision": 4}, "b": {"id": "1.3.0", "precision": 5}}
        record = manager.fill_from_chain_operation({
            "id": "1.11.5",
            "order_id": "1.7.10",
            "pays": {"amount": 1031, "asset_id": "1.3.1"},
            "receives": {"amount": 19795200, "asset_id": "1.3.0"},
        })

        assert record.id == "sell-0"
        assert record.type is OrderType.SELL
        assert record.size == pytest.approx(0.1031)
        assert record.price == 1920.0
        assert record.fill_id == "1.11.5"

    def test_unmatched_operation(self):
        manager = fill_manager()
        assert manager.fill_from_chain_operation({"order_id": "1.7.404", "pays": {"amount": 1}}) is None

    def test_asset_mismatch(self):
        manager = fill_manager()
        manager.assets = {"a": {"id": "1.3.1", "precision": 4}, "b": {"id": "1.3.0", "precision": 5}}
        op = {"order_id": "1.7.10", "pays": {"amount": 1031, "asset_id": "1.3.0"}}
        assert manager.fill_from_chain_operation(op) is None


class TestFetchOrderUpdates:
    @pytest.mark.asyncio
    async def test_cheap_path_returns_live_orders(self):
        client = MagicMock()
        client.fetch_fills = AsyncMock(return_value=[])
        manager = fill_manager(client=client, account="trader")

        updates = await manager.fetch_order_updates()

        assert {o.id for o in updates.remaining} == {"sell-0", "buy-1"}
        assert updates.result is None
        client.fetch_fills.assert_not_called()

    @pytest.mark.asyncio
    async def test_calculate_applies_fills(self):
        client = MagicMock()
        client.fetch_fills = AsyncMock(return_value=[
            {"id": "1.11.5", "order_id": "1.7.10", "pays": {"amount": 0.5}},
        ])
        manager = fill_manager(client=client, account="trader")

        updates = await manager.fetch_order_updates(calculate=True)

        client.fetch_fills.assert_awaited_once_with("trader", "IOB.XRP/BTS")
        assert len(updates.filled) == 1
        assert manager.orders["sell-0"].size == pytest.approx(9.5)

    @pytest.mark.asyncio
    async def test_fetch_error_is_logged_not_raised(self):
        client = MagicMock()
        client.fetch_fills = AsyncMock(side_effect=RuntimeError("node down"))
        manager = fill_manager(client=client, account="trader")

        updates = await manager.fetch_order_updates(calculate=True)

        assert updates.result is None
        assert updates.filled == []
