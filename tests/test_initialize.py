"""
Tests for grid initialization and collaborator handling.

Tests cover:
- Fixed, pool and market price modes
- Bounds violations raise before any mutation
- Balance and metadata lookups through the ChainClient
- Initial tranche selection
"""

from unittest.mock import AsyncMock

import pytest

from conftest import make_manager, slot
from dexgrid.execution.orders import MarketPriceError, OrderState, OrderType

META = {
    "IOB.XRP": {"id": "1.3.1", "precision": 6},
    "BTS": {"id": "1.3.0", "precision": 5},
}


def chain_client(price=100.0, balances=None):
    client = AsyncMock()
    client.resolve_market_price.return_value = price
    client.lookup_asset_metadata.side_effect = lambda symbol: META[symbol]
    client.get_account_balances.return_value = balances if balances is not None else {
        "1.3.0": 1000 * 10 ** 5,
        "1.3.1": 10 * 10 ** 6,
    }
    return client


class TestFixedPriceInit:
    @pytest.mark.asyncio
    async def test_places_closest_orders_per_side(self):
        manager = make_manager()
        placements = await manager.initialize()

        assert [o.type for o in placements] == [OrderType.SELL] * 2 + [OrderType.BUY] * 2
        assert all(o.state is OrderState.ACTIVE and o.external_order_id is None for o in placements)

        sells = sorted(o.price for o in manager.orders.values() if o.type is OrderType.SELL)
        buys = sorted((o.price for o in manager.orders.values() if o.type is OrderType.BUY), reverse=True)
        assert [o.price for o in placements[:2]] == sells[:2]
        assert [o.price for o in placements[2:]] == buys[:2]

    @pytest.mark.asyncio
    async def test_ledger_after_init(self):
        manager = make_manager()
        await manager.initialize()
        funds = manager.funds

        assert funds.committed_grid.sell + funds.virtuel.sell == pytest.approx(10.0)
        assert funds.committed_grid.buy + funds.virtuel.buy == pytest.approx(1000.0)
        assert funds.committed_chain.buy == 0.0
        assert funds.available.buy == pytest.approx(0.0, abs=1e-6)
        assert manager.target_spread_count == manager.current_spread_count > 0

    @pytest.mark.asyncio
    async def test_out_of_bounds_price(self):
        manager = make_manager(minPrice=150, maxPrice=300)
        with pytest.raises(MarketPriceError):
            await manager.initialize()
        assert manager.orders == {}
        assert manager.min_price is None

    @pytest.mark.asyncio
    async def test_pending_proceeds_survive_reinit(self):
        manager = make_manager()
        manager.funds.credit_proceeds("sell", 0.5)
        await manager.initialize()
        assert manager.funds.pending_proceeds.sell == 0.5

    @pytest.mark.asyncio
    async def test_percentage_funds_without_balances(self):
        manager = make_manager(botFunds={"buy": "100%", "sell": "100%"})
        placements = await manager.initialize()

        assert placements == []
        assert all(o.size == 0 for o in manager.orders.values())


class TestPoolPriceInit:
    @pytest.mark.asyncio
    async def test_uses_client_price_metadata_and_balances(self):
        client = chain_client()
        manager = make_manager(
            marketPrice="pool", client=client, account="grid-account",
            botFunds={"buy": "50%", "sell": "50%"},
        )
        placements = await manager.initialize()

        client.resolve_market_price.assert_awaited_with("IOB.XRP/BTS", "pool")
        client.get_account_balances.assert_awaited_with("grid-account")
        assert manager.market_price == 100.0
        assert manager.assets["a"] == {"id": "1.3.1", "precision": 6}
        assert len(placements) == 4

        funds = manager.funds
        assert funds.committed_grid.buy + funds.virtuel.buy == pytest.approx(500.0, abs=1e-5)
        assert funds.committed_grid.sell + funds.virtuel.sell == pytest.approx(5.0, abs=1e-6)
        assert funds.total_chain.buy == pytest.approx(1000.0)
        assert funds.available.buy == pytest.approx(0.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_min_order_size_follows_precision(self):
        manager = make_manager(marketPrice="pool", client=chain_client(), account="grid-account")
        await manager.initialize()
        assert manager.min_order_size("buy") == pytest.approx(50 * 10 ** -5)
        assert manager.min_order_size("sell") == pytest.approx(50 * 10 ** -6)

    @pytest.mark.asyncio
    async def test_failing_price_client(self):
        client = chain_client()
        client.resolve_market_price.side_effect = RuntimeError("node unreachable")
        manager = make_manager(marketPrice="pool", client=client, account="grid-account")

        with pytest.raises(MarketPriceError):
            await manager.initialize()
        assert manager.orders == {}

    @pytest.mark.asyncio
    async def test_unresolved_price_keeps_existing_grid(self):
        client = chain_client(price=None)
        existing = [
            slot("sell-0", OrderType.SELL, OrderState.ACTIVE, 104.0, 1.0, "1.7.1"),
            slot("buy-0", OrderType.BUY, OrderState.ACTIVE, 96.0, 10.0, "1.7.2"),
        ]
        manager = make_manager(existing, marketPrice="pool", client=client, account="grid-account")
        before = manager.funds.snapshot()

        with pytest.raises(MarketPriceError):
            await manager.initialize()
        assert set(manager.orders) == {"sell-0", "buy-0"}
        assert manager.funds.snapshot() == before

    @pytest.mark.asyncio
    async def test_balance_failure_is_not_fatal(self):
        client = chain_client()
        client.get_account_balances.side_effect = RuntimeError("timeout")
        manager = make_manager(marketPrice="market", client=client, account="grid-account")

        placements = await manager.initialize()

        client.resolve_market_price.assert_awaited_with("IOB.XRP/BTS", "market")
        assert len(placements) == 4

    @pytest.mark.asyncio
    async def test_refresh_market_price_keeps_last_on_failure(self):
        client = chain_client()
        manager = make_manager(marketPrice="pool", client=client, account="grid-account")
        await manager.initialize()

        client.resolve_market_price.return_value = float("nan")
        assert await manager.refresh_market_price() == 100.0
        client.resolve_market_price.return_value = 101.0
        assert await manager.refresh_market_price() == 101.0


class TestAccountTotals:
    @pytest.mark.asyncio
    async def test_refresh_settles_pending(self):
        client = chain_client()
        manager = make_manager(marketPrice="pool", client=client, account="grid-account")
        await manager.initialize()
        manager.funds.credit_proceeds("buy", 25.0)

        assert await manager.refresh_account_totals() is True
        assert manager.funds.pending_proceeds.buy == 0.0

    @pytest.mark.asyncio
    async def test_refresh_without_client(self):
        manager = make_manager()
        assert await manager.refresh_account_totals() is False


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_summary(self):
        manager = make_manager()
        await manager.initialize()
        status = manager.status()

        assert status["bot"] == "test-bot"
        assert status["pair"] == "IOB.XRP/BTS"
        assert status["orders"]["sell"]["active"] == 2
        assert status["spread"]["target_percent"] == 2
        assert set(status["funds"]) >= {"available", "committed", "total", "virtuel", "cacheFunds"}
