"""
Tests for the grid generator.

Tests cover:
- Level generation and SPREAD classification
- Determinism
- Bound validation
- Per-side sizing bounds and weight shape
- Rotation sizing
"""

import math

import pytest

from dexgrid.config.manager_config import ManagerConfig
from dexgrid.execution.orders import MarketPriceError, OrderState, OrderType
from dexgrid.strategy.grid import (
    allocate_funds_by_weights,
    calculate_order_sizes,
    calculate_rotation_order_sizes,
    create_order_grid,
)


def scenario_config(**overrides) -> ManagerConfig:
    params = {
        "marketPrice": 100,
        "minPrice": 50,
        "maxPrice": 200,
        "incrementPercent": 10,
        "targetSpreadPercent": 20,
        "botFunds": {"buy": 1000, "sell": 10},
    }
    params.update(overrides)
    return ManagerConfig.from_dict(params)


class TestCreateOrderGrid:
    def test_concrete_scenario_levels(self):
        build = create_order_grid(scenario_config())
        sells = [o for o in build.orders if o.id.startswith("sell-")]
        buys = [o for o in build.orders if o.id.startswith("buy-")]

        assert len(sells) == 7
        assert len(buys) == 7
        assert sells[-1].price == pytest.approx(100 * math.sqrt(1.1))
        assert buys[0].price == pytest.approx(100 * math.sqrt(0.9))
        assert all(50 <= o.price <= 200 for o in build.orders)

    def test_geometric_step(self):
        build = create_order_grid(scenario_config())
        sells = [o for o in build.orders if o.id.startswith("sell-")]
        for upper, lower in zip(sells, sells[1:]):
            assert upper.price / lower.price == pytest.approx(1.1)

    def test_spread_band_classification(self):
        build = create_order_grid(scenario_config())
        spread = [o for o in build.orders if o.type is OrderType.SPREAD]

        assert build.initial_spread_count == {"buy": 2, "sell": 2}
        assert all(80 <= o.price <= 120 for o in spread)
        assert all(o.type is OrderType.SELL for o in build.orders if o.price > 120)
        assert all(o.type is OrderType.BUY for o in build.orders if o.price < 80)

    def test_descending_price_order_and_ids(self):
        build = create_order_grid(scenario_config())
        prices = [o.price for o in build.orders]

        assert prices == sorted(prices, reverse=True)
        assert build.orders[0].id == "sell-0"
        assert all(o.state is OrderState.VIRTUAL and o.size == 0 for o in build.orders)

    def test_deterministic(self):
        first = create_order_grid(scenario_config())
        second = create_order_grid(scenario_config())
        assert [(o.id, o.type, o.price) for o in first.orders] == [(o.id, o.type, o.price) for o in second.orders]

    def test_nearest_level_is_always_spread(self):
        build = create_order_grid(scenario_config(incrementPercent=1, targetSpreadPercent=0.1))
        by_id = {o.id: o for o in build.orders}

        assert by_id["buy-0"].type is OrderType.SPREAD
        last_sell = max(int(i.split("-")[1]) for i in by_id if i.startswith("sell-"))
        assert by_id[f"sell-{last_sell}"].type is OrderType.SPREAD

    def test_target_spread_raised_to_two_increments(self):
        build = create_order_grid(scenario_config(incrementPercent=5, targetSpreadPercent=4))
        assert build.target_spread_percent == pytest.approx(10)

    def test_market_outside_bounds_raises(self):
        config = scenario_config()
        with pytest.raises(MarketPriceError):
            create_order_grid(config, market_price=250, min_price=50, max_price=200)

    def test_missing_market_price_raises(self):
        config = scenario_config(marketPrice="pool")
        with pytest.raises(MarketPriceError):
            create_order_grid(config)


class TestCalculateOrderSizes:
    def test_side_totals_bounded_by_funds(self):
        config = scenario_config()
        sized = calculate_order_sizes(create_order_grid(config).orders, config, sell_funds=10, buy_funds=1000)

        sell_total = sum(o.size for o in sized if o.type is OrderType.SELL)
        buy_total = sum(o.size for o in sized if o.type is OrderType.BUY)
        assert sell_total <= 10 + 1e-9
        assert buy_total <= 1000 + 1e-9
        assert sell_total == pytest.approx(10)
        assert buy_total == pytest.approx(1000)

    def test_spread_levels_get_zero(self):
        config = scenario_config()
        sized = calculate_order_sizes(create_order_grid(config).orders, config, sell_funds=10, buy_funds=1000)
        assert all(o.size == 0 for o in sized if o.type is OrderType.SPREAD)

    def test_nearest_orders_largest_with_positive_weight(self):
        config = scenario_config(weightDistribution={"buy": 1, "sell": 1})
        sized = calculate_order_sizes(create_order_grid(config).orders, config, sell_funds=10, buy_funds=1000)
        buys = sorted((o for o in sized if o.type is OrderType.BUY), key=lambda o: -o.price)
        sells = sorted((o for o in sized if o.type is OrderType.SELL), key=lambda o: o.price)

        assert [o.size for o in buys] == sorted((o.size for o in buys), reverse=True)
        assert [o.size for o in sells] == sorted((o.size for o in sells), reverse=True)

    def test_furthest_dropped_below_min_size(self):
        config = scenario_config()
        sized = calculate_order_sizes(
            create_order_grid(config).orders, config, sell_funds=10, buy_funds=1000, min_sell_size=3
        )
        sells = [o for o in sized if o.type is OrderType.SELL]  # far to near

        assert [o.size for o in sells[:2]] == [0.0, 0.0]
        assert all(o.size >= 3 for o in sells[2:])

    def test_does_not_mutate_input(self):
        config = scenario_config()
        orders = create_order_grid(config).orders
        calculate_order_sizes(orders, config, sell_funds=10, buy_funds=1000)
        assert all(o.size == 0 for o in orders)


class TestAllocation:
    def test_precision_never_exceeds_funds(self):
        sizes = allocate_funds_by_weights(1.0, 3, 0.5, 0.1, precision=2)
        assert sum(sizes) <= 1.0 + 1e-9
        assert all(round(s, 2) == s for s in sizes)

    def test_zero_funds(self):
        assert allocate_funds_by_weights(0, 3, 0.5, 0.1) == [0.0, 0.0, 0.0]

    def test_invalid_increment(self):
        with pytest.raises(ValueError):
            allocate_funds_by_weights(10, 3, 0.5, 1.5)

    def test_rotation_sizes_nearest_first(self):
        config = scenario_config(weightDistribution={"buy": 1, "sell": 1})
        sizes = calculate_rotation_order_sizes(100.0, 4, config, "buy")

        assert len(sizes) == 4
        assert sum(sizes) == pytest.approx(100.0)
        assert sizes == sorted(sizes, reverse=True)
