"""
Prometheus metrics for the grid engine.

Organized into: ledger, lifecycle, spread.
"""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest
from typing import Optional, TYPE_CHECKING

from dexgrid.execution.orders import OrderType

if TYPE_CHECKING:
    from dexgrid.execution.order_manager import OrderManager
    from dexgrid.execution.orders import FillBatchResult

_BUCKETS = ("available", "committed_grid", "committed_chain", "virtuel", "cache_funds", "pending_proceeds")


class GridMetrics:
    """Ledger and lifecycle metrics for one or more grid managers."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Ledger Metrics ===
        self.fund_bucket = Gauge(
            'grid_fund_bucket',
            'Fund ledger bucket value (asset units)',
            labelnames=['bot', 'bucket', 'side'],
            registry=reg
        )
        self.total_grid = Gauge(
            'grid_total_grid',
            'Funds attributed to the grid (asset units)',
            labelnames=['bot', 'side'],
            registry=reg
        )
        self.total_chain = Gauge(
            'grid_total_chain',
            'Free plus on-chain committed funds (asset units)',
            labelnames=['bot', 'side'],
            registry=reg
        )

        # === Lifecycle Metrics ===
        self.fills_total = Counter(
            'grid_fills_total',
            'Fills applied',
            labelnames=['bot', 'type'],
            registry=reg
        )
        self.fills_skipped = Counter(
            'grid_fills_skipped_total',
            'Fill records skipped as malformed or unmatched',
            labelnames=['bot'],
            registry=reg
        )
        self.fills_duplicate = Counter(
            'grid_fills_duplicate_total',
            'Fill records ignored as already applied',
            labelnames=['bot'],
            registry=reg
        )
        self.activations = Counter(
            'grid_orders_activated_total',
            'Orders handed to the runner for placement',
            labelnames=['bot'],
            registry=reg
        )
        self.rotations = Counter(
            'grid_rotations_total',
            'Rotations prepared',
            labelnames=['bot'],
            registry=reg
        )
        self.partial_moves = Counter(
            'grid_partial_moves_total',
            'Partial orders moved along the ladder',
            labelnames=['bot'],
            registry=reg
        )
        self.live_orders = Gauge(
            'grid_live_orders',
            'ACTIVE + PARTIAL orders',
            labelnames=['bot', 'type'],
            registry=reg
        )

        # === Spread Metrics ===
        self.spread_pct = Gauge(
            'grid_spread_pct',
            'Current spread between best ask and best bid (%)',
            labelnames=['bot'],
            registry=reg
        )
        self.out_of_spread = Gauge(
            'grid_out_of_spread',
            '1 when the spread exceeds target + increment',
            labelnames=['bot'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    def render(self) -> bytes:
        return generate_latest(self.registry)

    def record_batch(self, bot: str, result: "FillBatchResult") -> None:
        for order_type, count in result.filled_counts.items():
            if count:
                self.fills_total.labels(bot=bot, type=order_type.value).inc(count)
        if result.skipped:
            self.fills_skipped.labels(bot=bot).inc(len(result.skipped))
        if result.duplicates:
            self.fills_duplicate.labels(bot=bot).inc(len(result.duplicates))
        if result.orders_to_rotate:
            self.rotations.labels(bot=bot).inc(len(result.orders_to_rotate))
        if result.partial_moves:
            self.partial_moves.labels(bot=bot).inc(len(result.partial_moves))

    def record_activations(self, bot: str, count: int) -> None:
        if count > 0:
            self.activations.labels(bot=bot).inc(count)

    def update_from_manager(self, manager: "OrderManager") -> None:
        bot = manager.bot_key
        funds = manager.funds
        for side in ("buy", "sell"):
            for bucket in _BUCKETS:
                self.fund_bucket.labels(bot=bot, bucket=bucket, side=side).set(getattr(funds, bucket).get(side))
            self.total_grid.labels(bot=bot, side=side).set(funds.total_grid.get(side))
            self.total_chain.labels(bot=bot, side=side).set(funds.total_chain.get(side))

        for order_type in (OrderType.BUY, OrderType.SELL):
            self.live_orders.labels(bot=bot, type=order_type.value).set(manager.count_orders_by_type(order_type))
        self.spread_pct.labels(bot=bot).set(manager.calculate_current_spread())
        self.out_of_spread.labels(bot=bot).set(1 if manager.out_of_spread else 0)
