"""
Grid generator - builds and sizes the static price ladder.

This module handles:
- Geometric level generation between the resolved min/max bounds
- Classification of each level as BUY, SELL or SPREAD around the market
- Proportional sizing of each side from its fund allotment
- Geometric sizing of rotation replacements

Pure calculation module: no I/O and no ledger mutation. Identical inputs
produce bit-identical prices, ids and classifications.

Ids: sell levels are numbered from the top of the ladder down ("sell-0"
is the highest price), buy levels from the market down ("buy-0" is the
closest buy level). The returned list is in descending price order.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, TYPE_CHECKING

from dexgrid.core.numeric import blockchain_to_float
from dexgrid.execution.orders import GridOrder, MarketPriceError, OrderState, OrderType

if TYPE_CHECKING:
    from dexgrid.config.manager_config import ManagerConfig

log = logging.getLogger("gridbot")

# Target spread is raised to at least this many increments
MIN_SPREAD_FACTOR = 2


@dataclass
class GridBuildResult:
    """Result of grid construction."""
    orders: List[GridOrder]
    initial_spread_count: Dict[str, int] = field(default_factory=lambda: {"buy": 0, "sell": 0})
    target_spread_percent: float = 0.0  # effective value after auto-adjust
    market_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0


def create_order_grid(
    config: "ManagerConfig",
    market_price: Optional[float] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> GridBuildResult:
    """
    Build the ladder of VIRTUAL slots.

    Sell levels start half a step above the market and climb by
    (1 + increment) while <= max_price; buy levels start half a step below
    and descend by (1 - increment) while >= min_price. Any level whose
    distance from the market is within the target spread becomes SPREAD,
    and the level closest to the market on each side is always SPREAD.

    Args:
        config: Manager configuration (increment, target spread, bounds)
        market_price: Resolved market price (defaults to config.market_price)
        min_price: Resolved lower bound (defaults to config bound resolved on market)
        max_price: Resolved upper bound (defaults to config bound resolved on market)

    Returns:
        GridBuildResult with orders in descending price order

    Raises:
        MarketPriceError: market price missing or outside [min_price, max_price]
    """
    mp = market_price if market_price is not None else config.market_price
    if mp is None or not math.isfinite(mp) or mp <= 0:
        raise MarketPriceError(f"Invalid market price: {mp}")
    lo = min_price if min_price is not None else config.min_price.resolve(mp, "min")
    hi = max_price if max_price is not None else config.max_price.resolve(mp, "max")
    if not (lo <= mp <= hi):
        raise MarketPriceError(f"Market price {mp} outside bounds [{lo}, {hi}]")

    increment = config.increment_percent
    step_up = 1 + increment / 100
    step_down = 1 - increment / 100

    min_spread = increment * MIN_SPREAD_FACTOR
    target_spread = max(config.target_spread_percent, min_spread)
    if config.target_spread_percent < min_spread:
        log.warning(
            f"targetSpreadPercent ({config.target_spread_percent}%) is below "
            f"{MIN_SPREAD_FACTOR}x incrementPercent; using {min_spread:.2f}%"
        )
    band = target_spread / 100

    sell_levels: List[float] = []
    price = mp * math.sqrt(step_up)
    while price <= hi:
        sell_levels.append(price)
        price *= step_up
    sell_levels.reverse()

    buy_levels: List[float] = []
    price = mp * math.sqrt(step_down)
    while price >= lo:
        buy_levels.append(price)
        price *= step_down

    spread_count = {"buy": 0, "sell": 0}
    orders: List[GridOrder] = []

    last_sell = len(sell_levels) - 1
    for i, px in enumerate(sell_levels):
        is_spread = i == last_sell or abs(px - mp) / mp <= band
        if is_spread:
            spread_count["sell"] += 1
        orders.append(_slot(f"sell-{i}", OrderType.SPREAD if is_spread else OrderType.SELL, px))

    for i, px in enumerate(buy_levels):
        is_spread = i == 0 or abs(px - mp) / mp <= band
        if is_spread:
            spread_count["buy"] += 1
        orders.append(_slot(f"buy-{i}", OrderType.SPREAD if is_spread else OrderType.BUY, px))

    return GridBuildResult(
        orders=orders,
        initial_spread_count=spread_count,
        target_spread_percent=target_spread,
        market_price=mp,
        min_price=lo,
        max_price=hi,
    )


def _slot(slot_id: str, order_type: OrderType, price: float) -> GridOrder:
    return GridOrder(id=slot_id, type=order_type, state=OrderState.VIRTUAL, price=price, size=0.0)


def allocate_funds_by_weights(
    total_funds: float,
    n: int,
    weight: float,
    increment_factor: float,
    reverse: bool = False,
    precision: Optional[int] = None,
) -> List[float]:
    """
    Split `total_funds` over `n` positions with weights base^(idx * weight).

    base = 1 - increment_factor. Position idx 0 is the one nearest the
    market; `reverse` flips the indexing for lists ordered far-to-near.
    With a precision, sizes are whole asset units and never sum above
    `total_funds`; the rounding remainder goes to the nearest position.
    """
    if n <= 0:
        return []
    if not math.isfinite(total_funds) or total_funds <= 0:
        return [0.0] * n
    if not (0 < increment_factor < 1):
        raise ValueError(f"Invalid increment factor: {increment_factor}")

    base = 1 - increment_factor
    raw = [base ** ((n - 1 - i if reverse else i) * weight) for i in range(n)]
    total_weight = sum(raw) or 1.0

    if precision is None:
        return [(w / total_weight) * total_funds for w in raw]

    scale = 10 ** int(precision)
    total_units = math.floor(total_funds * scale)
    units = [math.floor((w / total_weight) * total_units) for w in raw]
    nearest = n - 1 if reverse else 0
    units[nearest] += total_units - sum(units)
    return [blockchain_to_float(u, precision) for u in units]


def _fit_side(
    funds: float,
    n: int,
    weight: float,
    increment_factor: float,
    reverse: bool,
    min_size: float,
    precision: Optional[int],
) -> List[float]:
    """Allocate a side, dropping the furthest positions until all meet min_size."""
    for k in range(n, 0, -1):
        sizes = allocate_funds_by_weights(funds, k, weight, increment_factor, reverse, precision)
        if min_size <= 0 or min(sizes) >= min_size:
            padding = [0.0] * (n - k)
            # far positions are the first ones when the list is reversed
            return padding + sizes if reverse else sizes + padding
    return [0.0] * n


def calculate_order_sizes(
    orders: Sequence[GridOrder],
    config: "ManagerConfig",
    sell_funds: float,
    buy_funds: float,
    min_sell_size: float = 0.0,
    min_buy_size: float = 0.0,
    precision_a: Optional[int] = None,
    precision_b: Optional[int] = None,
) -> List[GridOrder]:
    """
    Size SELL and BUY levels from their side's funds.

    Orders nearest the market receive the largest share when the side's
    weight is positive. SPREAD levels get size 0. Per side, the sum never
    exceeds the supplied funds.

    Returns:
        New GridOrder objects, in input order.
    """
    increment_factor = config.increment_percent / 100
    sells = [o for o in orders if o.type is OrderType.SELL]
    buys = [o for o in orders if o.type is OrderType.BUY]

    # sells arrive far-to-near (descending price), buys near-to-far
    sell_sizes = _fit_side(
        sell_funds, len(sells), config.weight_distribution.sell, increment_factor,
        True, min_sell_size, precision_a,
    )
    buy_sizes = _fit_side(
        buy_funds, len(buys), config.weight_distribution.buy, increment_factor,
        False, min_buy_size, precision_b,
    )
    size_by_id = {o.id: s for o, s in zip(sells, sell_sizes)}
    size_by_id.update({o.id: s for o, s in zip(buys, buy_sizes)})

    return [o.copy(size=size_by_id.get(o.id, 0.0)) for o in orders]


def calculate_rotation_order_sizes(
    funds: float,
    count: int,
    config: "ManagerConfig",
    side: str,
    precision: Optional[int] = None,
) -> List[float]:
    """
    Geometric sizes for `count` replacement orders, nearest-to-market first.

    The side's weight drives the decay, so the first size is the largest
    for positive weights. Sizes sum to at most `funds`.
    """
    if count <= 0:
        return []
    weight = config.weight_distribution.get(side)
    return allocate_funds_by_weights(funds, count, weight, config.increment_percent / 100, False, precision)
