"""
OrderManager - the grid lifecycle state machine for one trading pair.

This module handles:
- Grid initialization (market price, bounds, sizing, initial tranche)
- Fill ingestion, deduplication and proceeds crediting
- Fill-driven rebalancing: spread-slot activation or rotation
- Crossed partial-order moves
- Spread-width monitoring
- Placement / rotation confirmation from the orchestrating runner

Architecture:
    The manager owns the order collection and its FundLedger exclusively.
    It decides; it never places or cancels orders itself. The runner
    executes the returned decisions through the ChainClient and confirms
    them back with synchronize_placement / complete_order_rotation.

Thread Safety:
    Not thread-safe. Callers serialize lifecycle calls (one polling loop).
    The only suspension points are the awaited ChainClient calls.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union, TYPE_CHECKING

from dexgrid.core.numeric import blockchain_to_float, compute_size_after_fill, min_size_for_precision
from dexgrid.core.utils import BoundedSet
from dexgrid.execution.orders import (
    FillBatchResult,
    FillRecord,
    GridOrder,
    MarketPriceError,
    OrderRef,
    OrderState,
    OrderType,
    OrderUpdates,
    PartialMove,
    RebalanceResult,
    RotationPlan,
    TRADING_TYPES,
    side_of,
)
from dexgrid.infra.logging_cfg import DEBUG, ERROR, INFO, WARNING, log_event
from dexgrid.state.fund_ledger import FundLedger
from dexgrid.strategy.grid import (
    MIN_SPREAD_FACTOR,
    allocate_funds_by_weights,
    calculate_order_sizes,
    calculate_rotation_order_sizes,
    create_order_grid,
)

if TYPE_CHECKING:
    from dexgrid.config.manager_config import ManagerConfig
    from dexgrid.execution.chain_client import ChainClient

log = logging.getLogger("gridbot")

# Cache share of total.grid (in %) above which a side should be re-sized
GRID_REGENERATION_PERCENTAGE = 3.0
FILL_DEDUPE_CAPACITY = 10_000
SIZE_EPSILON = 1e-12

FillInput = Union[FillRecord, Dict[str, Any]]
OrderInfo = Union[OrderRef, GridOrder, Dict[str, Any]]


class OrderManager:
    """
    Grid lifecycle and fund accounting for a single pair.

    Dependencies are injected via the constructor; no module-level client.
    """

    def __init__(
        self,
        config: "ManagerConfig",
        client: Optional["ChainClient"] = None,
        account: Optional[str] = None,
    ) -> None:
        self.config = config
        self.client = client
        self.account = account or config.account

        self.orders: Dict[str, GridOrder] = {}
        self.assets: Dict[str, Dict[str, Any]] = {}

        self.market_price: Optional[float] = config.market_price if config.price_mode == "fixed" else None
        self.min_price: Optional[float] = None
        self.max_price: Optional[float] = None
        self.target_spread_percent = max(
            config.target_spread_percent, config.increment_percent * MIN_SPREAD_FACTOR
        )

        fees_side = None
        if config.asset_a == "BTS":
            fees_side = "sell"
        elif config.asset_b == "BTS":
            fees_side = "buy"
        self.funds = FundLedger(config.bot_funds, fees_side=fees_side)

        self.target_spread_count = 0
        self.current_spread_count = 0
        self.out_of_spread = False

        self._seen_fills = BoundedSet(maxlen=FILL_DEDUPE_CAPACITY)
        self._recently_rotated: Set[str] = set()
        # slot id -> (type, size) it held when a fill vacated it
        self._vacated: Dict[str, Tuple[OrderType, float]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def bot_key(self) -> str:
        return self.config.bot_key

    def _precision(self, side: str) -> Optional[int]:
        meta = self.assets.get("a" if side == "sell" else "b")
        if not meta:
            return None
        return meta.get("precision")

    def min_order_size(self, side: str) -> float:
        """Configured minimum, raised to 50 smallest units of the side's asset."""
        return max(self.config.min_order_size, min_size_for_precision(self._precision(side)))

    def sorted_orders(self) -> List[GridOrder]:
        """The ladder in descending price order."""
        return sorted(self.orders.values(), key=lambda o: (-o.price, o.id))

    def get_orders_by_type_and_state(
        self,
        order_type: Optional[OrderType] = None,
        state: Optional[OrderState] = None,
    ) -> List[GridOrder]:
        return [
            o for o in self.orders.values()
            if (order_type is None or o.type is order_type) and (state is None or o.state is state)
        ]

    def count_orders_by_type(self, order_type: OrderType) -> int:
        """Number of ACTIVE + PARTIAL orders of `order_type`."""
        return sum(1 for o in self.orders.values() if o.type is order_type and o.is_live)

    def recalculate_funds(self) -> None:
        self.funds.recalculate(self.orders.values())

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    async def initialize(self) -> List[GridOrder]:
        """
        Build, size and commit a fresh grid, then activate the initial tranche.

        Returns:
            Orders to place (ACTIVE slots without a chain id)

        Raises:
            MarketPriceError: price unresolved or outside [minPrice, maxPrice];
                raised before any order or ledger mutation
        """
        await self.load_asset_metadata()

        market_price = await self._resolve_market_price()
        if market_price is None:
            raise MarketPriceError(f"{self.config.pair}: market price could not be resolved")
        min_price = self.config.min_price.resolve(market_price, "min")
        max_price = self.config.max_price.resolve(market_price, "max")
        if not (math.isfinite(min_price) and math.isfinite(max_price)) or not (min_price <= market_price <= max_price):
            raise MarketPriceError(
                f"{self.config.pair}: market price {market_price} outside bounds [{min_price}, {max_price}]"
            )

        # balance failures are logged and tolerated
        await self.refresh_account_totals()

        build = create_order_grid(self.config, market_price, min_price, max_price)
        sized = calculate_order_sizes(
            build.orders,
            self.config,
            sell_funds=self.funds.grid_budget("sell"),
            buy_funds=self.funds.grid_budget("buy"),
            min_sell_size=self.min_order_size("sell"),
            min_buy_size=self.min_order_size("buy"),
            precision_a=self._precision("sell"),
            precision_b=self._precision("buy"),
        )

        self.market_price = market_price
        self.min_price = min_price
        self.max_price = max_price
        self.target_spread_percent = build.target_spread_percent
        self.orders = {o.id: o for o in sized}
        self.target_spread_count = sum(build.initial_spread_count.values())
        self.current_spread_count = self.target_spread_count
        self.out_of_spread = False
        self._recently_rotated.clear()
        self._vacated.clear()
        self.funds.reset_funds(self.orders.values())

        placements: List[GridOrder] = []
        for order_type in (OrderType.SELL, OrderType.BUY):
            count = self.config.target_count(side_of(order_type))
            placements.extend(await self.activate_closest_virtual_orders_for_placement(order_type, count))

        log_event(
            log, "grid_initialized", INFO,
            bot=self.bot_key,
            market_price=market_price,
            min_price=min_price,
            max_price=max_price,
            levels=len(self.orders),
            spread_slots=self.target_spread_count,
            to_place=len(placements),
        )
        return placements

    def replace_orders(self, orders: Iterable[GridOrder]) -> None:
        """Swap in a new order collection and rebuild the ledger around it."""
        self.orders = {o.id: o for o in orders}
        spread = sum(1 for o in self.orders.values() if o.type is OrderType.SPREAD)
        self.current_spread_count = spread
        if self.target_spread_count == 0:
            self.target_spread_count = spread
        self._recently_rotated.clear()
        self._vacated.clear()
        self.funds.reset_funds(self.orders.values())

    async def refresh_market_price(self) -> Optional[float]:
        """Re-resolve the market price; an unresolved price keeps the last one."""
        price = await self._resolve_market_price()
        if price is not None:
            self.market_price = price
        return self.market_price

    async def _resolve_market_price(self) -> Optional[float]:
        if self.config.price_mode == "fixed":
            return self.config.market_price
        if self.client is None:
            log_event(log, "market_price_error", ERROR, bot=self.bot_key, error="no chain client")
            return None
        try:
            price = await self.client.resolve_market_price(self.config.pair, self.config.price_mode)
        except Exception as exc:
            log_event(log, "market_price_error", ERROR, bot=self.bot_key, error=str(exc))
            return None
        if price is None:
            return None
        price = float(price)
        if not math.isfinite(price) or price <= 0:
            return None
        return price

    async def load_asset_metadata(self) -> None:
        """Look up id and precision of both assets; lookups already done are skipped."""
        if self.client is None:
            return
        for key, symbol in (("a", self.config.asset_a), ("b", self.config.asset_b)):
            if not symbol or key in self.assets:
                continue
            try:
                meta = await self.client.lookup_asset_metadata(symbol)
                self.assets[key] = {"id": meta["id"], "precision": int(meta["precision"])}
            except Exception as exc:
                log_event(log, "asset_lookup_error", ERROR, bot=self.bot_key, symbol=symbol, error=str(exc))

    # ------------------------------------------------------------------
    # Account totals
    # ------------------------------------------------------------------
    def set_account_totals(self, buy_free: Optional[float] = None, sell_free: Optional[float] = None) -> None:
        """Accept free balances (buy = asset B, sell = asset A)."""
        if buy_free is not None:
            self.funds.set_chain_free("buy", float(buy_free))
        if sell_free is not None:
            self.funds.set_chain_free("sell", float(sell_free))
        self.recalculate_funds()
        log_event(log, "account_totals_updated", DEBUG, bot=self.bot_key, buy_free=buy_free, sell_free=sell_free)

    async def refresh_account_totals(self) -> bool:
        """Fetch balances through the client. Failures leave totals untouched."""
        if self.client is None or not self.account:
            return False
        try:
            balances = await self.client.get_account_balances(self.account)
        except Exception as exc:
            log_event(log, "balance_fetch_error", ERROR, bot=self.bot_key, error=str(exc))
            return False

        free: Dict[str, float] = {}
        for side, key in (("sell", "a"), ("buy", "b")):
            meta = self.assets.get(key)
            if not meta:
                continue
            free[side] = blockchain_to_float(balances.get(meta["id"], 0), meta["precision"])
        if not free:
            return False
        self.set_account_totals(buy_free=free.get("buy"), sell_free=free.get("sell"))
        return True

    # ------------------------------------------------------------------
    # Fills
    # ------------------------------------------------------------------
    async def fetch_order_updates(self, calculate: bool = False) -> OrderUpdates:
        """
        Poll for fills and apply them.

        Without `calculate`, an existing set of live orders is returned as-is.
        """
        live = [o for o in self.orders.values() if o.is_live]
        if live and not calculate:
            return OrderUpdates(remaining=live)
        if self.client is None or not self.account:
            self.check_spread_condition()
            return OrderUpdates(remaining=live)

        try:
            operations = await self.client.fetch_fills(self.account, self.config.pair)
        except Exception as exc:
            log_event(log, "fetch_fills_error", ERROR, bot=self.bot_key, error=str(exc))
            return OrderUpdates(remaining=live)

        fills = [f for f in (self.fill_from_chain_operation(op) for op in operations or []) if f is not None]
        result = await self.process_filled_orders(fills) if fills else None
        if result is None:
            self.check_spread_condition()
        return OrderUpdates(
            remaining=[o for o in self.orders.values() if o.is_live],
            filled=result.applied if result else [],
            result=result,
        )

    def fill_from_chain_operation(self, fill_op: Dict[str, Any]) -> Optional[FillRecord]:
        """Map a raw fill operation onto the live slot it belongs to."""
        order_id = fill_op.get("order_id")
        slot = None
        if order_id:
            slot = next(
                (o for o in self.orders.values() if o.is_live and o.external_order_id == order_id),
                None,
            )
        if slot is None:
            log_event(log, "fill_unmatched", WARNING, bot=self.bot_key, order_id=order_id)
            return None

        side = side_of(slot.type)
        meta = self.assets.get("a" if side == "sell" else "b")
        pays = fill_op.get("pays") or {}
        if meta and pays.get("asset_id") not in (None, meta["id"]):
            log_event(
                log, "fill_unmatched", WARNING,
                bot=self.bot_key, order_id=order_id, reason="asset mismatch", asset_id=pays.get("asset_id"),
            )
            return None

        filled = blockchain_to_float(pays.get("amount"), meta["precision"] if meta else None)
        fill_id = fill_op.get("id")
        return FillRecord(
            id=slot.id,
            type=slot.type,
            size=filled,
            price=slot.price,
            external_order_id=order_id,
            fill_id=str(fill_id) if fill_id is not None else None,
        )

    async def process_filled_orders(
        self,
        filled_orders: Iterable[FillInput],
        exclude_order_ids: Optional[Iterable[str]] = None,
    ) -> FillBatchResult:
        """
        Apply a batch of fills, then rebalance.

        Each fill credits pending proceeds once, shrinks or vacates its slot,
        and counts toward the rebalance tally when it completes the order.
        Malformed records are skipped; a result is always returned.
        """
        result = FillBatchResult()

        for raw in filled_orders:
            record, reason = self._validate_fill(raw)
            if record is None:
                raw_id = raw.get("id") if isinstance(raw, dict) else getattr(raw, "id", None)
                result.skipped.append({"id": raw_id, "reason": reason})
                log_event(log, "fill_skipped", WARNING, bot=self.bot_key, id=raw_id, reason=reason)
                continue

            key = record.dedupe_key(self._size_before_fill(record.id))
            if not self._seen_fills.add(key):
                result.duplicates.append(record)
                log_event(log, "fill_duplicate", INFO, bot=self.bot_key, id=record.id, key=key)
                continue

            self._apply_fill(record, result)

        fills = result.filled_counts[OrderType.BUY] + result.filled_counts[OrderType.SELL]
        if fills > 0:
            extra = 1 if self.out_of_spread else 0
            self.out_of_spread = False
            result.extra_order_count = extra
            result.rebalance = await self.rebalance_orders(result.filled_counts, extra, exclude_order_ids)

        self.check_spread_condition()
        self.recalculate_funds()
        return result

    def _validate_fill(self, raw: FillInput) -> Tuple[Optional[FillRecord], Optional[str]]:
        if isinstance(raw, FillRecord):
            record = raw
        else:
            try:
                record = FillRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                return None, f"malformed record: {exc}"

        if record.type not in TRADING_TYPES:
            return None, f"invalid type {record.type.value}"
        if not (math.isfinite(record.size) and record.size > 0):
            return None, f"non-positive size {record.size}"
        if not (math.isfinite(record.price) and record.price > 0):
            return None, f"non-positive price {record.price}"

        slot = self.orders.get(record.id)
        if slot is None:
            return None, "unknown id"
        if slot.type is OrderType.SPREAD:
            vacated = self._vacated.get(slot.id)
            if vacated is None:
                return None, "unmatched: slot never held an order"
            if vacated[0] is not record.type:
                return None, f"type mismatch: slot held {vacated[0].value}"
        else:
            if slot.type is not record.type:
                return None, f"type mismatch: slot is {slot.type.value}"
            if not slot.is_live:
                return None, f"slot is {slot.state.value}"
        return record, None

    def _size_before_fill(self, slot_id: str) -> float:
        slot = self.orders[slot_id]
        if slot.type is OrderType.SPREAD:
            return self._vacated[slot_id][1] if slot_id in self._vacated else 0.0
        return slot.size

    def _apply_fill(self, record: FillRecord, result: FillBatchResult) -> None:
        slot = self.orders[record.id]

        filled = record.size
        if slot.type is OrderType.SPREAD:
            # late report for an order a previous fill already vacated
            vacated_size = self._vacated.pop(slot.id)[1]
            if filled > vacated_size + SIZE_EPSILON:
                log_event(
                    log, "fill_capped", WARNING,
                    bot=self.bot_key, id=slot.id, filled=filled, vacated_size=vacated_size,
                )
                filled = vacated_size

        if record.type is OrderType.SELL:
            self.funds.credit_proceeds("buy", filled * record.price)
        else:
            self.funds.credit_proceeds("sell", filled / record.price)

        if slot.type is OrderType.SPREAD:
            result.filled_counts[record.type] += 1
        else:
            if record.size > slot.size + SIZE_EPSILON:
                log_event(
                    log, "committed_underflow", WARNING,
                    bot=self.bot_key, id=slot.id, size=slot.size, filled=record.size,
                )
            remaining = compute_size_after_fill(slot.size, record.size, self._precision(side_of(slot.type)))
            if remaining <= SIZE_EPSILON:
                self._convert_to_spread(slot)
                result.filled_counts[record.type] += 1
            else:
                slot.size = remaining
                slot.state = OrderState.PARTIAL
                result.partial_fills.append(slot.id)

        result.applied.append(record)
        log_event(
            log, "fill_applied", INFO,
            bot=self.bot_key, id=record.id, type=record.type.value, size=filled, price=record.price,
        )

    def _convert_to_spread(self, slot: GridOrder) -> None:
        log_event(log, "order_converted_to_spread", DEBUG, bot=self.bot_key, id=slot.id, was=slot.type.value)
        self._vacated[slot.id] = (slot.type, slot.size)
        slot.type = OrderType.SPREAD
        slot.state = OrderState.VIRTUAL
        slot.size = 0.0
        slot.external_order_id = None
        self.current_spread_count += 1

    # ------------------------------------------------------------------
    # Rebalancing
    # ------------------------------------------------------------------
    async def rebalance_orders(
        self,
        filled_counts: Dict[OrderType, int],
        extra_order_count: int = 0,
        exclude_order_ids: Optional[Iterable[str]] = None,
    ) -> RebalanceResult:
        """
        Replenish both sides after fills.

        SELL fills drive BUY replenishment and BUY fills drive SELL
        replenishment, through the same routine with the type swapped.
        """
        excluded = set(exclude_order_ids or ())
        result = RebalanceResult()
        for filled_type in (OrderType.SELL, OrderType.BUY):
            count = int(filled_counts.get(filled_type, 0))
            if count <= 0:
                continue
            result.extend(await self._rebalance_side(filled_type, count + extra_order_count, excluded))
        return result

    async def _rebalance_side(self, filled_type: OrderType, count: int, excluded: Set[str]) -> RebalanceResult:
        result = RebalanceResult()
        result.orders_to_place.extend(
            await self.activate_closest_virtual_orders_for_placement(filled_type, count)
        )

        target_type = filled_type.opposite
        side = side_of(target_type)
        self.recalculate_funds()
        if self.funds.available.get(side) <= 0:
            log_event(
                log, "rotation_insufficient_funds", WARNING,
                bot=self.bot_key, side=side, type=target_type.value, available=self.funds.available.get(side),
            )
            return result

        current = self.count_orders_by_type(target_type)
        needed = max(0, self.config.target_count(side) - current)
        desired = max(count, needed)

        if needed > 0 and len(self._eligible_spread_slots(target_type)) >= desired:
            result.orders_to_place.extend(await self.activate_spread_orders(target_type, desired))
            return result

        moves = self._move_crossed_partials(target_type, excluded)
        result.partial_moves.extend(moves)
        vacated = [m.partial_order.id for m in moves]
        result.orders_to_rotate.extend(
            await self.prepare_furthest_orders_for_rotation(target_type, desired, excluded, vacated)
        )
        return result

    def _eligible_spread_slots(self, order_type: OrderType) -> List[GridOrder]:
        """VIRTUAL SPREAD slots on the market side where `order_type` may trade."""
        mp = self.market_price
        if mp is None:
            return []
        return [
            o for o in self.orders.values()
            if o.type is OrderType.SPREAD
            and o.state is OrderState.VIRTUAL
            and (o.price < mp if order_type is OrderType.BUY else o.price > mp)
        ]

    async def activate_closest_virtual_orders_for_placement(
        self,
        order_type: OrderType,
        count: int,
    ) -> List[GridOrder]:
        """Mark the `count` VIRTUAL orders nearest the market ACTIVE."""
        if count <= 0:
            return []
        min_size = self.min_order_size(side_of(order_type))
        candidates = [
            o for o in self.orders.values()
            if o.type is order_type and o.state is OrderState.VIRTUAL and o.size > 0 and o.size >= min_size
        ]
        if order_type is OrderType.BUY:
            candidates.sort(key=lambda o: (-o.price, o.id))
        else:
            candidates.sort(key=lambda o: (o.price, o.id))

        selected = candidates[:count]
        for order in selected:
            order.state = OrderState.ACTIVE
        if selected:
            self.recalculate_funds()
            log_event(
                log, "virtual_orders_activated", INFO,
                bot=self.bot_key, type=order_type.value, ids=[o.id for o in selected],
            )
        return [o.copy() for o in selected]

    async def activate_spread_orders(self, target_type: OrderType, count: int) -> List[GridOrder]:
        """
        Turn VIRTUAL SPREAD slots into ACTIVE orders of `target_type`.

        BUY takes the lowest eligible prices first, SELL the highest, ties
        by id. Available funds are split evenly; the batch is refused when
        the per-order share would fall below the minimum order size.
        """
        if count <= 0:
            return []
        side = side_of(target_type)
        self.recalculate_funds()
        funds = self.funds.available.get(side)
        if funds <= 0:
            log_event(log, "activation_insufficient_funds", WARNING, bot=self.bot_key, side=side, available=funds)
            return []

        eligible = self._eligible_spread_slots(target_type)
        if target_type is OrderType.BUY:
            eligible.sort(key=lambda o: (o.price, o.id))
        else:
            eligible.sort(key=lambda o: (-o.price, o.id))

        desired = min(count, len(eligible))
        if desired == 0:
            log_event(log, "no_spread_slots", WARNING, bot=self.bot_key, type=target_type.value)
            return []

        min_size = self.min_order_size(side)
        max_by_funds = math.floor(funds / min_size) if min_size > 0 else desired
        to_create = min(desired, max_by_funds)
        if to_create <= 0:
            log_event(
                log, "activation_insufficient_funds", WARNING,
                bot=self.bot_key, side=side, available=funds, min_order_size=min_size,
            )
            return []

        per_order = funds / to_create
        if per_order < min_size:
            log_event(
                log, "activation_insufficient_funds", WARNING,
                bot=self.bot_key, side=side, per_order=per_order, min_order_size=min_size,
            )
            return []
        if to_create < count:
            log_event(
                log, "activation_reduced", WARNING,
                bot=self.bot_key, type=target_type.value, requested=count, created=to_create,
            )

        self.funds.consume(side, per_order * to_create)
        selected = eligible[:to_create]
        for slot in selected:
            self._vacated.pop(slot.id, None)
            slot.type = target_type
            slot.state = OrderState.ACTIVE
            slot.size = per_order
            slot.external_order_id = None
            self.current_spread_count = max(0, self.current_spread_count - 1)
        self.recalculate_funds()

        log_event(
            log, "spread_orders_activated", INFO,
            bot=self.bot_key, type=target_type.value, ids=[o.id for o in selected], size=per_order,
        )
        return [o.copy() for o in selected]

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    async def prepare_furthest_orders_for_rotation(
        self,
        order_type: OrderType,
        count: int,
        exclude_order_ids: Optional[Iterable[str]] = None,
        preferred_targets: Sequence[str] = (),
    ) -> List[RotationPlan]:
        """
        Plan replacing the `count` furthest ACTIVE orders with orders in
        SPREAD slots nearer the market.

        Replacement sizes follow the geometric rotation sizing over the
        side's available funds. A shortfall goes to cacheFunds; an excess
        is scaled down so the sizes sum to the available funds.
        """
        if count <= 0 or self.market_price is None:
            return []
        mp = self.market_price
        side = side_of(order_type)
        excluded = set(exclude_order_ids or ())
        self.recalculate_funds()

        candidates = [
            o for o in self.orders.values()
            if o.type is order_type
            and o.state is OrderState.ACTIVE
            and o.id not in excluded
            and (o.external_order_id is None or o.external_order_id not in excluded)
            and self._rotation_key(o) not in self._recently_rotated
        ]
        candidates.sort(key=lambda o: (-abs(o.price - mp), o.id))
        targets = self._rotation_targets(order_type, preferred_targets)

        n = min(count, len(candidates), len(targets))
        if n == 0:
            log_event(
                log, "no_spread_slots", WARNING,
                bot=self.bot_key, type=order_type.value, candidates=len(candidates), targets=len(targets),
            )
            return []

        funds = self.funds.available.get(side)
        if funds <= 0:
            log_event(log, "rotation_insufficient_funds", WARNING, bot=self.bot_key, side=side, available=funds)
            return []

        sizes, surplus = self._rotation_sizes(funds, n, side)
        if not sizes:
            log_event(
                log, "rotation_insufficient_funds", WARNING,
                bot=self.bot_key, side=side, available=funds, min_order_size=self.min_order_size(side),
            )
            return []

        self.funds.consume(side, funds)
        self.funds.add_cache(side, surplus)

        plans: List[RotationPlan] = []
        for candidate, target, size in zip(candidates, targets, sizes):
            self._vacated.pop(target.id, None)
            target.type = order_type
            target.state = OrderState.VIRTUAL
            target.size = size
            target.external_order_id = None
            self.current_spread_count = max(0, self.current_spread_count - 1)
            self._recently_rotated.add(self._rotation_key(candidate))
            plans.append(
                RotationPlan(
                    old_order=OrderRef.of(candidate),
                    new_price=target.price,
                    new_size=size,
                    new_grid_id=target.id,
                    type=order_type,
                )
            )
        self.recalculate_funds()

        log_event(
            log, "rotation_prepared", INFO,
            bot=self.bot_key,
            type=order_type.value,
            rotations=[{"from": p.old_order.id, "to": p.new_grid_id, "size": p.new_size} for p in plans],
            cache_added=surplus,
        )
        return plans

    def _rotation_sizes(self, funds: float, n: int, side: str) -> Tuple[List[float], float]:
        """Sizes for up to `n` rotations and the surplus to bank in cacheFunds."""
        min_size = self.min_order_size(side)
        while n > 0:
            sizes = list(calculate_rotation_order_sizes(funds, n, self.config, side, self._precision(side)))[:n]
            total = sum(sizes)
            surplus = 0.0
            if total > funds:
                sizes = [s * funds / total for s in sizes]
            else:
                surplus = funds - total
            if sizes and min(sizes) >= min_size:
                return sizes, surplus
            n -= 1
        return [], 0.0

    def _rotation_targets(self, order_type: OrderType, preferred: Sequence[str]) -> List[GridOrder]:
        """Vacated slots first, then SPREAD slots closest to the market."""
        mp = self.market_price
        eligible = {o.id for o in self._eligible_spread_slots(order_type)}
        first = [self.orders[i] for i in preferred if i in eligible]
        rest = sorted(
            (self.orders[i] for i in eligible if i not in set(preferred)),
            key=lambda o: (abs(o.price - mp), o.id),
        )
        return first + rest

    @staticmethod
    def _rotation_key(order: Union[GridOrder, OrderRef]) -> str:
        return order.external_order_id or order.id

    def complete_order_rotation(
        self,
        old_order_info: OrderInfo,
        new_grid_id: Optional[str] = None,
        new_external_order_id: Optional[str] = None,
    ) -> bool:
        """
        Finish a rotation once the old order is cancelled on chain.

        The old slot returns to VIRTUAL with its size kept. When the
        replacement's chain id is known it is confirmed in the same call.
        """
        ref = self._order_ref(old_order_info)
        slot = self.orders.get(ref.id) if ref else None
        if slot is None:
            log_event(log, "rotation_unknown_order", WARNING, bot=self.bot_key, id=ref.id if ref else None)
            return False

        if slot.is_live and slot.external_order_id and slot.type in TRADING_TYPES:
            self.funds.on_cancelled(side_of(slot.type), slot.size)
        self._recently_rotated.discard(self._rotation_key(ref))
        self._recently_rotated.discard(self._rotation_key(slot))
        slot.state = OrderState.VIRTUAL
        slot.external_order_id = None

        if new_grid_id and new_external_order_id:
            self.synchronize_placement(new_grid_id, new_external_order_id)
        self.recalculate_funds()
        log_event(log, "rotation_completed", INFO, bot=self.bot_key, id=slot.id, new_grid_id=new_grid_id)
        return True

    def abort_order_rotation(self, plan: RotationPlan) -> bool:
        """
        Drop a prepared rotation whose cancel failed.

        The old order stays live and may be rotated again; the target slot
        goes back to SPREAD and its earmarked size returns to available.
        """
        self._recently_rotated.discard(self._rotation_key(plan.old_order))
        target = self.orders.get(plan.new_grid_id)
        if target is None or target.type is not plan.type or target.state is not OrderState.VIRTUAL:
            log_event(
                log, "rotation_abort_rejected", WARNING,
                bot=self.bot_key, id=plan.old_order.id, to=plan.new_grid_id,
            )
            return False

        target.type = OrderType.SPREAD
        target.size = 0.0
        target.external_order_id = None
        self.current_spread_count += 1
        self.recalculate_funds()
        log_event(log, "rotation_aborted", INFO, bot=self.bot_key, id=plan.old_order.id, to=plan.new_grid_id)
        return True

    def _order_ref(self, info: OrderInfo) -> Optional[OrderRef]:
        if isinstance(info, OrderRef):
            return info
        if isinstance(info, GridOrder):
            return OrderRef.of(info)
        if isinstance(info, dict) and info.get("id") in self.orders:
            slot = self.orders[info["id"]]
            return OrderRef(
                slot.id,
                info.get("externalOrderId", info.get("orderId", slot.external_order_id)),
                slot.type,
                slot.price,
                slot.size,
            )
        return None

    # ------------------------------------------------------------------
    # Partial moves
    # ------------------------------------------------------------------
    def prepare_partial_order_move(
        self,
        partial_order: Union[GridOrder, OrderRef],
        move_steps: int = 1,
        excluded_ids: Optional[Iterable[str]] = None,
    ) -> Optional[PartialMove]:
        """
        Find the slot `move_steps` away along the ladder.

        SELL orders move toward lower prices and BUY orders toward higher
        prices, crossing between the sell-*/buy-* id namespaces freely.
        The target must be VIRTUAL and not excluded.
        """
        slot = self.orders.get(partial_order.id)
        if slot is None or slot.type not in TRADING_TYPES or move_steps <= 0:
            return None
        ladder = self.sorted_orders()
        index = next(i for i, o in enumerate(ladder) if o.id == slot.id)
        direction = 1 if slot.type is OrderType.SELL else -1
        target_index = index + direction * move_steps
        if not 0 <= target_index < len(ladder):
            return None

        target = ladder[target_index]
        if target.id in set(excluded_ids or ()) or target.state is not OrderState.VIRTUAL:
            return None

        move = PartialMove(
            partial_order=OrderRef.of(slot),
            new_grid_id=target.id,
            new_price=target.price,
            new_size=slot.size,
        )
        log_event(
            log, "partial_move_prepared", DEBUG,
            bot=self.bot_key, id=slot.id, to=target.id, steps=move_steps,
        )
        return move

    def complete_partial_order_move(self, move: PartialMove) -> bool:
        """
        Relocate a partial order to its target slot.

        The target takes over size, state and chain id. The source takes the
        target's previous role: SPREAD when the target was a gap, or the
        target's VIRTUAL order otherwise, so no earmarked size is lost.
        """
        source = self.orders.get(move.partial_order.id)
        target = self.orders.get(move.new_grid_id)
        if source is None or target is None or target.state is not OrderState.VIRTUAL:
            log_event(
                log, "partial_move_rejected", WARNING,
                bot=self.bot_key, id=move.partial_order.id, to=move.new_grid_id,
            )
            return False

        self._vacated.pop(target.id, None)
        vacated_type, vacated_size = target.type, target.size
        target.type = source.type
        target.state = source.state
        target.size = source.size
        target.external_order_id = source.external_order_id

        source.type = vacated_type
        source.state = OrderState.VIRTUAL
        source.size = vacated_size if vacated_type is not OrderType.SPREAD else 0.0
        source.external_order_id = None

        self.recalculate_funds()
        log_event(log, "partial_move_completed", INFO, bot=self.bot_key, id=source.id, to=target.id)
        return True

    def revert_partial_order_move(self, move: PartialMove) -> bool:
        """Undo a completed move whose chain update failed; both slots swap back."""
        source = self.orders.get(move.partial_order.id)
        target = self.orders.get(move.new_grid_id)
        if (
            source is None
            or target is None
            or source.state is not OrderState.VIRTUAL
            or target.external_order_id != move.partial_order.external_order_id
        ):
            log_event(
                log, "partial_move_revert_rejected", WARNING,
                bot=self.bot_key, id=move.partial_order.id, to=move.new_grid_id,
            )
            return False

        held_type, held_size = source.type, source.size
        source.type = target.type
        source.state = target.state
        source.size = target.size
        source.external_order_id = target.external_order_id

        target.type = held_type
        target.state = OrderState.VIRTUAL
        target.size = held_size
        target.external_order_id = None

        self.recalculate_funds()
        log_event(log, "partial_move_reverted", WARNING, bot=self.bot_key, id=source.id, was_at=target.id)
        return True

    def _move_crossed_partials(self, order_type: OrderType, excluded: Set[str]) -> List[PartialMove]:
        """Move PARTIAL orders sitting in the other side's namespace one slot toward the market."""
        mp = self.market_price
        if mp is None:
            return []
        crossed = [
            o for o in self.orders.values()
            if o.type is order_type
            and o.state is OrderState.PARTIAL
            and o.nominal_type is not None
            and o.nominal_type is not order_type
            and o.id not in excluded
        ]
        crossed.sort(key=lambda o: (abs(o.price - mp), o.id))

        moves: List[PartialMove] = []
        for partial in crossed:
            move = self.prepare_partial_order_move(partial, 1, excluded)
            if move is None:
                continue
            on_side = move.new_price < mp if order_type is OrderType.BUY else move.new_price > mp
            if not on_side:
                continue
            if self.complete_partial_order_move(move):
                moves.append(move)
        return moves

    # ------------------------------------------------------------------
    # Placement confirmation
    # ------------------------------------------------------------------
    def synchronize_placement(self, grid_id: str, external_order_id: str) -> bool:
        """Record the chain id of a placed order; the slot becomes ACTIVE."""
        slot = self.orders.get(grid_id)
        if slot is None or slot.type is OrderType.SPREAD:
            log_event(log, "placement_unknown_slot", WARNING, bot=self.bot_key, id=grid_id)
            return False
        if slot.external_order_id == external_order_id:
            return True

        if slot.external_order_id is None:
            self.funds.on_placed(side_of(slot.type), slot.size)
        slot.external_order_id = external_order_id
        if slot.state is OrderState.VIRTUAL:
            slot.state = OrderState.ACTIVE
        self.recalculate_funds()
        log_event(log, "order_placed", DEBUG, bot=self.bot_key, id=grid_id, external_order_id=external_order_id)
        return True

    # ------------------------------------------------------------------
    # Spread monitor
    # ------------------------------------------------------------------
    def calculate_current_spread(self) -> float:
        """(best ask / best bid - 1) * 100; live prices preferred over VIRTUAL."""
        best_bid = self._best_price(OrderType.BUY)
        best_ask = self._best_price(OrderType.SELL)
        if best_bid is None or best_ask is None or best_bid == 0:
            return 0.0
        return (best_ask / best_bid - 1) * 100

    def _best_price(self, order_type: OrderType) -> Optional[float]:
        pick = max if order_type is OrderType.BUY else min
        live = [o.price for o in self.orders.values() if o.type is order_type and o.is_live]
        if live:
            return pick(live)
        virtual = [o.price for o in self.orders.values() if o.type is order_type and o.state is OrderState.VIRTUAL]
        return pick(virtual) if virtual else None

    def check_spread_condition(self) -> bool:
        """Flag an out-of-spread grid; the next fill batch adds one extra order."""
        spread = self.calculate_current_spread()
        limit = self.target_spread_percent + self.config.increment_percent
        self.out_of_spread = spread > limit
        if self.out_of_spread:
            log_event(
                log, "spread_too_wide", WARNING,
                bot=self.bot_key, spread=round(spread, 4), limit=limit,
            )
        return self.out_of_spread

    # ------------------------------------------------------------------
    # Size regeneration
    # ------------------------------------------------------------------
    def should_regenerate_grid(self, side: str) -> bool:
        total = self.funds.total_grid.get(side)
        if total <= 0:
            return False
        return self.funds.cache_funds.get(side) / total * 100 >= GRID_REGENERATION_PERCENTAGE

    def update_grid_order_sizes(self, side: str) -> int:
        """
        Re-size every VIRTUAL order on `side` from virtuel + cacheFunds.

        Returns:
            Number of orders re-sized
        """
        order_type = OrderType.BUY if side == "buy" else OrderType.SELL
        mp = self.market_price
        virtual = self.get_orders_by_type_and_state(order_type, OrderState.VIRTUAL)
        if not virtual or mp is None:
            return 0

        cache = self.funds.take_cache(side)
        funds = sum(o.size for o in virtual) + cache
        virtual.sort(key=lambda o: (abs(o.price - mp), o.id))
        sizes = allocate_funds_by_weights(
            funds,
            len(virtual),
            self.config.weight_distribution.get(side),
            self.config.increment_percent / 100,
            precision=self._precision(side),
        )
        for order, size in zip(virtual, sizes):
            order.size = size
        self.funds.add_cache(side, funds - sum(sizes))
        self.recalculate_funds()

        log_event(log, "grid_resized", INFO, bot=self.bot_key, side=side, orders=len(virtual), funds=funds)
        return len(virtual)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self) -> Dict[str, Any]:
        counts: Dict[str, Dict[str, int]] = {}
        for order in self.orders.values():
            by_state = counts.setdefault(order.type.value, {})
            by_state[order.state.value] = by_state.get(order.state.value, 0) + 1
        return {
            "bot": self.bot_key,
            "pair": self.config.pair,
            "market_price": self.market_price,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "levels": len(self.orders),
            "orders": counts,
            "spread": {
                "current_percent": self.calculate_current_spread(),
                "target_percent": self.target_spread_percent,
                "out_of_spread": self.out_of_spread,
                "target_count": self.target_spread_count,
                "current_count": self.current_spread_count,
            },
            "funds": self.funds.snapshot().to_dict(),
        }
