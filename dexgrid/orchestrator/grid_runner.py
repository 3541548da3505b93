"""
GridRunner: the serialized polling loop that drives one OrderManager.

The manager decides; the runner executes. Each cycle:
    1. Refresh balances when the refresh interval has elapsed
    2. Fetch fills and let the manager rebalance
    3. Execute partial moves, rotations and placements via the ChainClient
    4. Confirm them back to the manager
    5. Re-size a side whose cache has grown past the threshold
    6. Persist the grid and update metrics

Lifecycle calls are never issued concurrently: one runner per manager,
and every call is awaited in sequence.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING

from dexgrid.config.manager_config import load_bot_profiles, select_bot_profile
from dexgrid.core.utils import now_ms
from dexgrid.execution.order_manager import OrderManager
from dexgrid.execution.orders import GridOrder, PartialMove, RotationPlan
from dexgrid.infra.logging_cfg import ERROR, INFO, WARNING, log_event
from dexgrid.monitoring.metrics import GridMetrics
from dexgrid.state.grid_store import AtomicGridStore, initialize_grid, load_grid, persist_grid

if TYPE_CHECKING:
    from dexgrid.config.config import Settings
    from dexgrid.config.manager_config import ManagerConfig
    from dexgrid.execution.chain_client import ChainClient

log = logging.getLogger("gridbot")


@dataclass
class CycleResult:
    """Result of a single runner cycle."""
    success: bool
    fills_processed: int = 0
    placed: int = 0
    rotated: int = 0
    moved: int = 0
    resized: int = 0
    error: Optional[str] = None
    duration_ms: float = 0.0


class GridRunner:
    """Drives an OrderManager against a ChainClient."""

    def __init__(
        self,
        manager: OrderManager,
        store: Optional[AtomicGridStore] = None,
        metrics: Optional[GridMetrics] = None,
        poll_interval: float = 5.0,
        fetch_interval_min: float = 0.0,
        dry_run: bool = False,
    ) -> None:
        self.manager = manager
        self.client = manager.client
        self.account = manager.account
        self.store = store
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.fetch_interval_sec = fetch_interval_min * 60
        self.dry_run = dry_run or manager.config.dry_run

        self._last_balance_refresh = time.monotonic()
        self._running = False

    async def start(self) -> List[GridOrder]:
        """
        Restore the persisted grid, or build a fresh one, and place its orders.

        Returns:
            Orders handed to placement
        """
        snapshot = await self.store.load() if self.store else {}
        if snapshot.get("orders"):
            load_grid(self.manager, snapshot)
            await self.manager.load_asset_metadata()
            await self.manager.refresh_account_totals()
            if self.manager.market_price is None:
                await self.manager.refresh_market_price()
            pending = [o for o in self.manager.orders.values() if o.is_live and o.external_order_id is None]
        else:
            pending = await initialize_grid(self.manager)

        placed = await self._execute_placements(pending)
        await self._persist()
        self._update_metrics()
        log_event(
            log, "runner_started", INFO,
            bot=self.manager.bot_key, restored=bool(snapshot.get("orders")), placed=placed, dry_run=self.dry_run,
        )
        return pending

    async def run_cycle(self) -> CycleResult:
        t0 = time.monotonic()
        result = CycleResult(success=True)
        try:
            if self.fetch_interval_sec > 0 and time.monotonic() - self._last_balance_refresh >= self.fetch_interval_sec:
                await self.manager.refresh_account_totals()
                self._last_balance_refresh = time.monotonic()

            updates = await self.manager.fetch_order_updates(calculate=True)
            batch = updates.result
            if batch is not None:
                result.fills_processed = len(batch.applied)
                rotations = list(batch.orders_to_rotate)
                result.moved = await self._execute_partial_moves(batch.partial_moves, rotations)
                result.rotated = await self._execute_rotations(rotations)
                result.placed = await self._execute_placements(batch.orders_to_place)
                if self.metrics:
                    self.metrics.record_batch(self.manager.bot_key, batch)

            for side in ("buy", "sell"):
                if self.manager.should_regenerate_grid(side):
                    result.resized += self.manager.update_grid_order_sizes(side)

            await self._persist()
            self._update_metrics()
        except Exception as exc:
            log_event(log, "cycle_error", ERROR, bot=self.manager.bot_key, error=str(exc))
            result.success = False
            result.error = str(exc)
        result.duration_ms = (time.monotonic() - t0) * 1000
        return result

    async def run(self, cycles: Optional[int] = None) -> None:
        """Poll until stopped, or for `cycles` iterations."""
        self._running = True
        done = 0
        while self._running and (cycles is None or done < cycles):
            await self.run_cycle()
            done += 1
            if cycles is not None and done >= cycles:
                break
            await asyncio.sleep(self.poll_interval)
        self._running = False

    def stop(self) -> None:
        self._running = False

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _execute_placements(self, orders: List[GridOrder]) -> int:
        placed = 0
        for order in orders:
            external_id = await self._place(order)
            if external_id and self.manager.synchronize_placement(order.id, external_id):
                placed += 1
        if self.metrics:
            self.metrics.record_activations(self.manager.bot_key, placed)
        return placed

    async def _execute_rotations(self, plans: List[RotationPlan]) -> int:
        rotated = 0
        for plan in plans:
            external_id = plan.old_order.external_order_id
            if external_id and not self.dry_run:
                try:
                    cancelled = await self.client.cancel_order(self.account, external_id)
                except Exception as exc:
                    log_event(log, "cancel_error", ERROR, bot=self.manager.bot_key, id=plan.old_order.id, error=str(exc))
                    cancelled = False
                if not cancelled:
                    log_event(log, "rotation_cancel_failed", WARNING, bot=self.manager.bot_key, id=plan.old_order.id)
                    self.manager.abort_order_rotation(plan)
                    continue

            self.manager.complete_order_rotation(plan.old_order)
            new_slot = self.manager.orders.get(plan.new_grid_id)
            if new_slot is None:
                continue
            new_external_id = await self._place(new_slot)
            if new_external_id:
                self.manager.synchronize_placement(plan.new_grid_id, new_external_id)
            rotated += 1
        return rotated

    async def _execute_partial_moves(self, moves: List[PartialMove], rotations: List[RotationPlan]) -> int:
        """
        Push committed partial moves to the chain.

        A failed update puts the partial back in its old slot; rotations
        planned into that slot are aborted and dropped from `rotations`.
        """
        moved = 0
        for move in moves:
            external_id = move.partial_order.external_order_id
            if external_id and not self.dry_run:
                try:
                    ok = await self.client.update_order(self.account, external_id, move.new_price, move.new_size)
                except Exception as exc:
                    log_event(log, "update_error", ERROR, bot=self.manager.bot_key, id=move.partial_order.id, error=str(exc))
                    ok = False
                if not ok:
                    for plan in [p for p in rotations if p.new_grid_id == move.partial_order.id]:
                        self.manager.abort_order_rotation(plan)
                        rotations.remove(plan)
                    self.manager.revert_partial_order_move(move)
                    continue
            moved += 1
        return moved

    async def _place(self, order: GridOrder) -> Optional[str]:
        if self.dry_run:
            return f"dry-{order.id}-{now_ms()}"
        if self.client is None or not self.account:
            log_event(log, "place_error", ERROR, bot=self.manager.bot_key, id=order.id, error="no chain client")
            return None
        try:
            return await self.client.place_order(self.account, order)
        except Exception as exc:
            log_event(log, "place_error", ERROR, bot=self.manager.bot_key, id=order.id, error=str(exc))
            return None

    async def _persist(self) -> None:
        if self.store is not None:
            await persist_grid(self.manager, self.store)

    def _update_metrics(self) -> None:
        if self.metrics is not None:
            self.metrics.update_from_manager(self.manager)


def build_runner(
    settings: "Settings",
    client: Optional["ChainClient"] = None,
    config: Optional["ManagerConfig"] = None,
) -> GridRunner:
    """
    Wire a runner from environment settings and the bot profile file.

    Raises:
        ValueError: no bot profile available
    """
    if config is None:
        config = select_bot_profile(load_bot_profiles(settings.profiles_path), settings.bot_name)
    if config is None:
        raise ValueError(f"no bot profile found in {settings.profiles_path}")

    manager = OrderManager(config, client=client, account=settings.account or config.account)
    return GridRunner(
        manager,
        store=AtomicGridStore(config.bot_key, settings.state_dir),
        metrics=GridMetrics() if settings.metrics_enabled else None,
        poll_interval=settings.poll_interval,
        fetch_interval_min=settings.fetch_interval_min,
        dry_run=settings.dry_run,
    )
