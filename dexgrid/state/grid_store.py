"""
Grid snapshot persistence and the load/merge adapter.

Snapshot layout (orjson):
    {
        "orders": [{id, type, state, price, size, externalOrderId}, ...],
        "marketPrice": float | null,
        "pendingProceeds": {"buy": float, "sell": float},
        "cacheFunds": {"buy": float, "sell": float},
        "btsFeesOwed": float,
        "savedAt": ms
    }

Loading never resets in-flight values: pending proceeds and cache funds
held by the manager survive a load, and persisted ones are restored only
where the manager holds none.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Union, TYPE_CHECKING

from dexgrid.core.json_utils import dumps_bytes, loads
from dexgrid.core.utils import now_ms
from dexgrid.execution.orders import GridOrder, SideValues
from dexgrid.infra.logging_cfg import INFO, WARNING, log_event

if TYPE_CHECKING:
    from dexgrid.execution.order_manager import OrderManager

log = logging.getLogger("gridbot")

Snapshot = Union[Dict[str, Any], List[Dict[str, Any]]]


class GridStore:
    def __init__(self, bot_key: str, state_dir: str) -> None:
        safe = bot_key.replace(":", "_").replace("/", "_")
        self.path = Path(state_dir) / f"grid_{safe}.json"
        self.tmp = self.path.with_suffix(".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except (OSError, ValueError) as exc:
            log.error(f"grid_load_error:{exc}")
            return {}
        if isinstance(data, list):
            return {"orders": data}
        return data if isinstance(data, dict) else {}

    def save(self, data: Dict[str, Any]) -> None:
        try:
            self.tmp.write_bytes(dumps_bytes(data, pretty=True))
            self.tmp.replace(self.path)
        except (OSError, TypeError) as exc:
            log.error(f"grid_save_error:{exc}")


class AtomicGridStore:
    """GridStore with serialized async access; file I/O runs in an executor."""

    def __init__(self, bot_key: str, state_dir: str) -> None:
        self._store = GridStore(bot_key, state_dir)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._store.path

    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.save(data))


def snapshot_grid(manager: "OrderManager") -> Dict[str, Any]:
    return {
        "orders": [o.to_dict() for o in manager.sorted_orders()],
        "marketPrice": manager.market_price,
        "pendingProceeds": manager.funds.pending_proceeds.to_dict(),
        "cacheFunds": manager.funds.cache_funds.to_dict(),
        "btsFeesOwed": manager.funds.bts_fees_owed,
        "savedAt": now_ms(),
    }


def load_grid(manager: "OrderManager", snapshot: Snapshot) -> int:
    """
    Replace the manager's orders with a persisted set.

    The ledger is rebuilt with the same rules as initialization while
    pending proceeds and cache funds are carried across.

    Returns:
        Number of orders loaded
    """
    data: Dict[str, Any] = {"orders": snapshot} if isinstance(snapshot, list) else dict(snapshot or {})
    orders: List[GridOrder] = []
    for raw in data.get("orders") or []:
        try:
            orders.append(GridOrder.from_dict(raw))
        except (KeyError, TypeError, ValueError) as exc:
            log_event(log, "grid_order_skipped", WARNING, bot=manager.bot_key, order=str(raw), error=str(exc))

    if manager.market_price is None and data.get("marketPrice"):
        manager.market_price = float(data["marketPrice"])

    manager.replace_orders(orders)
    manager.funds.restore_in_flight(
        pending=SideValues.from_any(data["pendingProceeds"]) if "pendingProceeds" in data else None,
        cache=SideValues.from_any(data["cacheFunds"]) if "cacheFunds" in data else None,
        fees=float(data["btsFeesOwed"]) if data.get("btsFeesOwed") is not None else None,
    )
    manager.recalculate_funds()

    log_event(
        log, "grid_loaded", INFO,
        bot=manager.bot_key,
        orders=len(orders),
        pending=manager.funds.pending_proceeds.to_dict(),
        cache=manager.funds.cache_funds.to_dict(),
    )
    return len(orders)


async def initialize_grid(manager: "OrderManager") -> List[GridOrder]:
    """Build a fresh grid; in-flight values survive as in load_grid."""
    return await manager.initialize()


async def persist_grid(manager: "OrderManager", store: Union[GridStore, AtomicGridStore]) -> Dict[str, Any]:
    data = snapshot_grid(manager)
    if isinstance(store, AtomicGridStore):
        await store.save(data)
    else:
        store.save(data)
    log_event(log, "grid_saved", INFO, bot=manager.bot_key, orders=len(data["orders"]))
    return data

