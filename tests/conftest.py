"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import dexgrid without installing.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from dexgrid.config.manager_config import ManagerConfig  # noqa: E402
from dexgrid.execution.order_manager import OrderManager  # noqa: E402
from dexgrid.execution.orders import GridOrder, OrderState, OrderType  # noqa: E402
from dexgrid.state.grid_store import load_grid  # noqa: E402


def slot(
    slot_id: str,
    order_type: OrderType,
    state: OrderState,
    price: float,
    size: float = 0.0,
    external_order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Snapshot-shaped order record."""
    return GridOrder(slot_id, order_type, state, price, size, external_order_id).to_dict()


def make_manager(
    orders: Optional[List[Dict[str, Any]]] = None,
    market_price: float = 100.0,
    client: Any = None,
    account: Optional[str] = None,
    **config_overrides: Any,
) -> OrderManager:
    """Manager in fixed-price mode, optionally loaded with orders."""
    params: Dict[str, Any] = {
        "assetA": "IOB.XRP",
        "assetB": "BTS",
        "name": "test-bot",
        "marketPrice": market_price,
        "minPrice": "3x",
        "maxPrice": "3x",
        "incrementPercent": 1,
        "targetSpreadPercent": 2,
        "botFunds": {"buy": 1000, "sell": 10},
        "activeOrders": {"buy": 2, "sell": 2},
    }
    params.update(config_overrides)
    manager = OrderManager(ManagerConfig.from_dict(params), client=client, account=account)
    if orders is not None:
        load_grid(manager, orders)
    return manager


@pytest.fixture
def manager_factory():
    return make_manager
