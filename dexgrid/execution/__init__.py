"""
Execution package.

This package contains the order model, the chain collaborator protocol
and the OrderManager (imported from dexgrid.execution.order_manager).
"""

from dexgrid.execution.chain_client import ChainClient
from dexgrid.execution.orders import (
    ConfigurationError,
    FillBatchResult,
    FillRecord,
    GridError,
    GridOrder,
    MarketPriceError,
    OrderRef,
    OrderState,
    OrderType,
    OrderUpdates,
    PartialMove,
    RebalanceResult,
    RotationPlan,
    SideValues,
)

__all__ = [
    "ChainClient",
    "ConfigurationError",
    "FillBatchResult",
    "FillRecord",
    "GridError",
    "GridOrder",
    "MarketPriceError",
    "OrderRef",
    "OrderState",
    "OrderType",
    "OrderUpdates",
    "PartialMove",
    "RebalanceResult",
    "RotationPlan",
    "SideValues",
]
