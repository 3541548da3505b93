"""
Order model for the grid: slot types, lifecycle states, records and results.

A grid slot is permanent. Only its type, state, size and chain handle change:

    VIRTUAL ──activate──> ACTIVE ──partial fill──> PARTIAL
       ^                    │                         │
       │                    └──────full fill──────────┴──> SPREAD/VIRTUAL (size 0)
       └───────────── rotation completes / spread slot reactivated
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class GridError(Exception):
    """Base class for grid engine errors."""


class ConfigurationError(GridError, ValueError):
    """Invalid manager configuration."""


class MarketPriceError(GridError):
    """Market price unresolved or outside the configured bounds."""


class OrderType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    SPREAD = "spread"

    @property
    def opposite(self) -> "OrderType":
        if self is OrderType.BUY:
            return OrderType.SELL
        if self is OrderType.SELL:
            return OrderType.BUY
        return self


class OrderState(str, Enum):
    VIRTUAL = "virtual"    # earmarked, not on chain
    ACTIVE = "active"      # placed (or about to be placed)
    PARTIAL = "partial"    # on chain, partly filled
    FILLED = "filled"      # transient, converted to SPREAD right away


LIVE_STATES = (OrderState.ACTIVE, OrderState.PARTIAL)
TRADING_TYPES = (OrderType.BUY, OrderType.SELL)


@dataclass
class SideValues:
    """A pair of per-side numbers keyed by "buy"/"sell"."""
    buy: float = 0.0
    sell: float = 0.0

    def get(self, side: str) -> float:
        return self.buy if side == "buy" else self.sell

    def set(self, side: str, value: float) -> None:
        if side == "buy":
            self.buy = value
        else:
            self.sell = value

    def add(self, side: str, delta: float) -> None:
        self.set(side, self.get(side) + delta)

    def copy(self) -> "SideValues":
        return SideValues(self.buy, self.sell)

    def to_dict(self) -> Dict[str, float]:
        return {"buy": self.buy, "sell": self.sell}

    @classmethod
    def from_any(cls, data: Any, default: float = 0.0) -> "SideValues":
        if isinstance(data, SideValues):
            return data.copy()
        if isinstance(data, dict):
            return cls(float(data.get("buy", default) or 0.0), float(data.get("sell", default) or 0.0))
        return cls(default, default)


def side_of(order_type: OrderType) -> str:
    """Ledger side funded by an order type."""
    return "buy" if order_type is OrderType.BUY else "sell"


@dataclass
class GridOrder:
    """One ladder slot."""
    id: str
    type: OrderType
    state: OrderState
    price: float
    size: float = 0.0
    external_order_id: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def nominal_type(self) -> Optional[OrderType]:
        """Side the slot was generated on, taken from its id prefix."""
        if self.id.startswith("sell-"):
            return OrderType.SELL
        if self.id.startswith("buy-"):
            return OrderType.BUY
        return None

    def copy(self, **changes: Any) -> "GridOrder":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "state": self.state.value,
            "price": self.price,
            "size": self.size,
            "externalOrderId": self.external_order_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridOrder":
        order_type = OrderType(data["type"])
        state = OrderState(data.get("state", OrderState.VIRTUAL.value))
        size = float(data.get("size") or 0.0)
        external = data.get("externalOrderId", data.get("orderId"))
        if order_type is OrderType.SPREAD:
            size = 0.0
        if state is OrderState.VIRTUAL:
            external = None
        return cls(
            id=str(data["id"]),
            type=order_type,
            state=state,
            price=float(data["price"]),
            size=size,
            external_order_id=external,
        )


@dataclass(frozen=True)
class OrderRef:
    """Immutable view of an order at the moment a decision was taken."""
    id: str
    external_order_id: Optional[str]
    type: OrderType
    price: float
    size: float

    @classmethod
    def of(cls, order: GridOrder) -> "OrderRef":
        return cls(order.id, order.external_order_id, order.type, order.price, order.size)


@dataclass
class FillRecord:
    """
    A fill reported for a grid slot.

    `size` is the filled quantity, in the committed asset of `type`.
    `fill_id` identifies the chain event when known; otherwise the slot
    id, the slot's size before the fill and the filled quantity do.
    """
    id: str
    type: OrderType
    size: float
    price: float
    external_order_id: Optional[str] = None
    fill_id: Optional[str] = None

    def dedupe_key(self, size_before: float) -> str:
        if self.fill_id:
            return f"{self.id}:{self.fill_id}"
        return f"{self.id}:{size_before!r}:{self.size!r}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FillRecord":
        return cls(
            id=str(data["id"]),
            type=OrderType(data["type"]),
            size=float(data["size"]),
            price=float(data["price"]),
            external_order_id=data.get("externalOrderId", data.get("orderId")),
            fill_id=data.get("fillId"),
        )


@dataclass
class RotationPlan:
    """Cancel `old_order` and place a replacement at `new_grid_id`."""
    old_order: OrderRef
    new_price: float
    new_size: float
    new_grid_id: str
    type: OrderType


@dataclass
class PartialMove:
    """Move a partially filled order one or more slots along the ladder."""
    partial_order: OrderRef
    new_grid_id: str
    new_price: float
    new_size: float


@dataclass
class RebalanceResult:
    orders_to_place: List[GridOrder] = field(default_factory=list)
    orders_to_rotate: List[RotationPlan] = field(default_factory=list)
    partial_moves: List[PartialMove] = field(default_factory=list)

    def extend(self, other: "RebalanceResult") -> None:
        self.orders_to_place.extend(other.orders_to_place)
        self.orders_to_rotate.extend(other.orders_to_rotate)
        self.partial_moves.extend(other.partial_moves)


@dataclass
class FillBatchResult:
    """
    Result of processing a batch of fills.

    Always returned, even when no fill in the batch was valid.
    """
    applied: List[FillRecord] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    duplicates: List[FillRecord] = field(default_factory=list)
    partial_fills: List[str] = field(default_factory=list)
    filled_counts: Dict[OrderType, int] = field(
        default_factory=lambda: {OrderType.BUY: 0, OrderType.SELL: 0}
    )
    extra_order_count: int = 0
    rebalance: RebalanceResult = field(default_factory=RebalanceResult)

    @property
    def orders_to_place(self) -> List[GridOrder]:
        return self.rebalance.orders_to_place

    @property
    def orders_to_rotate(self) -> List[RotationPlan]:
        return self.rebalance.orders_to_rotate

    @property
    def partial_moves(self) -> List[PartialMove]:
        return self.rebalance.partial_moves


@dataclass
class OrderUpdates:
    """Outcome of one `fetch_order_updates` poll."""
    remaining: List[GridOrder] = field(default_factory=list)
    filled: List[FillRecord] = field(default_factory=list)
    result: Optional[FillBatchResult] = None
