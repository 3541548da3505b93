"""
FundLedger - the per-manager fund buckets.

Buckets (per side, "buy" = quote asset, "sell" = base asset):
- committed_grid:   sizes of ACTIVE/PARTIAL orders
- committed_chain:  the part of committed_grid confirmed on chain
- virtuel:          sizes of VIRTUAL orders (earmarked, not placed)
- cache_funds:      rotation surplus held for a later rotation or resize
- pending_proceeds: fill proceeds not yet settled by a balance refresh
- available:        max(0, free - unplaced - virtuel - cache - fees) + pending
- total_chain:      free + committed_chain
- total_grid:       committed_grid + virtuel + cache_funds + available

`free` is the chain-free balance: the last refreshed value, or when the
account was never queried, a synthetic balance seeded from the absolute
fund allotment. It is adjusted locally on placement, cancellation and
proceeds settlement so that it tracks the chain between refreshes.
Against a real balance the allotment also caps what the grid may hold.

Committed and virtuel are always recomputed from the orders, so every
bucket is a pure function of (orders, free, cache, pending, fees).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, TYPE_CHECKING

from dexgrid.execution.orders import GridOrder, LIVE_STATES, OrderState, OrderType, SideValues, side_of
from dexgrid.infra.logging_cfg import log_event

if TYPE_CHECKING:
    from dexgrid.config.manager_config import FundAllotment

log = logging.getLogger("gridbot")

SIDES = ("buy", "sell")


@dataclass
class FundSnapshot:
    """Point-in-time copy of every bucket, for comparisons and persistence."""
    available: Dict[str, float]
    committed_grid: Dict[str, float]
    committed_chain: Dict[str, float]
    total_chain: Dict[str, float]
    total_grid: Dict[str, float]
    virtuel: Dict[str, float]
    cache_funds: Dict[str, float]
    pending_proceeds: Dict[str, float]
    bts_fees_owed: float = 0.0
    chain_free: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "available": self.available,
            "committed": {"grid": self.committed_grid, "chain": self.committed_chain},
            "total": {"chain": self.total_chain, "grid": self.total_grid},
            "virtuel": self.virtuel,
            "cacheFunds": self.cache_funds,
            "pendingProceeds": self.pending_proceeds,
            "btsFeesOwed": self.bts_fees_owed,
        }


class FundLedger:
    """
    Six-bucket fund model for one manager.

    Thread-safety: none. Owned and mutated by a single OrderManager.
    """

    def __init__(
        self,
        allotments: Dict[str, "FundAllotment"],
        fees_side: Optional[str] = None,
    ) -> None:
        """
        Args:
            allotments: Per-side fund allotment ("buy"/"sell")
            fees_side: Side whose asset pays chain fees, if any
        """
        self.allotments = allotments
        self.fees_side = fees_side

        self.available = SideValues()
        self.committed_grid = SideValues()
        self.committed_chain = SideValues()
        self.total_chain = SideValues()
        self.total_grid = SideValues()
        self.virtuel = SideValues()
        self.cache_funds = SideValues()
        self.pending_proceeds = SideValues()
        self.bts_fees_owed = 0.0

        self.chain_free = SideValues()
        self.chain_known: Dict[str, bool] = {"buy": False, "sell": False}

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------
    def recalculate(self, orders: Iterable[GridOrder]) -> None:
        """Recompute every derived bucket from the orders."""
        committed_grid = SideValues()
        committed_chain = SideValues()
        virtuel = SideValues()
        for order in orders:
            if order.type is OrderType.SPREAD or order.size <= 0:
                continue
            side = side_of(order.type)
            if order.state in LIVE_STATES:
                committed_grid.add(side, order.size)
                if order.external_order_id:
                    committed_chain.add(side, order.size)
            elif order.state is OrderState.VIRTUAL:
                virtuel.add(side, order.size)

        self.committed_grid = committed_grid
        self.committed_chain = committed_chain
        self.virtuel = virtuel

        for side in SIDES:
            free = self.chain_free.get(side)
            total_chain = free + committed_chain.get(side)
            unplaced = committed_grid.get(side) - committed_chain.get(side)
            headroom = free - unplaced
            if self.chain_known[side]:
                # the allotment caps what the grid may hold out of a real balance
                budget = self._allotment(side, total_chain)
                if budget is not None:
                    headroom = min(headroom, budget - committed_grid.get(side))

            fees = self.bts_fees_owed if side == self.fees_side else 0.0
            free_part = max(0.0, headroom - virtuel.get(side) - self.cache_funds.get(side) - fees)
            available = free_part + self.pending_proceeds.get(side)

            self.available.set(side, available)
            self.total_chain.set(side, total_chain)
            self.total_grid.set(
                side,
                committed_grid.get(side) + virtuel.get(side) + self.cache_funds.get(side) + available,
            )

    def reset_funds(self, orders: Iterable[GridOrder]) -> None:
        """
        Rebuild the ledger from scratch for `orders`.

        pending_proceeds, cache_funds and bts_fees_owed are in-flight
        values and survive the reset unchanged.
        """
        orders = list(orders)
        pending = self.pending_proceeds.copy()
        cache = self.cache_funds.copy()
        fees = self.bts_fees_owed

        self.available = SideValues()
        self.committed_grid = SideValues()
        self.committed_chain = SideValues()
        self.total_chain = SideValues()
        self.total_grid = SideValues()
        self.virtuel = SideValues()

        placed = SideValues()
        for order in orders:
            if order.type is not OrderType.SPREAD and order.state in LIVE_STATES and order.external_order_id:
                placed.add(side_of(order.type), order.size)
        for side in SIDES:
            if self.chain_known[side]:
                continue
            seed = self._allotment(side, None)
            if seed is None:
                log.warning(
                    f"botFunds.{side} is a percentage but account totals are unknown; "
                    f"{side} funds resolve to 0 until balances are fetched"
                )
                seed = 0.0
            self.chain_free.set(side, max(0.0, seed - placed.get(side)))

        self.pending_proceeds = pending
        self.cache_funds = cache
        self.bts_fees_owed = fees
        self.recalculate(orders)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def set_chain_free(self, side: str, free: float) -> None:
        """
        Accept a freshly fetched free balance.

        The chain balance already includes any fill proceeds, so pending
        proceeds for the side are settled here.
        """
        settled = self.pending_proceeds.get(side)
        self.chain_free.set(side, max(0.0, free))
        self.chain_known[side] = True
        if settled > 0:
            self.pending_proceeds.set(side, 0.0)
            log_event(log, "pending_proceeds_settled", side=side, amount=settled)

    def credit_proceeds(self, side: str, amount: float) -> None:
        self.pending_proceeds.add(side, amount)

    def consume(self, side: str, amount: float) -> None:
        """Earmark `amount` of available funds; pending proceeds go first."""
        taken = min(self.pending_proceeds.get(side), max(0.0, amount))
        if taken > 0:
            self.pending_proceeds.add(side, -taken)
            self.chain_free.add(side, taken)

    def add_cache(self, side: str, amount: float) -> None:
        if amount > 0:
            self.cache_funds.add(side, amount)

    def take_cache(self, side: str) -> float:
        amount = self.cache_funds.get(side)
        self.cache_funds.set(side, 0.0)
        return amount

    def on_placed(self, side: str, size: float) -> None:
        self.chain_free.set(side, max(0.0, self.chain_free.get(side) - size))

    def on_cancelled(self, side: str, size: float) -> None:
        self.chain_free.add(side, size)

    def restore_in_flight(
        self,
        pending: Optional[SideValues] = None,
        cache: Optional[SideValues] = None,
        fees: Optional[float] = None,
    ) -> None:
        """Restore persisted in-flight values where none are held now."""
        for side in SIDES:
            if pending is not None and self.pending_proceeds.get(side) == 0:
                self.pending_proceeds.set(side, pending.get(side))
            if cache is not None and self.cache_funds.get(side) == 0:
                self.cache_funds.set(side, cache.get(side))
        if fees is not None and self.bts_fees_owed == 0:
            self.bts_fees_owed = fees

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def grid_budget(self, side: str) -> float:
        """Funds the grid may size across on `side` at construction time."""
        if self.chain_known[side]:
            total = self.chain_free.get(side) + self.committed_chain.get(side)
            budget = self._allotment(side, total)
            return max(0.0, min(budget if budget is not None else total, total))
        budget = self._allotment(side, None)
        return max(0.0, budget or 0.0)

    def _allotment(self, side: str, total: Optional[float]) -> Optional[float]:
        allotment = self.allotments.get(side)
        if allotment is None:
            return total
        return allotment.resolve(total)

    def snapshot(self) -> FundSnapshot:
        return FundSnapshot(
            available=self.available.to_dict(),
            committed_grid=self.committed_grid.to_dict(),
            committed_chain=self.committed_chain.to_dict(),
            total_chain=self.total_chain.to_dict(),
            total_grid=self.total_grid.to_dict(),
            virtuel=self.virtuel.to_dict(),
            cache_funds=self.cache_funds.to_dict(),
            pending_proceeds=self.pending_proceeds.to_dict(),
            bts_fees_owed=self.bts_fees_owed,
            chain_free=self.chain_free.to_dict(),
        )
