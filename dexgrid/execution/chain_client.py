"""
Blockchain collaborator boundary.

The manager never talks to a node directly; a ChainClient is injected at
construction. Amounts crossing this boundary are raw integers in the
asset's smallest unit, except prices and the float sizes of placement
requests.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from dexgrid.execution.orders import GridOrder


class ChainClient(Protocol):
    async def resolve_market_price(self, pair: str, mode: str) -> Optional[float]:
        """Derive a price for `pair` from a liquidity pool or the order book."""
        ...

    async def get_account_balances(self, account: str) -> Dict[str, int]:
        """Free balances keyed by asset id, in raw integer units."""
        ...

    async def lookup_asset_metadata(self, symbol: str) -> Dict[str, Any]:
        """Return {"id": ..., "precision": ...} for an asset symbol."""
        ...

    async def fetch_fills(self, account: str, pair: str) -> List[Dict[str, Any]]:
        """Recent fill operations: {"order_id", "pays": {...}, "receives": {...}}."""
        ...

    async def place_order(self, account: str, order: "GridOrder") -> Optional[str]:
        """Place a limit order for a grid slot; returns the chain order id."""
        ...

    async def cancel_order(self, account: str, external_order_id: str) -> bool:
        ...

    async def update_order(
        self,
        account: str,
        external_order_id: str,
        new_price: float,
        new_size: float,
    ) -> bool:
        ...
