"""
State package.

This package contains the fund ledger and grid snapshot persistence.
"""

from dexgrid.state.fund_ledger import FundLedger, FundSnapshot
from dexgrid.state.grid_store import (
    AtomicGridStore,
    GridStore,
    initialize_grid,
    load_grid,
    persist_grid,
    snapshot_grid,
)

__all__ = [
    "FundLedger",
    "FundSnapshot",
    "AtomicGridStore",
    "GridStore",
    "initialize_grid",
    "load_grid",
    "persist_grid",
    "snapshot_grid",
]
