"""
Strategy package.

This package contains the grid generator: level construction,
SPREAD classification and geometric sizing.
"""

from dexgrid.strategy.grid import (
    GridBuildResult,
    allocate_funds_by_weights,
    calculate_order_sizes,
    calculate_rotation_order_sizes,
    create_order_grid,
)

__all__ = [
    "GridBuildResult",
    "allocate_funds_by_weights",
    "calculate_order_sizes",
    "calculate_rotation_order_sizes",
    "create_order_grid",
]
