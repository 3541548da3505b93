"""
Core utilities package.

This package contains numeric helpers (percentages, relative multipliers,
fixed-point conversions), JSON encoding and small shared utilities.
"""

from dexgrid.core.numeric import (
    blockchain_to_float,
    float_to_blockchain_int,
    parse_percentage_string,
    parse_relative_multiplier_string,
)
from dexgrid.core.utils import now_ms, BoundedSet

__all__ = [
    "blockchain_to_float",
    "float_to_blockchain_int",
    "parse_percentage_string",
    "parse_relative_multiplier_string",
    "now_ms",
    "BoundedSet",
]
