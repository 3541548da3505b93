"""
Numeric helpers shared by the grid generator, the ledger and the manager.

Covers:
- Percentage strings ("50%") and relative multipliers ("5x")
- Fixed-point integer <-> float conversion using asset precision
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Optional

log = logging.getLogger("gridbot")

MAX_INT64 = 2 ** 63 - 1
MIN_INT64 = -(2 ** 63)

# Minimum order size expressed in smallest units of the asset
MIN_ORDER_SIZE_FACTOR = 50

_MULTIPLIER_RE = re.compile(r"^\s*[0-9]+(?:\.[0-9]+)?x\s*$", re.IGNORECASE)


def is_percentage_string(value: Any) -> bool:
    return isinstance(value, str) and value.strip().endswith("%")


def parse_percentage_string(value: Any) -> Optional[float]:
    """Parse "12.5%" into 0.125. Returns None for anything else."""
    if not is_percentage_string(value):
        return None
    try:
        return float(value.strip()[:-1]) / 100.0
    except ValueError:
        return None


def is_relative_multiplier_string(value: Any) -> bool:
    return isinstance(value, str) and bool(_MULTIPLIER_RE.match(value))


def parse_relative_multiplier_string(value: Any) -> Optional[float]:
    """Parse "5x" into 5.0. Returns None for anything else."""
    if not is_relative_multiplier_string(value):
        return None
    return float(value.strip().lower()[:-1])


def blockchain_to_float(int_value: Any, precision: Optional[int]) -> float:
    if int_value is None:
        return 0.0
    p = int(precision or 0)
    return float(int_value) / (10 ** p)


def float_to_blockchain_int(float_value: float, precision: Optional[int]) -> int:
    """Scale to integer units, rounding half up and clamping to int64."""
    p = int(precision or 0)
    scaled = math.floor(float(float_value) * (10 ** p) + 0.5)
    if scaled > MAX_INT64 or scaled < MIN_INT64:
        log.warning(
            f"float_to_blockchain_int overflow: {float_value} at precision {p}, clamping"
        )
        return MAX_INT64 if scaled > 0 else MIN_INT64
    return int(scaled)


def compute_size_after_fill(current_size: float, filled_amount: float, precision: Optional[int]) -> float:
    """Remaining size after a fill, computed in integer units."""
    if precision is None:
        return max(0.0, current_size - filled_amount)
    remaining = max(
        0,
        float_to_blockchain_int(current_size, precision) - float_to_blockchain_int(filled_amount, precision),
    )
    return blockchain_to_float(remaining, precision)


def min_size_for_precision(precision: Optional[int], factor: int = MIN_ORDER_SIZE_FACTOR) -> float:
    if precision is None or factor <= 0:
        return 0.0
    return factor * (10 ** -int(precision))
