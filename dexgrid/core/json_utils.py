"""
Fast JSON utilities backed by orjson.

Used for structured log payloads and grid snapshots.

Usage:
    from dexgrid.core.json_utils import dumps, loads

    log.info(dumps({"event": "fill_applied", "id": "sell-3"}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj).decode("utf-8")


def dumps_bytes(obj: Any, pretty: bool = False) -> bytes:
    """Fast JSON encode to bytes (snapshot files use the indented form)."""
    if pretty:
        return orjson.dumps(obj, option=orjson.OPT_INDENT_2)
    return orjson.dumps(obj)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
