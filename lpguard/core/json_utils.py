"""
Fast JSON utilities backed by orjson.

Usage:
    from lpguard.core.json_utils import dumps, loads

    log.info(dumps({"event": "rebalance", "position_id": pid}))
"""

from __future__ import annotations

from typing import Any

import orjson


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=str).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented encode for state files that humans may inspect."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS, default=str)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
