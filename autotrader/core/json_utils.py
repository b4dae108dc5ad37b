"""
Fast JSON utilities backed by orjson.

Used for structured log lines and the persisted payload file.

Usage:
    from autotrader.core.json_utils import dumps, loads

    log.info(dumps({"event": "grid_started", "symbol": "BTCUSDC"}))
"""

from __future__ import annotations

from typing import Any

import orjson

_OPTS = orjson.OPT_NON_STR_KEYS | orjson.OPT_SERIALIZE_DATACLASS


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=str, option=_OPTS).decode("utf-8")


def dumps_bytes(obj: Any, pretty: bool = False) -> bytes:
    """Fast JSON encode to bytes (optionally indented for files humans read)."""
    opts = _OPTS | orjson.OPT_INDENT_2 if pretty else _OPTS
    return orjson.dumps(obj, default=str, option=opts)


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
