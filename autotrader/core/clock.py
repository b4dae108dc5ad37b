"""Millisecond wall clock; engines take it as an injectable callable."""

from __future__ import annotations

import time


def now_ms() -> int:
    return int(time.time() * 1000)
