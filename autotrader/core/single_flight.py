"""
KeyedSingleFlight: reject overlapping runs of the same tick.

A slow exchange call must not let the next scheduled tick for the same
symbol start on top of the previous one. Instead of queueing, a second
caller is told the key is busy and skips this round.

Thread-safe for single-threaded asyncio usage (no internal locks needed:
acquire/release never await).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set


class KeyedSingleFlight:
    def __init__(self) -> None:
        self._in_flight: Set[str] = set()
        self._stats: Dict[str, int] = {"entered": 0, "rejected": 0}

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    def try_acquire(self, key: str) -> bool:
        if key in self._in_flight:
            self._stats["rejected"] += 1
            return False
        self._in_flight.add(key)
        self._stats["entered"] += 1
        return True

    def release(self, key: str) -> None:
        self._in_flight.discard(key)

    @asynccontextmanager
    async def guard(self, key: str) -> AsyncIterator[bool]:
        """
        Usage:
            async with flights.guard("grid:BTCUSDC") as entered:
                if not entered:
                    return
                ...
        """
        entered = self.try_acquire(key)
        try:
            yield entered
        finally:
            if entered:
                self.release(key)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "in_flight": len(self._in_flight)}
