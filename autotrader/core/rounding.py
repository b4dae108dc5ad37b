"""
Exchange filter rounding helpers.

Quantities and prices are always rounded *down* to the exchange step/tick so
an order never asks for more than the account holds or the budget allows.
"""

from __future__ import annotations

import math
from typing import Optional

__all__ = ["decimals_for_step", "floor_to_step", "floor_to_tick", "price_key"]


def decimals_for_step(step: Optional[float]) -> int:
    """
    Number of decimals implied by a step size (0.001 -> 3, 1e-05 -> 5).

    Unknown step sizes default to 8 decimals.
    """
    if not step:
        return 8
    s = repr(float(step))
    if "e-" in s:
        return int(s.split("e-")[1])
    if "." not in s:
        return 0
    frac = s.split(".")[1].rstrip("0")
    return len(frac)


def floor_to_step(value: float, step: Optional[float]) -> float:
    """Floor a quantity to the exchange step size."""
    if not step:
        return value
    decimals = decimals_for_step(step)
    # Nudge by a tiny epsilon so 0.3 / 0.1 does not floor to 2.
    floored = math.floor(value / step + 1e-9) * step
    return round(floored, decimals)


def floor_to_tick(value: float, tick: Optional[float]) -> float:
    """Floor a price to the exchange tick size."""
    return floor_to_step(value, tick)


def price_key(side: str, price: float, tick: Optional[float]) -> str:
    """Stable lookup key for a resting order at a side and price."""
    return f"{side.upper()}:{price:.{decimals_for_step(tick)}f}"
