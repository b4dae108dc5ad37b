"""
Grid calculations: auto range, level clamp, geometric ladder, scoring.

Pure functions with no I/O, shared by grid construction and candidate
discovery. Prices are in quote-asset units.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from autotrader.core.rounding import floor_to_tick
from autotrader.gateway.types import Kline


@dataclass(frozen=True)
class AutoRange:
    lower: float
    upper: float
    mid: float
    range_pct: float
    trend_pct: float
    trend_ratio: float
    last_close: float


def percentile(values: Sequence[float], p: float) -> Optional[float]:
    """Linear-interpolated percentile (p in 0..1) of the finite values."""
    clean = sorted(v for v in values if math.isfinite(v))
    if not clean:
        return None
    pct = min(1.0, max(0.0, p))
    idx = pct * (len(clean) - 1)
    lo = math.floor(idx)
    hi = math.ceil(idx)
    if lo == hi:
        return clean[lo]
    w = idx - lo
    return clean[lo] * (1 - w) + clean[hi] * w


def compute_auto_range(klines: Sequence[Kline]) -> Optional[AutoRange]:
    """
    Range from the 10th percentile of lows to the 90th percentile of highs.

    trend_ratio is the net open-to-close move over the window divided by the
    range width; near 0 means the price chopped inside the band, near 1 means
    it trended through it.

    Returns:
        AutoRange, or None when the klines cannot produce a valid band
    """
    if not klines:
        return None
    lower = percentile([k.low for k in klines], 0.1)
    upper = percentile([k.high for k in klines], 0.9)
    if not lower or not upper or lower <= 0 or upper <= 0 or upper <= lower:
        return None
    first, last = klines[0], klines[-1]
    mid = (lower + upper) / 2
    range_pct = (upper - lower) / mid * 100
    trend_pct = abs(last.close - first.open) / mid * 100
    trend_ratio = trend_pct / range_pct if range_pct > 0 else 1.0
    if not math.isfinite(last.close):
        return None
    return AutoRange(
        lower=lower,
        upper=upper,
        mid=mid,
        range_pct=range_pct,
        trend_pct=trend_pct,
        trend_ratio=trend_ratio,
        last_close=last.close,
    )


def clamp_levels_by_min_step(lower: float, upper: float, requested: int, min_step_pct: float) -> int:
    """Reduce the level count until adjacent levels are at least min_step_pct apart (never below 2)."""
    levels = max(2, int(requested))
    min_step = max(0.01, min_step_pct)
    while levels > 2:
        ratio = (upper / lower) ** (1 / (levels - 1))
        if (ratio - 1) * 100 >= min_step:
            break
        levels -= 1
    return levels


def geometric_grid(lower: float, upper: float, levels: int) -> List[float]:
    if levels < 2:
        return [lower, upper]
    ratio = (upper / lower) ** (1 / (levels - 1))
    return [lower * ratio ** i for i in range(levels)]


def build_ladder(
    lower: float, upper: float, requested_levels: int, min_step_pct: float, tick_size: Optional[float]
) -> List[float]:
    """
    Clamped geometric ladder floored to the tick.

    Rungs that floor onto the same tick, or land closer than min_step_pct
    to the rung below, are dropped.

    Raises:
        ValueError: fewer than two distinct rungs survive flooring
    """
    levels = clamp_levels_by_min_step(lower, upper, requested_levels, min_step_pct)
    min_step = max(0.01, min_step_pct)
    ladder: List[float] = []
    for raw in geometric_grid(lower, upper, levels):
        price = floor_to_tick(raw, tick_size)
        if not math.isfinite(price) or price <= 0:
            continue
        if ladder and (price / ladder[-1] - 1) * 100 < min_step - 1e-9:
            continue
        ladder.append(price)
    if len(ladder) < 2:
        raise ValueError(
            f"Ladder {lower:g}-{upper:g} collapses to {len(ladder)} level(s) "
            f"at tick {tick_size} and min step {min_step}%"
        )
    return ladder


def in_gap(level_price: float, current_price: float, gap_bps: float) -> bool:
    """True when the level sits inside the no-trade band around the current price."""
    return abs(level_price - current_price) / max(current_price, 1e-8) < gap_bps / 10_000


def score_grid_candidate(quote_volume: float, range_pct: float, trend_ratio: float) -> float:
    liquidity = max(quote_volume or 0.0, 1.0)
    return math.log10(liquidity) * range_pct * max(0.0, 1 - trend_ratio)
