"""
Technical indicators over klines.

Pure functions; every indicator returns None when there is not enough
history rather than a misleading partial value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from autotrader.gateway.types import Kline


@dataclass(frozen=True)
class Bollinger:
    middle: Optional[float]
    upper: Optional[float]
    lower: Optional[float]
    std_dev: Optional[float]


@dataclass(frozen=True)
class IndicatorSnapshot:
    symbol: str
    interval: str
    as_of: int
    close: float
    ema20: Optional[float]
    ema50: Optional[float]
    rsi14: Optional[float]
    atr14: Optional[float]
    adx14: Optional[float]
    bb20: Bollinger


def _mean(values: Sequence[float]) -> float:
    return sum(values) / max(1, len(values))


def _finite(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def ema(values: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(values) < period:
        return None
    alpha = 2 / (period + 1)
    out = _mean(values[:period])
    for v in values[period:]:
        out = v * alpha + out * (1 - alpha)
    return _finite(out)


def rsi(closes: Sequence[float], period: int) -> Optional[float]:
    if period <= 0 or len(closes) < period + 1:
        return None
    gains = losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i - 1]
        gains += max(diff, 0.0)
        losses += max(-diff, 0.0)
    avg_gain, avg_loss = gains / period, losses / period
    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i - 1]
        avg_gain = (avg_gain * (period - 1) + max(diff, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-diff, 0.0)) / period
    if avg_gain == 0 and avg_loss == 0:
        return 50.0
    if avg_loss == 0:
        return 100.0
    return _finite(100 - 100 / (1 + avg_gain / avg_loss))


def _true_range(klines: Sequence[Kline], i: int) -> float:
    cur = klines[i]
    rng = cur.high - cur.low
    if i == 0:
        return rng
    prev_close = klines[i - 1].close
    return max(rng, abs(cur.high - prev_close), abs(cur.low - prev_close))


def atr(klines: Sequence[Kline], period: int) -> Optional[float]:
    """Wilder-smoothed average true range."""
    if period <= 0 or len(klines) < period + 1:
        return None
    out = sum(_true_range(klines, i) for i in range(1, period + 1)) / period
    for i in range(period + 1, len(klines)):
        out = (out * (period - 1) + _true_range(klines, i)) / period
    return _finite(out)


def adx(klines: Sequence[Kline], period: int) -> Optional[float]:
    """Average directional index (Wilder), 0..100."""
    if period <= 0 or len(klines) < period * 2:
        return None
    tr: List[float] = []
    plus_dm: List[float] = []
    minus_dm: List[float] = []
    for i in range(1, len(klines)):
        tr.append(_true_range(klines, i))
        up = klines[i].high - klines[i - 1].high
        down = klines[i - 1].low - klines[i].low
        plus_dm.append(up if up > down and up > 0 else 0.0)
        minus_dm.append(down if down > up and down > 0 else 0.0)

    tr_s = sum(tr[:period])
    plus_s = sum(plus_dm[:period])
    minus_s = sum(minus_dm[:period])
    dx: List[float] = []
    for i in range(period - 1, len(tr)):
        if i >= period:
            tr_s = tr_s - tr_s / period + tr[i]
            plus_s = plus_s - plus_s / period + plus_dm[i]
            minus_s = minus_s - minus_s / period + minus_dm[i]
        di_plus = 100 * plus_s / tr_s if tr_s > 0 else 0.0
        di_minus = 100 * minus_s / tr_s if tr_s > 0 else 0.0
        denom = di_plus + di_minus
        dx.append(0.0 if denom == 0 else 100 * abs(di_plus - di_minus) / denom)

    if len(dx) < period:
        return None
    out = _mean(dx[:period])
    for v in dx[period:]:
        out = (out * (period - 1) + v) / period
    return _finite(out)


def bollinger(closes: Sequence[float], period: int, stdev_mult: float) -> Bollinger:
    if period <= 0 or len(closes) < period:
        return Bollinger(None, None, None, None)
    window = closes[-period:]
    mid = _mean(window)
    sd = math.sqrt(sum((v - mid) ** 2 for v in window) / len(window))
    return Bollinger(middle=mid, upper=mid + sd * stdev_mult, lower=mid - sd * stdev_mult, std_dev=sd)


def snapshot(symbol: str, interval: str, klines: Sequence[Kline]) -> IndicatorSnapshot:
    closes = [k.close for k in klines]
    last = klines[-1] if klines else None
    return IndicatorSnapshot(
        symbol=symbol.upper(),
        interval=interval,
        as_of=last.close_time if last else 0,
        close=last.close if last else float("nan"),
        ema20=ema(closes, 20),
        ema50=ema(closes, 50),
        rsi14=rsi(closes, 14),
        atr14=atr(klines, 14),
        adx14=adx(klines, 14),
        bb20=bollinger(closes, 20, 2.0),
    )
