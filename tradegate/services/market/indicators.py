"""Batch indicators (EMA, ATR) over a full candle series."""

from __future__ import annotations

from typing import Optional, Sequence

from tradegate.models.market_models import Candle


def _ema(prev: Optional[float], value: float, period: int) -> float:
    alpha = 2.0 / (period + 1.0)
    return value if prev is None else (alpha * value + (1 - alpha) * prev)


def ema(values: Sequence[float], period: int) -> float:
    """EMA seeded with the first value. Empty input gives 0.0."""
    if not values:
        return 0.0
    if period <= 1:
        return float(values[-1])

    out: Optional[float] = None
    for v in values:
        out = _ema(out, float(v), period)
    return float(out)


def true_range(curr: Candle, prev_close: float) -> float:
    return float(
        max(
            curr.high - curr.low,
            abs(curr.high - prev_close),
            abs(curr.low - prev_close),
        )
    )


def atr(candles: Sequence[Candle], length: int) -> float:
    """Simple mean of the trailing `length` true ranges.

    Each true range needs the previous candle, so the first candle never
    contributes one.
    """
    if len(candles) < 2:
        return 0.0
    length = max(1, length)

    start = max(1, len(candles) - length)
    ranges = [true_range(candles[i], candles[i - 1].close) for i in range(start, len(candles))]
    if not ranges:
        return 0.0
    return sum(ranges) / len(ranges)
