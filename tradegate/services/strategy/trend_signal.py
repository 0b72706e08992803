"""EMA trend-following signal with ATR-derived stop/target (confidence 0.55..0.90)."""

from __future__ import annotations

from typing import Sequence

from tradegate.models.errors import InsufficientDataError, InvalidCandleError, SignalValidationError
from tradegate.models.market_models import Candle, TrendSignal, pip_size
from tradegate.services.market.indicators import atr, ema

MIN_TREND_GAP_PCT = 0.0002
MIN_FAST_SLOPE_PCT = 0.00005

CONFIDENCE_FLOOR = 0.55
CONFIDENCE_CAP = 0.90

MIN_STOP_LOSS_PIPS = 8.0
STOP_LOSS_ATR_MULTIPLIER = 1.5
REWARD_RISK = 2.0

NO_SETUP = "no clear trend setup"


def confidence_score(close: float, fast: float, slow: float, atr_value: float) -> float:
    if close <= 0 or slow <= 0:
        return CONFIDENCE_FLOOR

    trend_gap = abs(fast - slow) / slow
    atr_pct = atr_value / close

    score = CONFIDENCE_FLOOR
    score += min(0.25, trend_gap * 12)
    score += min(0.12, atr_pct * 3)
    score += min(0.08, abs(close - fast) / close * 20)
    return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CAP, score))


def stop_and_target_pips(symbol: str, atr_value: float) -> tuple[float, float]:
    sl = max(MIN_STOP_LOSS_PIPS, (atr_value / pip_size(symbol)) * STOP_LOSS_ATR_MULTIPLIER)
    return sl, sl * REWARD_RISK


class TrendSignalEngine:
    """
    Trend-following on closed candles:
    - Regime filter: EMA gap and fast-EMA slope must both be meaningful
    - Long: close > EMA fast > EMA slow, fast rising, slow not falling
    - Short: mirrored
    """

    def __init__(self, *, fast_period: int = 20, slow_period: int = 50, atr_period: int = 14) -> None:
        if fast_period <= 1 or slow_period <= 1 or atr_period <= 1:
            raise ValueError("indicator periods must be > 1")
        self.fast_period = int(fast_period)
        self.slow_period = int(slow_period)
        self.atr_period = int(atr_period)

    @property
    def min_candles(self) -> int:
        return max(self.slow_period + 2, self.atr_period + 2)

    def evaluate(self, symbol: str, candles: Sequence[Candle], spread_pips: float = 0.0) -> TrendSignal:
        if not symbol or not symbol.strip():
            raise SignalValidationError("symbol is required")
        if len(candles) < self.min_candles:
            raise InsufficientDataError(self.min_candles, len(candles))

        for i, c in enumerate(candles):
            if c.close <= 0 or c.high <= 0 or c.low <= 0:
                raise InvalidCandleError(i)

        closes = [float(c.close) for c in candles]

        fast_now = ema(closes, self.fast_period)
        slow_now = ema(closes, self.slow_period)
        fast_prev = ema(closes[:-1], self.fast_period)
        slow_prev = ema(closes[:-1], self.slow_period)
        last_close = closes[-1]
        atr_now = atr(candles, self.atr_period)

        trend_gap_pct = abs(fast_now - slow_now) / slow_now
        fast_slope_pct = abs(fast_now - fast_prev) / fast_now

        if trend_gap_pct < MIN_TREND_GAP_PCT or fast_slope_pct < MIN_FAST_SLOPE_PCT:
            return TrendSignal(has_signal=False, reason=NO_SETUP)

        long_setup = last_close > fast_now > slow_now and fast_now > fast_prev and slow_now >= slow_prev
        short_setup = last_close < fast_now < slow_now and fast_now < fast_prev and slow_now <= slow_prev

        if long_setup:
            side = "BUY"
            reason = (
                f"trend-following long: close>EMA{self.fast_period}>EMA{self.slow_period} with positive slope"
            )
        elif short_setup:
            side = "SELL"
            reason = (
                f"trend-following short: close<EMA{self.fast_period}<EMA{self.slow_period} with negative slope"
            )
        else:
            return TrendSignal(has_signal=False, reason=NO_SETUP)

        sl_pips, tp_pips = stop_and_target_pips(symbol, atr_now)
        return TrendSignal(
            has_signal=True,
            side=side,
            confidence=confidence_score(last_close, fast_now, slow_now, atr_now),
            reason=reason,
            stop_loss_pips=sl_pips,
            take_profit_pips=tp_pips,
        )
