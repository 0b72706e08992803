"""Risk engine (NO NEGOCIABLE): signal + account state -> allow/deny."""

from __future__ import annotations

from tradegate.models.trade_models import AccountRiskState, RiskDecision, SignalInput

BOT_PAUSED = "bot_paused"
SYMBOL_MISSING = "symbol_missing"
SIDE_MISSING = "side_missing"
STOP_LOSS_REQUIRED = "stop_loss_required"
SPREAD_TOO_HIGH = "spread_too_high"
AI_CONFIDENCE_TOO_LOW = "ai_confidence_too_low"
MAX_OPEN_POSITIONS_REACHED = "max_open_positions_reached"
DAILY_LOSS_LIMIT_HIT = "daily_loss_limit_hit"
PROVIDER_UNAVAILABLE = "provider_unavailable_fail_closed"


class RiskEngine:
    """Pure rule evaluator.

    Checks run in a fixed order and the first failing one is the reported
    reason; a signal is allowed only when every check passes. Each numeric
    check is written as "passes only if", so a NaN input fails it.
    """

    def __init__(
        self,
        *,
        max_open_positions: int,
        max_daily_loss_pct: float,
        min_confidence: float,
        max_spread_pips: float,
    ) -> None:
        self.max_open_positions = int(max_open_positions)
        self.max_daily_loss_pct = float(max_daily_loss_pct)
        self.min_confidence = float(min_confidence)
        self.max_spread_pips = float(max_spread_pips)

    def evaluate(self, signal: SignalInput, state: AccountRiskState) -> RiskDecision:
        if state.paused:
            return RiskDecision(False, BOT_PAUSED)
        if not signal.symbol.strip():
            return RiskDecision(False, SYMBOL_MISSING)
        if not signal.side.strip():
            return RiskDecision(False, SIDE_MISSING)
        if not signal.stop_loss_pips > 0:
            return RiskDecision(False, STOP_LOSS_REQUIRED)
        if not signal.spread_pips <= self.max_spread_pips:
            return RiskDecision(False, SPREAD_TOO_HIGH)
        if not signal.confidence >= self.min_confidence:
            return RiskDecision(False, AI_CONFIDENCE_TOO_LOW)
        if state.open_positions >= self.max_open_positions:
            return RiskDecision(False, MAX_OPEN_POSITIONS_REACHED)
        if not state.daily_loss_pct < self.max_daily_loss_pct:
            return RiskDecision(False, DAILY_LOSS_LIMIT_HIT)
        return RiskDecision(True)
