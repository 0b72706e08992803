"""Market domain models."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Candle:
    time: Optional[datetime]
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class TrendSignal:
    has_signal: bool
    side: str = ""             # "BUY" | "SELL" | ""
    confidence: float = 0.0    # 0.55..0.90 when has_signal
    reason: str = ""
    stop_loss_pips: float = 0.0
    take_profit_pips: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def pip_size(symbol: str) -> float:
    return 0.01 if "JPY" in symbol.upper() else 0.0001
