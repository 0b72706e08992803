"""Derive open positions and daily loss % from broker snapshot documents.

Brokers (and EA builds) name the same fields differently, so a snapshot is
read through dotted paths over a plain JSON tree. Unknown, null,
non-numeric and non-finite values are treated as absent; nothing here
raises on bad input.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

JsonDict = Dict[str, Any]

EQUITY_PATHS = (
    "day_start_equity",
    "equity",
    "account_equity",
    "metrics.equity",
    "account.equity",
    "balance",
    "account.balance",
)

DAILY_PNL_PATHS = ("daily_pnl", "metrics.daily_pnl")

REALIZED_PNL_PATHS = (
    "closed_pnl_today",
    "daily_realized_pnl",
    "realized_pnl_today",
    "metrics.realized_pnl_today",
)

POSITION_ARRAY_PATHS = ("positions", "open_positions")
POSITION_COUNT_PATHS = ("open_positions_count", "metrics.open_positions_count")
POSITION_PNL_FIELDS = ("profit", "swap", "commission")


def _as_number(value: Any) -> Optional[float]:
    # bool is an int subclass; a flag is not a quantity
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and math.isfinite(value):
        return float(value)
    return None


class SnapshotDocument:
    """Read-only view of a snapshot tree with dotted-path lookups."""

    def __init__(self, data: Optional[Mapping[str, Any]]) -> None:
        self._data: Mapping[str, Any] = data if isinstance(data, Mapping) else {}

    def get(self, path: str) -> Any:
        current: Any = self._data
        for part in path.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return None
            current = current[part]
        return current

    def number(self, path: str) -> Optional[float]:
        return _as_number(self.get(path))

    def first_number(self, paths: Sequence[str]) -> Optional[float]:
        for p in paths:
            v = self.number(p)
            if v is not None:
                return v
        return None

    def array(self, path: str) -> Optional[List[Any]]:
        v = self.get(path)
        return v if isinstance(v, list) else None


@dataclass(frozen=True)
class SnapshotMetrics:
    open_positions: int
    daily_loss_pct: float
    equity: float
    net_pnl: float

    def to_dict(self) -> JsonDict:
        return asdict(self)


def count_positions(doc: SnapshotDocument) -> int:
    for path in POSITION_ARRAY_PATHS:
        arr = doc.array(path)
        if arr is not None:
            return len(arr)
    return int(doc.first_number(POSITION_COUNT_PATHS) or 0)


def daily_pnl(doc: SnapshotDocument) -> float:
    # An explicit daily total wins, otherwise realized + open positions would double count.
    explicit = doc.first_number(DAILY_PNL_PATHS)
    if explicit is not None:
        return explicit

    realized = doc.first_number(REALIZED_PNL_PATHS) or 0.0

    unrealized = 0.0
    for item in doc.array("positions") or []:
        pos = SnapshotDocument(item) if isinstance(item, Mapping) else None
        if pos is None:
            continue
        for f in POSITION_PNL_FIELDS:
            unrealized += pos.number(f) or 0.0
    return realized + unrealized


def derive_snapshot_metrics(snapshot: Optional[Mapping[str, Any]]) -> SnapshotMetrics:
    doc = SnapshotDocument(snapshot)

    open_positions = count_positions(doc)
    equity = doc.first_number(EQUITY_PATHS) or 0.0
    net = daily_pnl(doc)

    loss_pct = 0.0
    if equity > 0 and net < 0:
        loss_pct = max(0.0, abs(net) / equity * 100.0)

    return SnapshotMetrics(
        open_positions=open_positions,
        daily_loss_pct=loss_pct,
        equity=equity,
        net_pnl=net,
    )
