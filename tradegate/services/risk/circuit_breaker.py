"""Daily-loss circuit breaker (automatic) + global pause switch (manual).

The pause flag lives in the store, so with the SQLite backend it survives a
restart. It is set by an admin or by a snapshot whose daily loss reaches the
threshold, and it is cleared only by an explicit admin resume.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.storage.store import Store
from tradegate.models.trade_models import Event, EventType, JsonDict
from tradegate.services.events.event_recorder import EventRecorder
from tradegate.services.risk.accounting import SnapshotMetrics, derive_snapshot_metrics

DAILY_LOSS_LIMIT_HIT_SYNC = "daily_loss_limit_hit_sync"
SOURCE_CIRCUIT_BREAKER = "risk_circuit_breaker"
SOURCE_ADMIN = "admin"


@dataclass(frozen=True)
class SyncOutcome:
    metrics: SnapshotMetrics
    triggered: bool

    def to_dict(self) -> JsonDict:
        return {
            "ok": True,
            "open_positions": self.metrics.open_positions,
            "daily_loss_pct": self.metrics.daily_loss_pct,
            "triggered_circuit_breaker": self.triggered,
        }


class CircuitBreaker:
    def __init__(self, store: Store, recorder: EventRecorder, *, max_daily_loss_pct: float) -> None:
        self._store = store
        self._recorder = recorder
        self.threshold_pct = float(max_daily_loss_pct)
        self._log = get_logger("circuit_breaker")

    @property
    def paused(self) -> bool:
        return self._store.is_paused()

    def ingest_snapshot(self, account_id: str, snapshot: Mapping[str, Any]) -> SyncOutcome:
        self._store.save_position_snapshot(account_id, dict(snapshot))
        metrics = derive_snapshot_metrics(snapshot)
        self._store.set_open_positions(account_id, metrics.open_positions)
        self._store.set_daily_loss(account_id, metrics.daily_loss_pct)

        triggered = False
        if metrics.daily_loss_pct >= self.threshold_pct and not self._store.is_paused():
            self._store.set_paused(True)
            triggered = True
            self._log.warning(
                "circuit_breaker_triggered",
                account_id=account_id,
                daily_loss_pct=metrics.daily_loss_pct,
                threshold_pct=self.threshold_pct,
            )
            self._recorder.emit(
                EventType.RISK_TRIGGERED,
                account_id,
                {
                    "reason": DAILY_LOSS_LIMIT_HIT_SYNC,
                    "daily_loss_pct": metrics.daily_loss_pct,
                    "threshold_pct": self.threshold_pct,
                    "net_pnl": metrics.net_pnl,
                    "equity": metrics.equity,
                },
            )
            self._recorder.emit(
                EventType.BOT_PAUSED,
                account_id,
                {"paused": True, "source": SOURCE_CIRCUIT_BREAKER},
            )
            self._recorder.notify(
                f"Daily loss circuit breaker triggered: {metrics.daily_loss_pct:.2f}% >= "
                f"{self.threshold_pct:.2f}%. Bot paused."
            )

        return SyncOutcome(metrics=metrics, triggered=triggered)

    def pause(self, source: str = SOURCE_ADMIN) -> Event:
        self._store.set_paused(True)
        self._log.info("bot_paused", source=source)
        event = self._recorder.emit(EventType.BOT_PAUSED, "", {"paused": True, "source": source})
        self._recorder.notify("MMBot paused: new OPEN commands are blocked.")
        return event

    def resume(self, source: str = SOURCE_ADMIN) -> Event:
        self._store.set_paused(False)
        self._log.info("bot_resumed", source=source)
        event = self._recorder.emit(EventType.BOT_PAUSED, "", {"paused": False, "source": source})
        self._recorder.notify("MMBot resumed: OPEN commands are allowed again.")
        return event
