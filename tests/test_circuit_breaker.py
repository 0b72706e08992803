from __future__ import annotations

import httpx
import pytest

from helpers import RecordingTransport
from tradegate.infrastructure.notify.notifier import Notifier
from tradegate.infrastructure.webhook.event_publisher import EventPublisher
from tradegate.models.trade_models import EventType
from tradegate.services.events.event_recorder import EventRecorder
from tradegate.services.risk.circuit_breaker import (
    DAILY_LOSS_LIMIT_HIT_SYNC,
    SOURCE_CIRCUIT_BREAKER,
    CircuitBreaker,
)

LOSING = {"equity": 10000, "daily_pnl": -250}      # 2.5 %
RECOVERED = {"equity": 10000, "daily_pnl": 40}


@pytest.fixture
def telegram():
    return RecordingTransport(lambda req: httpx.Response(200, json={"ok": True}))


@pytest.fixture
def recorder(store, telegram) -> EventRecorder:
    notifier = Notifier("bot-token", "chat-1", client=httpx.AsyncClient(transport=telegram))
    return EventRecorder(store, EventPublisher(""), notifier)


@pytest.fixture
def breaker(store, recorder):
    return CircuitBreaker(store, recorder, max_daily_loss_pct=2.0)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_below_threshold_updates_counters_only(self, breaker, store):
        out = breaker.ingest_snapshot("acc-1", {"equity": 10000, "daily_pnl": -50, "positions": [{}, {}]})
        assert not out.triggered
        assert out.to_dict() == {
            "ok": True,
            "open_positions": 2,
            "daily_loss_pct": pytest.approx(0.5),
            "triggered_circuit_breaker": False,
        }
        assert store.open_positions("acc-1") == 2
        assert store.daily_loss("acc-1") == pytest.approx(0.5)
        assert store.get_position_snapshot("acc-1")["daily_pnl"] == -50
        assert store.is_paused() is False
        assert store.list_events() == []

    @pytest.mark.asyncio
    async def test_trigger_pauses_emits_and_notifies(self, breaker, recorder, store, telegram):
        out = breaker.ingest_snapshot("acc-1", LOSING)
        await recorder.drain()

        assert out.triggered
        assert store.is_paused() is True

        paused, risk = store.list_events()
        assert risk.type == EventType.RISK_TRIGGERED
        assert risk.payload["reason"] == DAILY_LOSS_LIMIT_HIT_SYNC
        assert risk.payload["daily_loss_pct"] == pytest.approx(2.5)
        assert risk.payload["threshold_pct"] == 2.0
        assert risk.payload["net_pnl"] == -250
        assert risk.payload["equity"] == 10000
        assert paused.type == EventType.BOT_PAUSED
        assert paused.payload == {"paused": True, "source": SOURCE_CIRCUIT_BREAKER}

        assert len(telegram.requests) == 1
        assert b"2.50% >= 2.00%" in telegram.requests[0].content

    @pytest.mark.asyncio
    async def test_triggers_once_while_paused(self, breaker, recorder, store):
        assert breaker.ingest_snapshot("acc-1", LOSING).triggered
        assert not breaker.ingest_snapshot("acc-1", LOSING).triggered
        assert len(store.list_events()) == 2
        await recorder.drain()

    @pytest.mark.asyncio
    async def test_pause_persists_until_resume(self, breaker, recorder, store):
        breaker.ingest_snapshot("acc-1", LOSING)
        out = breaker.ingest_snapshot("acc-1", RECOVERED)

        assert not out.triggered
        assert store.daily_loss("acc-1") == 0.0
        assert store.is_paused() is True

        event = breaker.resume()
        assert store.is_paused() is False
        assert event.payload == {"paused": False, "source": "admin"}
        await recorder.drain()

    @pytest.mark.asyncio
    async def test_manual_pause(self, breaker, recorder, store, telegram):
        event = breaker.pause()
        await recorder.drain()
        assert store.is_paused() is True
        assert event.type == EventType.BOT_PAUSED
        assert event.payload == {"paused": True, "source": "admin"}
        assert b"MMBot paused" in telegram.requests[0].content
