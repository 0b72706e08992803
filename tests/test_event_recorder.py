from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from helpers import RecordingTransport
from tradegate.infrastructure.notify.notifier import Notifier
from tradegate.infrastructure.webhook.event_publisher import EventPublisher
from tradegate.models.trade_models import EventType
from tradegate.services.events.event_recorder import EventRecorder

HOOK = "https://hooks.example.test/events"


@pytest.fixture
def transport():
    return RecordingTransport(lambda req: httpx.Response(200, json={"ok": True}))


@pytest.fixture
def recorder(memory_store, transport) -> EventRecorder:
    client = httpx.AsyncClient(transport=transport)
    publisher = EventPublisher(HOOK, client=client)
    notifier = Notifier("bot-token", "chat-1", client=client)
    return EventRecorder(memory_store, publisher, notifier)


def hook_requests(transport):
    return [r for r in transport.requests if r.url == HOOK]


class TestEventRecorder:

    @pytest.mark.asyncio
    async def test_emit_on_loop_stores_and_delivers(self, recorder, memory_store, transport):
        event = recorder.emit(EventType.TRADE_EXECUTED, "acc-1", {"command_id": "c-1"})
        await recorder.drain()

        assert memory_store.list_events() == [event]
        (req,) = hook_requests(transport)
        assert json.loads(req.content)["event_id"] == event.id

    @pytest.mark.asyncio
    async def test_emit_from_worker_thread_is_scheduled_on_loop(self, recorder, memory_store, transport):
        recorder.attach(asyncio.get_running_loop())

        def work():
            event = recorder.emit(EventType.BOT_PAUSED, "", {"paused": True, "source": "admin"})
            recorder.notify("paused")
            return event

        event = await asyncio.to_thread(work)
        await recorder.drain()

        assert memory_store.list_events() == [event]
        assert len(hook_requests(transport)) == 1
        assert len(transport.requests) == 2

    def test_off_loop_without_attached_loop_raises(self, recorder):
        with pytest.raises(RuntimeError):
            recorder.notify("nobody listening")
