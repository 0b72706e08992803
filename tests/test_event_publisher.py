from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from helpers import RecordingTransport, T0, no_sleep
from tradegate.infrastructure.webhook.event_publisher import EventPublisher
from tradegate.models.trade_models import Event, EventType

URL = "https://hooks.example.test/events"


def make_event() -> Event:
    return Event(
        id="evt-1",
        type=EventType.TRADE_EXECUTED,
        payload={"command_id": "c-1", "status": "SUCCESS"},
        created_at=T0,
        account_id="acc-1",
    )


def publisher_with(handler, **kwargs):
    transport = RecordingTransport(handler)
    client = httpx.AsyncClient(transport=transport)
    kwargs.setdefault("sleep", no_sleep)
    return EventPublisher(URL, client=client, **kwargs), transport


# ═══════════════════════════════════════════════════════════════
# DELIVERY
# ═══════════════════════════════════════════════════════════════

class TestDelivery:

    @pytest.mark.asyncio
    async def test_delivers_with_headers_and_body(self):
        pub, transport = publisher_with(lambda req: httpx.Response(202))
        report = await pub.publish(make_event())

        assert report.delivered
        assert report.attempts == 1
        req = transport.requests[0]
        assert req.method == "POST"
        assert req.headers["X-Event-ID"] == "evt-1"
        assert req.headers["X-Event-Type"] == "TradeExecuted"
        assert req.headers["X-Idempotency-Key"] == "evt-1"
        assert req.headers["X-Delivery-Attempt"] == "1"
        assert req.headers["Content-Type"] == "application/json"
        body = json.loads(req.content)
        assert body["event_id"] == "evt-1"
        assert body["payload"]["command_id"] == "c-1"

    @pytest.mark.asyncio
    async def test_retries_then_succeeds_with_stable_key(self):
        calls = {"n": 0}

        def handler(req):
            calls["n"] += 1
            return httpx.Response(503 if calls["n"] <= 2 else 200)

        waits = []

        async def fake_sleep(sec):
            waits.append(sec)

        pub, transport = publisher_with(handler, sleep=fake_sleep)
        report = await pub.publish(make_event())

        assert report.delivered
        assert report.attempts == 3
        assert [r.headers["X-Delivery-Attempt"] for r in transport.requests] == ["1", "2", "3"]
        assert {r.headers["X-Idempotency-Key"] for r in transport.requests} == {"evt-1"}
        assert waits == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_exhaustion_is_reported_not_raised(self):
        pub, transport = publisher_with(lambda req: httpx.Response(500, text="boom"), max_retries=3)
        report = await pub.publish(make_event())

        assert not report.delivered
        assert report.attempts == 4
        assert len(transport.requests) == 4
        assert "500" in report.error

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        def handler(req):
            raise httpx.ConnectError("refused", request=req)

        pub, transport = publisher_with(handler, max_retries=1)
        report = await pub.publish(make_event())
        assert not report.delivered
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_empty_url_is_skipped(self):
        transport = RecordingTransport(lambda req: httpx.Response(200))
        pub = EventPublisher("", client=httpx.AsyncClient(transport=transport))
        report = await pub.publish(make_event())
        assert report.skipped
        assert transport.requests == []
        assert pub.publish_in_background(make_event()) is None


# ═══════════════════════════════════════════════════════════════
# BACKOFF / CLAMPS
# ═══════════════════════════════════════════════════════════════

class TestBackoff:

    def test_capped_exponential(self):
        pub = EventPublisher(URL, retry_base=0.5, retry_max=5.0)
        assert [pub.backoff(n) for n in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 5.0, 5.0]

    def test_constructor_clamps(self):
        pub = EventPublisher(URL, max_retries=-2, retry_base=0, retry_max=0.1)
        assert pub.max_retries == 0
        assert pub.total_attempts == 1
        assert pub.retry_base == 0.5
        assert pub.retry_max == 0.5


# ═══════════════════════════════════════════════════════════════
# BACKGROUND
# ═══════════════════════════════════════════════════════════════

class TestBackground:

    @pytest.mark.asyncio
    async def test_background_task_delivers(self):
        pub, transport = publisher_with(lambda req: httpx.Response(200))
        task = pub.publish_in_background(make_event())
        report = await task
        assert report.delivered
        assert len(transport.requests) == 1
        assert pub.pending_tasks() == []

    @pytest.mark.asyncio
    async def test_background_task_bounded_by_timeout(self):
        async def slow_sleep(sec):
            await asyncio.sleep(10)

        pub, _ = publisher_with(lambda req: httpx.Response(500), sleep=slow_sleep, timeout=0.05)
        report = await pub.publish_in_background(make_event())
        assert not report.delivered
        assert report.error == "timeout"

    @pytest.mark.asyncio
    async def test_aclose_cancels_pending(self):
        async def slow_sleep(sec):
            await asyncio.sleep(10)

        pub, _ = publisher_with(lambda req: httpx.Response(500), sleep=slow_sleep, timeout=30)
        task = pub.publish_in_background(make_event())
        await asyncio.sleep(0)
        await pub.aclose()
        assert task.cancelled()
