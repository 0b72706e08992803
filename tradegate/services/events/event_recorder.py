"""Append domain events to the store and hand them to the webhook publisher.

The store append is synchronous and authoritative; webhook delivery and
operator notifications run as detached tasks so a slow consumer never holds
up an agent or admin request. `emit` and `notify` may be called from a
worker thread; the scheduling is then handed back to the attached loop.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional, Set

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.notify.notifier import Notifier
from tradegate.infrastructure.storage.store import Store
from tradegate.infrastructure.webhook.event_publisher import EventPublisher
from tradegate.models.trade_models import Event, EventType, JsonDict


class EventRecorder:
    def __init__(self, store: Store, publisher: EventPublisher, notifier: Notifier) -> None:
        self._store = store
        self._publisher = publisher
        self._notifier = notifier
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._log = get_logger("event_recorder")

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    def emit(self, event_type: EventType, account_id: str, payload: JsonDict) -> Event:
        event = self._store.append_event(event_type, account_id, payload)
        self._log.info("event_recorded", event_id=event.id, event_type=event_type.value, account_id=account_id)
        self._on_loop(self._publisher.publish_in_background, event)
        return event

    def notify(self, text: str) -> None:
        self._on_loop(self._spawn_notification, text)

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the serving loop so worker threads can hand work back to it."""
        self._loop = loop

    def _on_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            running: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            self._loop = running
            fn(*args)
            return
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError("event recorder has no event loop attached")
        # called from a worker thread (store work moved off the loop)
        self._loop.call_soon_threadsafe(fn, *args)

    def _spawn_notification(self, text: str) -> None:
        self._spawn(self._notifier.notify(text))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for pending notifications and deliveries (tests, shutdown)."""
        pending = list(self._tasks) + self._publisher.pending_tasks()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._publisher.aclose()
        await self._notifier.aclose()
