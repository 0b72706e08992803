"""At-least-once delivery of domain events to an external webhook.

Each event is POSTed as JSON with its id as the idempotency key, so a
consumer can drop duplicates produced by retries. Attempts that fail (transport
error or non-2xx) are retried with capped exponential backoff; when every
attempt fails the event is dropped and the outcome is reported, not raised.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

import httpx

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.models.trade_models import Event

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_TIMEOUT_SEC = 5.0
DEFAULT_RETRY_BASE_SEC = 0.5
ERROR_BODY_LIMIT = 512


@dataclass(frozen=True)
class DeliveryReport:
    event_id: str
    delivered: bool
    attempts: int
    skipped: bool = False
    error: str = ""


class EventPublisher:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        max_retries: int = 3,
        retry_base: float = DEFAULT_RETRY_BASE_SEC,
        retry_max: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.url = (url or "").strip()
        self.timeout = timeout if timeout > 0 else DEFAULT_TIMEOUT_SEC
        self.max_retries = max(0, int(max_retries))
        self.retry_base = retry_base if retry_base > 0 else DEFAULT_RETRY_BASE_SEC
        self.retry_max = max(retry_max, self.retry_base)

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        self._sleep = sleep
        self._tasks: Set["asyncio.Task[DeliveryReport]"] = set()
        self._log = get_logger("event_publisher")

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    @property
    def total_attempts(self) -> int:
        return 1 + self.max_retries

    def backoff(self, attempt: int) -> float:
        """Wait after failed attempt n (1-based)."""
        return min(self.retry_base * (2 ** (attempt - 1)), self.retry_max)

    def _headers(self, event: Event, attempt: int) -> dict:
        return {
            "Content-Type": "application/json",
            "X-Event-ID": event.id,
            "X-Event-Type": event.type.value,
            "X-Idempotency-Key": event.id,
            "X-Delivery-Attempt": str(attempt),
        }

    async def publish(self, event: Event) -> DeliveryReport:
        if not self.enabled:
            return DeliveryReport(event_id=event.id, delivered=False, attempts=0, skipped=True)

        body = event.to_dict()
        last_error = ""

        for attempt in range(1, self.total_attempts + 1):
            try:
                resp = await self._client.post(self.url, json=body, headers=self._headers(event, attempt))
                if 200 <= resp.status_code <= 299:
                    self._log.info(
                        "webhook_delivered",
                        event_id=event.id,
                        event_type=event.type.value,
                        attempt=attempt,
                    )
                    return DeliveryReport(event_id=event.id, delivered=True, attempts=attempt)
                last_error = f"http status={resp.status_code} body={resp.text[:ERROR_BODY_LIMIT]}"
            except httpx.HTTPError as e:
                last_error = f"request failed: {e!r}"

            self._log.warning(
                "webhook_attempt_failed",
                event_id=event.id,
                attempt=attempt,
                total_attempts=self.total_attempts,
                error=last_error,
            )
            if attempt >= self.total_attempts:
                break
            await self._sleep(self.backoff(attempt))

        self._log.error(
            "webhook_delivery_exhausted",
            event_id=event.id,
            event_type=event.type.value,
            attempts=self.total_attempts,
            error=last_error,
        )
        return DeliveryReport(event_id=event.id, delivered=False, attempts=self.total_attempts, error=last_error)

    async def _publish_bounded(self, event: Event) -> DeliveryReport:
        try:
            return await asyncio.wait_for(self.publish(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._log.error("webhook_delivery_timeout", event_id=event.id, timeout_sec=self.timeout)
            return DeliveryReport(event_id=event.id, delivered=False, attempts=0, error="timeout")

    def publish_in_background(self, event: Event) -> Optional["asyncio.Task[DeliveryReport]"]:
        """Detach delivery from the caller. Must be called from a running loop."""
        if not self.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self._publish_bounded(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def pending_tasks(self) -> List["asyncio.Task[DeliveryReport]"]:
        return list(self._tasks)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()
