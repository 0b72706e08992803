"""Operator notifications: Telegram when configured, a log line otherwise."""

from __future__ import annotations

from typing import Optional

import httpx

from tradegate.infrastructure.logging.logging import get_logger

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    def __init__(
        self,
        bot_token: str = "",
        chat_id: str = "",
        *,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._bot_token = bot_token.strip()
        self._chat_id = chat_id.strip()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._log = get_logger("notifier")

    @property
    def telegram_enabled(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    async def notify(self, text: str) -> bool:
        """Send text to the operator. Returns False on failure, never raises."""
        if not text:
            return False
        if not self.telegram_enabled:
            self._log.info("operator_notification", text=text)
            return True

        try:
            resp = await self._client.post(
                f"{TELEGRAM_API}/bot{self._bot_token}/sendMessage",
                json={"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
            )
        except httpx.HTTPError as e:
            self._log.warning("telegram_send_failed", error=repr(e))
            return False
        if resp.status_code >= 400:
            self._log.warning("telegram_send_failed", status_code=resp.status_code)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
