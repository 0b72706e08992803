"""Provider OAuth connection lifecycle: authorize, keep fresh, disconnect.

The dispatch path asks `ensure_fresh()` before every risk evaluation. Any
failure to obtain a usable token yields None so the caller fails closed.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Optional, Tuple

from tradegate.infrastructure.logging.logging import get_logger
from tradegate.infrastructure.oauth.token_client import OAuthClient
from tradegate.infrastructure.storage.store import Store
from tradegate.infrastructure.utils.timeutils import Clock, ensure_utc, utc_now
from tradegate.models.errors import OAuthNotConfiguredError, TokenExchangeError
from tradegate.models.trade_models import JsonDict, OAuthState, ProviderConnection


class OAuthTokenManager:
    def __init__(
        self,
        store: Store,
        client: OAuthClient,
        *,
        provider: str = "openai",
        refresh_skew: timedelta = timedelta(minutes=2),
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._client = client
        self.provider = provider
        self.refresh_skew = refresh_skew
        self._now = clock
        self._log = get_logger("oauth_token_manager", provider=provider)

    @property
    def configured(self) -> bool:
        return bool(self._client.client_id and self._client.client_secret)

    def is_usable(self, conn: Optional[ProviderConnection]) -> bool:
        if conn is None:
            return False
        return self._now() + self.refresh_skew < ensure_utc(conn.expires_at)

    def is_connected(self, conn: Optional[ProviderConnection]) -> bool:
        """Token not yet expired (skew ignored)."""
        return conn is not None and ensure_utc(conn.expires_at) > self._now()

    async def ensure_fresh(self) -> Optional[ProviderConnection]:
        conn = self._store.get_provider_connection(self.provider)
        if conn is None:
            return None
        if self.is_usable(conn):
            return conn
        if not conn.refresh_token.strip():
            self._log.warning("oauth_refresh_unavailable", reason="no_refresh_token")
            return None

        try:
            resp = await self._client.refresh(conn.refresh_token)
        except (TokenExchangeError, OAuthNotConfiguredError) as e:
            self._log.warning("oauth_refresh_failed", error=str(e))
            return None

        now = self._now()
        refreshed = ProviderConnection(
            provider=self.provider,
            access_token=resp.access_token,
            refresh_token=resp.refresh_token.strip() or conn.refresh_token,
            scopes=resp.scopes or list(conn.scopes),
            expires_at=now + timedelta(seconds=resp.expires_in),
            connected_at=conn.connected_at,
        )
        self._store.save_provider_connection(refreshed)
        self._log.info("oauth_refreshed", expires_in=resp.expires_in)
        return refreshed

    def start_authorization(self) -> Tuple[str, str]:
        if not self.configured:
            raise OAuthNotConfiguredError(f"{self.provider} oauth is not configured")
        state = str(uuid.uuid4())
        auth_url = self._client.build_auth_url(state)
        self._store.save_oauth_state(OAuthState(state=state, provider=self.provider, created_at=self._now()))
        self._log.info("oauth_authorization_started")
        return state, auth_url

    async def complete_authorization(self, state: str, code: str) -> ProviderConnection:
        """Consume the single-use state, exchange the code, store the connection.

        Raises NotFoundError for an unknown or reused state and
        TokenExchangeError when the provider rejects the code.
        """
        self._store.consume_oauth_state(state)
        resp = await self._client.exchange_code(code)
        now = self._now()
        conn = ProviderConnection(
            provider=self.provider,
            access_token=resp.access_token,
            refresh_token=resp.refresh_token,
            scopes=resp.scopes or list(self._client.scopes),
            expires_at=now + timedelta(seconds=resp.expires_in),
            connected_at=now,
        )
        self._store.save_provider_connection(conn)
        self._log.info("oauth_connected", expires_in=resp.expires_in, scopes=conn.scopes)
        return conn

    async def status(self) -> JsonDict:
        conn = await self.ensure_fresh()
        if conn is None:
            return {"connected": False, "provider": self.provider}
        return {"connected": True, **conn.public_view()}

    def disconnect(self) -> None:
        self._store.clear_provider_connection(self.provider)
        self._log.info("oauth_disconnected")

    async def aclose(self) -> None:
        await self._client.aclose()
