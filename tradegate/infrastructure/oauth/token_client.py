"""OAuth2 authorization-code client for the signal-confidence provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

import httpx

from tradegate.models.errors import OAuthNotConfiguredError, TokenExchangeError

DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    refresh_token: str = ""
    token_type: str = ""
    scope: str = ""

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TokenResponse":
        access_token = str(data.get("access_token") or "")
        if not access_token:
            raise TokenExchangeError("token response missing access_token")
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=access_token,
            expires_in=expires_in,
            refresh_token=str(data.get("refresh_token") or ""),
            token_type=str(data.get("token_type") or ""),
            scope=str(data.get("scope") or ""),
        )


class OAuthClient:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        auth_url: str,
        token_url: str,
        redirect_uri: str,
        scopes: List[str],
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.auth_url = auth_url
        self.token_url = token_url
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes)

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def build_auth_url(self, state: str) -> str:
        if not (self.client_id and self.auth_url and self.redirect_uri):
            raise OAuthNotConfiguredError("oauth client_id, auth_url and redirect_uri are required")
        parts = urlsplit(self.auth_url)
        query = dict(parse_qsl(parts.query))
        query.update(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": " ".join(self.scopes),
                "state": state,
            }
        )
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    async def exchange_code(self, code: str) -> TokenResponse:
        return await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._request_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
        )

    async def _request_token(self, form: Dict[str, str]) -> TokenResponse:
        if not self.token_url:
            raise OAuthNotConfiguredError("oauth token_url missing")
        try:
            resp = await self._client.post(
                self.token_url,
                data=form,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"token request failed: {e!r}") from e

        if resp.status_code < 200 or resp.status_code > 299:
            raise TokenExchangeError(
                f"token request failed with status {resp.status_code}", status_code=resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise TokenExchangeError("token response is not valid JSON", status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise TokenExchangeError("token response is not a JSON object", status_code=resp.status_code)
        return TokenResponse.from_json(data)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
