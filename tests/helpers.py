from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List

import httpx

from tradegate.models.market_models import Candle
from tradegate.models.trade_models import ProviderConnection


T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def rising_candles(n: int = 120) -> List[Candle]:
    out: List[Candle] = []
    for i in range(n):
        close = 1.08 + i * 0.00065
        if i % 9 == 0:
            close -= 0.0002
        out.append(
            Candle(
                time=T0 + timedelta(minutes=i),
                open=close - 0.0001,
                high=close + 0.0004,
                low=close - 0.0005,
                close=close,
            )
        )
    return out


def flat_candles(n: int = 120) -> List[Candle]:
    out: List[Candle] = []
    for i in range(n):
        close = 1.1000 if i % 2 == 0 else 1.1002
        out.append(Candle(time=T0 + timedelta(minutes=i), open=close, high=close + 0.0002, low=close - 0.0002, close=close))
    return out


def connected(clock: FakeClock, *, ttl_minutes: int = 60, refresh_token: str = "rt-1") -> ProviderConnection:
    return ProviderConnection(
        provider="openai",
        access_token="at-1",
        refresh_token=refresh_token,
        scopes=["models.read"],
        expires_at=clock() + timedelta(minutes=ttl_minutes),
        connected_at=clock() - timedelta(hours=1),
    )


Handler = Callable[[httpx.Request], httpx.Response]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it saw."""

    def __init__(self, handler: Handler) -> None:
        self.requests: List[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


async def no_sleep(_: float) -> None:
    return None
