from __future__ import annotations

from pathlib import Path

import pytest

from helpers import FakeClock
from tradegate.infrastructure.storage.memory_store import MemoryStore
from tradegate.infrastructure.storage.sqlite_repository import SQLiteStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path, clock: FakeClock):
    if request.param == "memory":
        s = MemoryStore(clock=clock)
    else:
        s = SQLiteStore(tmp_path / "tradegate.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)
