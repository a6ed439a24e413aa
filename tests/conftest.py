from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta

import pytest

# Set env before any newsdash imports (settings/engine are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./.newsdash_test.db")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ["GEMINI_API_KEY"] = ""
os.environ.setdefault("UNMETERED", "false")


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedProvider:
    """Replays a fixed list of ProviderChunks, optionally stalling before `stall_after` or failing at the end."""

    def __init__(self, events, *, error: Exception | None = None, configured: bool = True):
        self.events = list(events)
        self.error = error
        self.configured = configured
        self.calls = 0
        self.closed = False
        self.requests = []
        self.stall = asyncio.Event()
        self.stalled = asyncio.Event()
        self.stall_after: int | None = None

    async def stream(self, request):
        self.calls += 1
        self.requests.append(request)
        try:
            for idx, event in enumerate(self.events):
                if self.stall_after is not None and idx == self.stall_after:
                    self.stalled.set()
                    await self.stall.wait()
                await asyncio.sleep(0)
                yield event
            if self.error is not None:
                raise self.error
        except (GeneratorExit, asyncio.CancelledError):
            self.closed = True
            raise


@pytest.fixture(autouse=True)
def _reset_storage() -> None:
    import newsdash.core.storage as storage_mod

    storage_mod._storage = None
    yield
    storage_mod._storage = None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def storage():
    from newsdash.core.storage import InMemoryKeyValueStore

    return InMemoryKeyValueStore()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider
