from __future__ import annotations

import asyncio
import time

import pytest

from newsdash.core.storage import InMemoryKeyValueStore
from newsdash.modules.cache.service import CACHE_STORE_KEY, ContentCache, hash_query
from newsdash.modules.grounding.schemas import (
    AnnotatedResponse,
    GroundingChunk,
    GroundingMetadata,
    GroundingSegment,
    GroundingSupport,
)
from newsdash.modules.provider.gemini import NOT_CONFIGURED_MESSAGE, ProviderChunk, TransportError
from newsdash.modules.query.service import QueryOrchestrator, QueryStatus
from newsdash.modules.streaming.coordinator import ERROR_PREFIX, StreamCoordinator
from newsdash.modules.usage.service import UsageLedger


def _climate_events() -> list[ProviderChunk]:
    metadata = GroundingMetadata(
        web_search_queries=["climate news"],
        grounding_chunks=[GroundingChunk(source_uri="https://x", title="x.com")],
        grounding_supports=[
            GroundingSupport(segment=GroundingSegment(end_offset=15), source_indices=[0])
        ],
    )
    return [
        ProviderChunk(text="Emissions "),
        ProviderChunk(text="rose.", grounding_metadata=metadata),
    ]


class Recorder:
    def __init__(self):
        self.chunks: list[tuple[str, bool]] = []
        self.responses: list[tuple[AnnotatedResponse, bool, object]] = []

    def on_chunk(self, text: str, complete: bool) -> None:
        self.chunks.append((text, complete))

    def on_response(self, response, from_cache, timestamp) -> None:
        self.responses.append((response, from_cache, timestamp))


@pytest.fixture
def cache(storage, clock):
    return ContentCache(storage, clock=clock)


@pytest.fixture
def ledger(storage, clock):
    return UsageLedger(storage, daily_limit=20, unmetered=False, clock=clock)


def _orchestrator(provider, cache, ledger) -> QueryOrchestrator:
    return QueryOrchestrator(
        cache=cache,
        ledger=ledger,
        provider=provider,
        coordinator=StreamCoordinator(provider, ledger=ledger, offset_unit="char"),
    )


@pytest.mark.asyncio
async def test_fresh_query_streams_caches_and_counts(scripted_provider, cache, ledger, storage):
    for _ in range(5):
        ledger.record_success()
    provider = scripted_provider(_climate_events())
    rec = Recorder()

    outcome = await _orchestrator(provider, cache, ledger).handle(
        "climate news", on_chunk=rec.on_chunk, on_response=rec.on_response
    )

    assert rec.chunks == [
        ("Emissions ", False),
        ("Emissions rose.", False),
        ("Emissions rose. [1](https://x)", True),
    ]
    assert len(rec.responses) == 1
    response, from_cache, timestamp = rec.responses[0]
    assert response.text_with_citations == "Emissions rose. [1](https://x)"
    assert from_cache is False
    assert timestamp is None
    assert outcome.status == QueryStatus.FRESH
    assert ledger.current().count == 6
    assert hash_query("climate news") in storage.get(CACHE_STORE_KEY)
    assert cache.get("Climate News") == response
    assert provider.requests[0].prompt == "climate news"


@pytest.mark.asyncio
async def test_repeat_query_is_served_from_cache(scripted_provider, cache, ledger, clock):
    provider = scripted_provider(_climate_events())
    orchestrator = _orchestrator(provider, cache, ledger)
    stored_at = clock.now
    await orchestrator.handle("climate news")
    clock.advance(hours=2)
    rec = Recorder()

    outcome = await orchestrator.handle(
        "  CLIMATE NEWS ", on_chunk=rec.on_chunk, on_response=rec.on_response
    )

    assert outcome.status == QueryStatus.CACHED
    assert outcome.from_cache is True
    assert outcome.timestamp == stored_at
    assert rec.chunks == [("Emissions rose. [1](https://x)", True)]
    assert rec.responses[0][1] is True
    assert rec.responses[0][2] == stored_at
    assert provider.calls == 1
    assert ledger.current().count == 1


@pytest.mark.asyncio
async def test_cache_hit_is_served_even_at_the_daily_limit(scripted_provider, cache, storage, clock):
    ledger = UsageLedger(storage, daily_limit=1, unmetered=False, clock=clock)
    provider = scripted_provider(_climate_events())
    orchestrator = _orchestrator(provider, cache, ledger)
    await orchestrator.handle("climate news")
    assert ledger.has_reached_limit() is True

    outcome = await orchestrator.handle("climate news")

    assert outcome.status == QueryStatus.CACHED
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_limit_reached_emits_notice_without_calling_provider(
    scripted_provider, cache, storage, clock
):
    ledger = UsageLedger(storage, daily_limit=2, unmetered=False, clock=clock)
    ledger.record_success()
    ledger.record_success()
    provider = scripted_provider(_climate_events())
    rec = Recorder()

    outcome = await _orchestrator(provider, cache, ledger).handle(
        "climate news", on_chunk=rec.on_chunk, on_response=rec.on_response
    )

    assert outcome.status == QueryStatus.LIMIT_REACHED
    assert provider.calls == 0
    text, complete = rec.chunks[0]
    assert complete is True
    assert text.startswith("Daily limit reached")
    assert "2 API calls" in text
    assert rec.responses[0][0].error_kind == "quota_exceeded"
    assert ledger.current().count == 2


@pytest.mark.asyncio
async def test_unconfigured_provider_wins_over_cache(scripted_provider, cache, ledger):
    cache.put(
        "climate news",
        AnnotatedResponse(text="old", text_with_citations="old"),
    )
    provider = scripted_provider(_climate_events(), configured=False)
    rec = Recorder()

    outcome = await _orchestrator(provider, cache, ledger).handle(
        "climate news", on_chunk=rec.on_chunk, on_response=rec.on_response
    )

    assert outcome.status == QueryStatus.NOT_CONFIGURED
    assert rec.chunks == [(NOT_CONFIGURED_MESSAGE, True)]
    assert rec.responses == []
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_force_refresh_bypasses_and_replaces_cache(scripted_provider, cache, ledger):
    cache.put("climate news", AnnotatedResponse(text="old", text_with_citations="old"))
    provider = scripted_provider(_climate_events())

    outcome = await _orchestrator(provider, cache, ledger).handle(
        "climate news", force_refresh=True
    )

    assert outcome.status == QueryStatus.FRESH
    assert provider.calls == 1
    assert cache.get("climate news").text == "Emissions rose."
    assert ledger.current().count == 1


@pytest.mark.asyncio
async def test_provider_failure_reports_error_without_side_effects(
    scripted_provider, cache, ledger
):
    provider = scripted_provider(
        [ProviderChunk(text="Emissions ")], error=TransportError("HTTP 503")
    )
    rec = Recorder()

    outcome = await _orchestrator(provider, cache, ledger).handle(
        "climate news", on_chunk=rec.on_chunk, on_response=rec.on_response
    )

    assert outcome.status == QueryStatus.ERROR
    assert rec.chunks[0] == ("Emissions ", False)
    assert rec.chunks[-1] == (f"{ERROR_PREFIX}HTTP 503", True)
    assert rec.responses[0][0].error_kind == "transport"
    assert cache.info().count == 0
    assert ledger.current().count == 0


@pytest.mark.asyncio
async def test_cancelled_query_leaves_cache_and_usage_untouched(
    scripted_provider, cache, ledger
):
    provider = scripted_provider(_climate_events())
    provider.stall_after = 1
    first_chunk = asyncio.Event()

    def on_chunk(text, complete):
        first_chunk.set()

    task = asyncio.create_task(
        _orchestrator(provider, cache, ledger).handle("climate news", on_chunk=on_chunk)
    )
    await first_chunk.wait()
    await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert provider.closed is True
    assert cache.info().count == 0
    assert ledger.current().count == 0


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(scripted_provider, cache, ledger):
    provider = scripted_provider(_climate_events())
    seen: list[tuple[str, bool]] = []
    responses = []

    async def on_chunk(text, complete):
        await asyncio.sleep(0)
        seen.append((text, complete))

    async def on_response(response, from_cache, timestamp):
        responses.append(from_cache)

    await _orchestrator(provider, cache, ledger).handle(
        "climate news", on_chunk=on_chunk, on_response=on_response
    )

    assert seen[-1] == ("Emissions rose. [1](https://x)", True)
    assert responses == [False]


@pytest.mark.asyncio
async def test_blank_query_is_rejected(scripted_provider, cache, ledger):
    provider = scripted_provider(_climate_events())

    with pytest.raises(ValueError):
        await _orchestrator(provider, cache, ledger).handle("   ")

    assert provider.calls == 0


class _SlowStore(InMemoryKeyValueStore):
    def get(self, key: str) -> str | None:
        time.sleep(0.05)
        return super().get(key)


@pytest.mark.asyncio
async def test_storage_reads_do_not_block_other_tasks(scripted_provider, clock):
    storage = _SlowStore()
    cache = ContentCache(storage, clock=clock)
    ledger = UsageLedger(storage, daily_limit=20, unmetered=False, clock=clock)
    provider = scripted_provider(_climate_events())
    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            await asyncio.sleep(0.005)
            ticks += 1

    background = asyncio.create_task(ticker())
    try:
        outcome = await _orchestrator(provider, cache, ledger).handle("climate news")
    finally:
        background.cancel()

    assert outcome.status == QueryStatus.FRESH
    # at least four slow reads ran (cache lookup, quota check, cache write, usage write)
    assert ticks >= 10
