from __future__ import annotations

import enum
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from starlette.concurrency import run_in_threadpool

from newsdash.core.logging import bind_context, get_logger, log_event, reset_context
from newsdash.modules.cache.service import ContentCache, hash_query
from newsdash.modules.grounding.schemas import AnnotatedResponse
from newsdash.modules.provider.gemini import (
    NOT_CONFIGURED_MESSAGE,
    ConfigurationError,
    GeminiClient,
    GenerateRequest,
)
from newsdash.modules.streaming.coordinator import StreamCoordinator, StreamState
from newsdash.modules.usage.service import QuotaExceededError, UsageLedger

logger = get_logger(__name__)

ChunkCallback = Callable[[str, bool], Awaitable[Any] | Any]
ResponseCallback = Callable[[AnnotatedResponse, bool, datetime | None], Awaitable[Any] | Any]


class QueryStatus(str, enum.Enum):
    CACHED = "cached"
    FRESH = "fresh"
    LIMIT_REACHED = "limit_reached"
    NOT_CONFIGURED = "not_configured"
    ERROR = "error"


@dataclass(frozen=True)
class QueryOutcome:
    status: QueryStatus
    response: AnnotatedResponse
    from_cache: bool = False
    timestamp: datetime | None = None


async def _emit(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class QueryOrchestrator:
    """
    Runs one query through cache, quota and the streamed provider call.

    Progress goes to `on_chunk(cumulative_text, is_complete)` and the final result to
    `on_response(response, from_cache, timestamp)`. Failures arrive through the same
    callbacks as notices; `handle` itself only raises if a callback does or the task
    is cancelled.
    """

    def __init__(
        self,
        *,
        cache: ContentCache,
        ledger: UsageLedger,
        provider: GeminiClient,
        coordinator: StreamCoordinator | None = None,
    ):
        self.cache = cache
        self.ledger = ledger
        self.provider = provider
        self.coordinator = coordinator or StreamCoordinator(provider, ledger=ledger)

    def _ensure_configured(self) -> None:
        if not self.provider.configured:
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)

    async def handle(
        self,
        query: str,
        *,
        on_chunk: ChunkCallback | None = None,
        on_response: ResponseCallback | None = None,
        force_refresh: bool = False,
    ) -> QueryOutcome:
        query = (query or "").strip()
        if not query:
            raise ValueError("query must not be empty")
        cache_key = hash_query(query)[:12]

        try:
            self._ensure_configured()
        except ConfigurationError as e:
            log_event(logger, "query.not_configured", cache_key=cache_key)
            await _emit(on_chunk, str(e), True)
            return QueryOutcome(
                status=QueryStatus.NOT_CONFIGURED,
                response=AnnotatedResponse.notice(str(e), error_kind="configuration"),
            )

        if not force_refresh:
            cached = await run_in_threadpool(self.cache.get_with_timestamp, query)
            if cached is not None:
                log_event(logger, "query.cache_hit", cache_key=cache_key)
                await _emit(on_chunk, cached.payload.text_with_citations, True)
                await _emit(on_response, cached.payload, True, cached.created_at)
                return QueryOutcome(
                    status=QueryStatus.CACHED,
                    response=cached.payload,
                    from_cache=True,
                    timestamp=cached.created_at,
                )

        try:
            await run_in_threadpool(self.ledger.ensure_available)
        except QuotaExceededError as e:
            notice = AnnotatedResponse.notice(str(e), error_kind="quota_exceeded")
            await _emit(on_chunk, notice.text_with_citations, True)
            await _emit(on_response, notice, False, None)
            return QueryOutcome(status=QueryStatus.LIMIT_REACHED, response=notice)

        session = self.coordinator.open(
            GenerateRequest(prompt=query),
            on_complete=lambda response: run_in_threadpool(self.cache.put, query, response),
        )
        token = bind_context(stream_session_id=session.id)
        log_event(
            logger,
            "query.stream.open",
            cache_key=cache_key,
            force_refresh=force_refresh or None,
        )
        try:
            accumulated = ""
            async for chunk in session.chunks():
                if chunk.is_final:
                    break
                accumulated += chunk.delta_text
                await _emit(on_chunk, accumulated, False)
            response = await session.full_response()
        finally:
            if session.state not in (StreamState.COMPLETED, StreamState.ERRORED):
                await session.aclose()
            reset_context(token)

        status = QueryStatus.ERROR if response.error_kind else QueryStatus.FRESH
        log_event(logger, "query.complete", cache_key=cache_key, status=status.value)
        await _emit(on_chunk, response.text_with_citations, True)
        await _emit(on_response, response, False, None)
        return QueryOutcome(status=status, response=response)
