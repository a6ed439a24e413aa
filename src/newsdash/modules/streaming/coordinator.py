from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from starlette.concurrency import run_in_threadpool

from newsdash.core.config import settings
from newsdash.core.logging import get_logger, log_event, log_exception, monotonic_ms
from newsdash.modules.grounding.citations import OffsetUnit, build_annotated_response
from newsdash.modules.grounding.schemas import AnnotatedResponse, GroundingMetadata
from newsdash.modules.provider.gemini import (
    NOT_CONFIGURED_MESSAGE,
    ConfigurationError,
    GenerateRequest,
    ProviderChunk,
)
from newsdash.modules.usage.service import UsageLedger

logger = get_logger(__name__)

ERROR_PREFIX = "Error generating content: "
EMPTY_RESPONSE_MESSAGE = "Gemini API response was empty."
CANCELLED_MESSAGE = "Request cancelled."


class StreamState(str, enum.Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"


_TERMINAL = {StreamState.COMPLETED, StreamState.ERRORED}


class StreamingProvider(Protocol):
    def stream(self, request: GenerateRequest) -> AsyncIterator[ProviderChunk]: ...


CompletionHook = Callable[[AnnotatedResponse], Awaitable[Any] | Any]


@dataclass(frozen=True)
class TextChunk:
    delta_text: str
    is_final: bool = False
    error_kind: str | None = None
    error: str | None = None


class StreamSession:
    """
    One streamed generation.

    `chunks()` yields text deltas followed by exactly one final chunk. `full_response()`
    returns the annotated aggregate and drains the provider itself when nobody has.
    Both read from the same accumulator, so the provider is called once. Usage is
    charged and the completion hook runs only when the provider stream finishes
    cleanly.
    """

    def __init__(
        self,
        provider: StreamingProvider,
        request: GenerateRequest,
        *,
        ledger: UsageLedger | None = None,
        on_complete: CompletionHook | None = None,
        offset_unit: OffsetUnit = "char",
    ):
        self.id = uuid.uuid4().hex[:12]
        self.request = request
        self.state = StreamState.NOT_STARTED
        self._provider = provider
        self._ledger = ledger
        self._on_complete = on_complete
        self._offset_unit = offset_unit
        self._iterator: AsyncIterator[ProviderChunk] | None = None
        self._lock = asyncio.Lock()
        self._events: list[TextChunk] = []
        self._parts: list[str] = []
        self._metadata: GroundingMetadata | None = None
        self._response: AnnotatedResponse | None = None
        self._started_at: float | None = None
        self._pending: asyncio.Future[ProviderChunk] | None = None
        self._closing = False

    @property
    def accumulated_text(self) -> str:
        return "".join(self._parts)

    @property
    def metadata(self) -> GroundingMetadata | None:
        return self._metadata

    async def _advance(self) -> bool:
        """Pull one provider event into the accumulator. False once the session is over."""
        async with self._lock:
            if self.state in _TERMINAL:
                return False
            if self._iterator is None:
                self.state = StreamState.STREAMING
                self._started_at = time.monotonic()
                self._iterator = self._provider.stream(self.request).__aiter__()
                log_event(logger, "stream.session.start", stream_session_id=self.id)
            self._pending = asyncio.ensure_future(self._iterator.__anext__())
            try:
                event = await self._pending
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not self._closing or (current is not None and current.cancelling()):
                    raise
                # aclose() cancelled the read this task was waiting on
                self._fail("cancelled", None)
                return True
            except StopAsyncIteration:
                await self._finish()
                return True
            except ConfigurationError as e:
                self._fail("configuration", e)
                return True
            except Exception as e:  # noqa: BLE001
                self._fail("transport", e)
                return True
            finally:
                self._pending = None

            if event.grounding_metadata is not None:
                self._metadata = event.grounding_metadata
            if event.text:
                self._parts.append(event.text)
                self._events.append(TextChunk(delta_text=event.text))
            return True

    async def _finish(self) -> None:
        text = self.accumulated_text
        if not text.strip():
            self._fail("empty_response", None)
            return

        response = build_annotated_response(text, self._metadata, offset_unit=self._offset_unit)
        self._response = response
        self.state = StreamState.COMPLETED
        self._events.append(TextChunk(delta_text="", is_final=True))

        if self._on_complete is not None:
            try:
                result = self._on_complete(response)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                log_exception(logger, "stream.session.hook_failure", stream_session_id=self.id)
        if self._ledger is not None:
            await run_in_threadpool(self._ledger.record_success)

        log_event(
            logger,
            "stream.session.complete",
            stream_session_id=self.id,
            chars=len(text),
            deltas=len(self._events) - 1,
            supports=len(response.grounding_supports),
            duration_ms=monotonic_ms(self._started_at) if self._started_at else None,
        )

    def _fail(self, kind: str, error: BaseException | None) -> None:
        message = (str(error) or type(error).__name__) if error is not None else None
        if kind == "configuration":
            text = NOT_CONFIGURED_MESSAGE
        elif kind == "empty_response":
            text = EMPTY_RESPONSE_MESSAGE
        elif kind == "cancelled":
            text = CANCELLED_MESSAGE
        else:
            text = f"{ERROR_PREFIX}{message}"
        self._response = AnnotatedResponse.notice(text, error_kind=kind)
        self.state = StreamState.ERRORED
        self._events.append(
            TextChunk(delta_text="", is_final=True, error_kind=kind, error=message or text)
        )
        log_event(
            logger,
            "stream.session.error",
            level=logging.INFO if kind == "cancelled" else logging.WARNING,
            stream_session_id=self.id,
            error_kind=kind,
            error_type=type(error).__name__ if error is not None else None,
            error=message,
        )

    async def chunks(self) -> AsyncIterator[TextChunk]:
        index = 0
        try:
            while True:
                while index < len(self._events):
                    chunk = self._events[index]
                    index += 1
                    yield chunk
                    if chunk.is_final:
                        return
                if not await self._advance() and index >= len(self._events):
                    return
        except GeneratorExit:
            # consumer closed the iterator before the final chunk
            await self.aclose()
            raise

    async def full_response(self) -> AnnotatedResponse:
        while await self._advance():
            pass
        assert self._response is not None
        return self._response

    async def aclose(self) -> None:
        """Abandon the session. Nothing is charged or cached for an unfinished stream."""
        if self.state in _TERMINAL:
            return
        self._closing = True
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
        async with self._lock:
            if self.state in _TERMINAL:
                return
            iterator = self._iterator
            if iterator is not None and hasattr(iterator, "aclose"):
                await iterator.aclose()
            self._fail("cancelled", None)


class StreamCoordinator:
    def __init__(
        self,
        provider: StreamingProvider,
        *,
        ledger: UsageLedger | None = None,
        offset_unit: OffsetUnit | None = None,
    ):
        self._provider = provider
        self._ledger = ledger
        self._offset_unit: OffsetUnit = offset_unit or settings.citation_offset_unit

    def open(
        self,
        request: GenerateRequest,
        *,
        on_complete: CompletionHook | None = None,
    ) -> StreamSession:
        return StreamSession(
            self._provider,
            request,
            ledger=self._ledger,
            on_complete=on_complete,
            offset_unit=self._offset_unit,
        )
