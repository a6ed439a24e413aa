from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from newsdash.core.config import settings
from newsdash.core.logging import get_logger, log_event, monotonic_ms
from newsdash.modules.grounding.schemas import (
    GroundingChunk,
    GroundingMetadata,
    GroundingSegment,
    GroundingSupport,
)

logger = get_logger(__name__)

NOT_CONFIGURED_MESSAGE = "Gemini not configured. Please set the GEMINI_API_KEY environment variable."


class ConfigurationError(RuntimeError):
    pass


class TransportError(RuntimeError):
    pass


@dataclass(frozen=True)
class GenerateRequest:
    prompt: str
    instructions: str | None = None
    model_name: str | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class ProviderChunk:
    text: str = ""
    grounding_metadata: GroundingMetadata | None = None
    finish_reason: str | None = None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_grounding_metadata(raw: Any) -> GroundingMetadata | None:
    if not isinstance(raw, dict):
        return None

    chunks: list[GroundingChunk] = []
    for item in raw.get("groundingChunks") or []:
        web = item.get("web") if isinstance(item, dict) else None
        if not isinstance(web, dict):
            # keep the slot so later indices still line up
            chunks.append(GroundingChunk())
            continue
        uri = web.get("uri")
        title = web.get("title")
        chunks.append(
            GroundingChunk(
                source_uri=uri if isinstance(uri, str) else None,
                title=title if isinstance(title, str) else None,
            )
        )

    supports: list[GroundingSupport] = []
    for item in raw.get("groundingSupports") or []:
        if not isinstance(item, dict):
            continue
        seg = item.get("segment")
        segment = None
        if isinstance(seg, dict):
            seg_text = seg.get("text")
            segment = GroundingSegment(
                # the API omits startIndex when it is zero
                start_offset=_as_int(seg.get("startIndex", 0)),
                end_offset=_as_int(seg.get("endIndex")),
                text=seg_text if isinstance(seg_text, str) else None,
            )
        indices = [
            n
            for n in (_as_int(i) for i in item.get("groundingChunkIndices") or [])
            if n is not None
        ]
        supports.append(GroundingSupport(segment=segment, source_indices=indices))

    queries = [q for q in raw.get("webSearchQueries") or [] if isinstance(q, str)]
    entry_point = raw.get("searchEntryPoint")
    rendered = entry_point.get("renderedContent") if isinstance(entry_point, dict) else None

    return GroundingMetadata(
        web_search_queries=queries,
        search_entry_point=rendered if isinstance(rendered, str) else None,
        grounding_chunks=chunks,
        grounding_supports=supports,
    )


def parse_stream_event(data: str) -> ProviderChunk:
    """Turn one `data:` payload of the SSE stream into a ProviderChunk."""
    try:
        obj = json.loads(data)
    except ValueError as e:
        raise TransportError("Malformed event in Gemini stream") from e
    if not isinstance(obj, dict):
        raise TransportError("Malformed event in Gemini stream")

    error = obj.get("error")
    if isinstance(error, dict):
        raise TransportError(str(error.get("message") or "Gemini stream reported an error"))

    candidates = obj.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = obj.get("promptFeedback")
        if isinstance(feedback, dict) and feedback.get("blockReason"):
            raise TransportError(f"Prompt blocked: {feedback['blockReason']}")
        return ProviderChunk()

    candidate = candidates[0] if isinstance(candidates[0], dict) else {}
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    text = ""
    if isinstance(parts, list):
        text = "".join(
            p["text"]
            for p in parts
            if isinstance(p, dict) and isinstance(p.get("text"), str) and not p.get("thought")
        )
    finish_reason = candidate.get("finishReason")
    return ProviderChunk(
        text=text,
        grounding_metadata=parse_grounding_metadata(candidate.get("groundingMetadata")),
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


async def _iter_sse_data(resp: httpx.Response) -> AsyncIterator[str]:
    buffer: list[str] = []
    async for line in resp.aiter_lines():
        if not line.strip():
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
    if buffer:
        yield "\n".join(buffer)


class GeminiClient:
    """Streams grounded generations from the Gemini REST API."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        timeout_seconds: float | None = None,
        instructions: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.gemini_api_key
        self.model = model or settings.gemini_model
        self.base_url = base_url or settings.gemini_base_url
        self.temperature = settings.gemini_temperature if temperature is None else temperature
        self.timeout_seconds = float(timeout_seconds or settings.gemini_timeout_seconds)
        self.instructions = instructions or settings.gemini_system_instructions
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(self, request: GenerateRequest) -> dict[str, Any]:
        temperature = self.temperature if request.temperature is None else request.temperature
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "tools": [{"google_search": {}}],
            "generationConfig": {"temperature": temperature},
        }
        instructions = request.instructions or self.instructions
        if instructions:
            payload["systemInstruction"] = {"parts": [{"text": instructions}]}
        return payload

    async def stream(self, request: GenerateRequest) -> AsyncIterator[ProviderChunk]:
        if not self.configured:
            raise ConfigurationError(NOT_CONFIGURED_MESSAGE)

        model = request.model_name or self.model
        url = f"{self.base_url.rstrip('/')}/models/{model}:streamGenerateContent"
        headers = {"x-goog-api-key": str(self.api_key), "Content-Type": "application/json"}
        start = time.monotonic()
        events = 0
        log_event(logger, "provider.stream.start", model=model, prompt_chars=len(request.prompt))
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                async with client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    headers=headers,
                    json=self.build_payload(request),
                ) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        log_event(
                            logger,
                            "provider.stream.http_error",
                            level=logging.WARNING,
                            model=model,
                            status_code=resp.status_code,
                            duration_ms=monotonic_ms(start),
                        )
                        raise TransportError(
                            f"Gemini returned HTTP {resp.status_code}: {body[:300]}"
                        )
                    async for data in _iter_sse_data(resp):
                        chunk = parse_stream_event(data)
                        events += 1
                        yield chunk
        except httpx.HTTPError as e:
            log_event(
                logger,
                "provider.stream.failure",
                level=logging.WARNING,
                model=model,
                error_type=type(e).__name__,
                events=events,
                duration_ms=monotonic_ms(start),
            )
            raise TransportError(str(e) or type(e).__name__) from e

        log_event(
            logger,
            "provider.stream.complete",
            model=model,
            events=events,
            duration_ms=monotonic_ms(start),
        )
