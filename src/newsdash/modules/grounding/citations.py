from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from newsdash.modules.grounding.schemas import (
    AnnotatedResponse,
    GroundingChunk,
    GroundingMetadata,
    GroundingSupport,
)

OffsetUnit = Literal["char", "byte"]


def _citation_suffix(support: GroundingSupport, chunks: Sequence[GroundingChunk]) -> str:
    links: list[str] = []
    for idx in support.source_indices:
        if idx < 0 or idx >= len(chunks):
            continue
        uri = (chunks[idx].source_uri or "").strip()
        if not uri:
            continue
        links.append(f"[{idx + 1}]({uri})")
    if not links:
        return ""
    return " " + ", ".join(links)


def _end_offset(support: GroundingSupport) -> int | None:
    if support.segment is None:
        return None
    end = support.segment.end_offset
    if end is None or end < 0:
        return None
    return end


def _char_boundary(buf: bytes, offset: int) -> int:
    """Move `offset` back until it no longer points at a UTF-8 continuation byte."""
    while 0 < offset < len(buf) and buf[offset] & 0xC0 == 0x80:
        offset -= 1
    return offset


def annotate(
    text: str,
    supports: Sequence[GroundingSupport] | None,
    chunks: Sequence[GroundingChunk] | None,
    *,
    offset_unit: OffsetUnit = "char",
) -> str:
    """
    Insert inline citation links after each grounded segment.

    Every insertion uses the provider's offsets into the untouched text. Supports are
    applied from the highest end offset down, so an insertion never moves a position
    that is still waiting to be used. Ties keep their input order.

    With offset_unit="byte" the offsets index the UTF-8 encoding of `text`.
    """
    if not text or not supports or not chunks:
        return text

    insertions: list[tuple[int, str]] = []
    for support in supports:
        end = _end_offset(support)
        if end is None or not support.source_indices:
            continue
        suffix = _citation_suffix(support, chunks)
        if suffix:
            insertions.append((end, suffix))

    if not insertions:
        return text

    if offset_unit == "byte":
        buf = text.encode("utf-8")
        limit = len(buf)
        insertions = [(_char_boundary(buf, min(end, limit)), suffix) for end, suffix in insertions]
        insertions.sort(key=lambda item: item[0], reverse=True)
        for end, suffix in insertions:
            buf = buf[:end] + suffix.encode("utf-8") + buf[end:]
        return buf.decode("utf-8")

    insertions.sort(key=lambda item: item[0], reverse=True)

    out = text
    limit = len(text)
    for end, suffix in insertions:
        end = min(end, limit)
        out = out[:end] + suffix + out[end:]
    return out


def build_annotated_response(
    text: str,
    metadata: GroundingMetadata | None,
    *,
    offset_unit: OffsetUnit = "char",
) -> AnnotatedResponse:
    if metadata is None:
        return AnnotatedResponse(text=text, text_with_citations=text)
    return AnnotatedResponse(
        text=text,
        text_with_citations=annotate(
            text,
            metadata.grounding_supports,
            metadata.grounding_chunks,
            offset_unit=offset_unit,
        ),
        search_queries=list(metadata.web_search_queries),
        grounding_chunks=list(metadata.grounding_chunks),
        grounding_supports=list(metadata.grounding_supports),
        search_entry_point=metadata.search_entry_point,
    )
