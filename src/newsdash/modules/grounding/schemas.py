from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class GroundingSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_offset: int | None = None
    end_offset: int | None = None
    text: str | None = None


class GroundingSupport(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment: GroundingSegment | None = None
    source_indices: list[int] = []


class GroundingChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_uri: str | None = None
    title: str | None = None


class GroundingMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    web_search_queries: list[str] = []
    search_entry_point: str | None = None
    grounding_chunks: list[GroundingChunk] = []
    grounding_supports: list[GroundingSupport] = []


class AnnotatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    text_with_citations: str
    search_queries: list[str] = []
    grounding_chunks: list[GroundingChunk] = []
    grounding_supports: list[GroundingSupport] = []
    search_entry_point: str | None = None
    # Set on responses that report a failure instead of provider content.
    error_kind: str | None = None

    @classmethod
    def notice(cls, message: str, *, error_kind: str | None = None) -> AnnotatedResponse:
        return cls(text=message, text_with_citations=message, error_kind=error_kind)
