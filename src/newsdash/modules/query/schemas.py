from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from newsdash.modules.grounding.schemas import AnnotatedResponse
from newsdash.modules.query.service import QueryStatus


class QueryIn(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    force_refresh: bool = False

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("query must not be blank")
        return value


class ChunkOut(BaseModel):
    text: str
    complete: bool


class QueryOutcomeOut(BaseModel):
    status: QueryStatus
    from_cache: bool
    timestamp: datetime | None = None
    response: AnnotatedResponse
