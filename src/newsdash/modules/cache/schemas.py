from __future__ import annotations

from datetime import datetime

from pydantic import AwareDatetime, BaseModel

from newsdash.modules.grounding.schemas import AnnotatedResponse


class CacheEntry(BaseModel):
    key: str
    payload: AnnotatedResponse
    created_at: AwareDatetime


class CachedResponse(BaseModel):
    payload: AnnotatedResponse
    created_at: datetime


class CacheInfo(BaseModel):
    count: int
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None
