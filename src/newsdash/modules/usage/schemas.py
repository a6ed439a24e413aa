from __future__ import annotations

from pydantic import BaseModel, Field


class UsageRecord(BaseModel):
    day: str
    count: int = Field(default=0, ge=0)


class UsageInfo(BaseModel):
    used: int
    limit: int
    remaining: int
    unmetered: bool = False
    near_limit: bool = False
