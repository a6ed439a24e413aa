from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from newsdash.core.config import settings
from newsdash.core.logging import get_logger, log_event
from newsdash.core.storage import KeyValueStore, StorageError
from newsdash.modules.usage.schemas import UsageInfo, UsageRecord

logger = get_logger(__name__)

USAGE_STORE_KEY = "newsdash_api_usage"
UNLIMITED = sys.maxsize
NEAR_LIMIT_REMAINING = 3
LIMIT_REACHED_MESSAGE = (
    "Daily limit reached: you've used all {limit} API calls for today. Please try again tomorrow."
)


class QuotaExceededError(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageLedger:
    def __init__(
        self,
        storage: KeyValueStore,
        *,
        daily_limit: int | None = None,
        unmetered: bool | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._storage = storage
        self.daily_limit = settings.daily_limit if daily_limit is None else daily_limit
        self.unmetered = settings.unmetered if unmetered is None else unmetered
        self._clock = clock

    def _today(self) -> str:
        return self._clock().astimezone(UTC).date().isoformat()

    def _load(self) -> UsageRecord:
        today = self._today()
        try:
            raw = self._storage.get(USAGE_STORE_KEY)
        except StorageError:
            log_event(logger, "usage.load.failure", level=logging.WARNING)
            raw = None
        if not raw:
            return UsageRecord(day=today, count=0)
        try:
            record = UsageRecord.model_validate(json.loads(raw))
        except (ValueError, ValidationError):
            log_event(logger, "usage.load.corrupt", level=logging.WARNING)
            return UsageRecord(day=today, count=0)
        if record.day != today:
            return UsageRecord(day=today, count=0)
        return record

    def _save(self, record: UsageRecord) -> None:
        try:
            self._storage.set(USAGE_STORE_KEY, record.model_dump_json())
        except StorageError as e:
            log_event(
                logger,
                "usage.save.failure",
                level=logging.WARNING,
                error_type=type(e).__name__,
                day=record.day,
                count=record.count,
            )

    def current(self) -> UsageRecord:
        return self._load()

    def remaining_today(self) -> int:
        if self.unmetered:
            return UNLIMITED
        return max(0, self.daily_limit - self._load().count)

    def has_reached_limit(self) -> bool:
        if self.unmetered:
            return False
        return self._load().count >= self.daily_limit

    def ensure_available(self) -> None:
        if self.has_reached_limit():
            log_event(logger, "usage.limit_reached", limit=self.daily_limit)
            raise QuotaExceededError(LIMIT_REACHED_MESSAGE.format(limit=self.daily_limit))

    def record_success(self) -> None:
        if self.unmetered:
            return
        record = self._load()
        updated = UsageRecord(day=record.day, count=record.count + 1)
        self._save(updated)
        log_event(
            logger,
            "usage.recorded",
            day=updated.day,
            count=updated.count,
            limit=self.daily_limit,
        )

    def reset(self) -> None:
        self._save(UsageRecord(day=self._today(), count=0))
        log_event(logger, "usage.reset")

    def info(self) -> UsageInfo:
        record = self._load()
        if self.unmetered:
            return UsageInfo(
                used=record.count,
                limit=self.daily_limit,
                remaining=UNLIMITED,
                unmetered=True,
            )
        remaining = max(0, self.daily_limit - record.count)
        return UsageInfo(
            used=record.count,
            limit=self.daily_limit,
            remaining=remaining,
            near_limit=record.count > 0 and remaining <= NEAR_LIMIT_REMAINING,
        )
