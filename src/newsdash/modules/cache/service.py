from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from newsdash.core.config import settings
from newsdash.core.logging import get_logger, log_event
from newsdash.core.storage import KeyValueStore, StorageError
from newsdash.modules.cache.schemas import CachedResponse, CacheEntry, CacheInfo
from newsdash.modules.grounding.schemas import AnnotatedResponse

logger = get_logger(__name__)

CACHE_STORE_KEY = "newsdash_response_cache"


def hash_query(query: str) -> str:
    normalized = (query or "").strip().lower()
    return hashlib.sha256(normalized.encode("utf-8", errors="ignore")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_ttl() -> timedelta:
    return timedelta(days=settings.cache_ttl_days)


class ContentCache:
    """
    Annotated responses keyed by the sha256 of the normalized query.

    The whole store lives in one key-value slot as a JSON object. Reads that fail or
    find a corrupt blob behave like an empty cache; writes that fail are retried once
    after dropping expired entries, then given up. Nothing here raises a storage error
    to the caller.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._storage = storage
        self._ttl = ttl if ttl is not None else default_ttl()
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _is_expired(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at > self._ttl

    def _load(self) -> dict[str, CacheEntry]:
        try:
            raw = self._storage.get(CACHE_STORE_KEY)
        except StorageError:
            log_event(logger, "cache.load.failure", level=logging.WARNING)
            return {}
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            log_event(logger, "cache.load.corrupt", level=logging.WARNING, byte_size=len(raw))
            return {}
        if not isinstance(data, dict):
            log_event(logger, "cache.load.corrupt", level=logging.WARNING, byte_size=len(raw))
            return {}

        store: dict[str, CacheEntry] = {}
        skipped = 0
        for key, value in data.items():
            try:
                entry = CacheEntry.model_validate(value)
            except ValidationError:
                skipped += 1
                continue
            store[key] = entry
        if skipped:
            log_event(logger, "cache.load.skipped_entries", level=logging.WARNING, skipped=skipped)
        return store

    def _dump(self, store: dict[str, CacheEntry]) -> str:
        return json.dumps(
            {key: entry.model_dump(mode="json") for key, entry in store.items()},
            ensure_ascii=False,
        )

    def _drop_expired(self, store: dict[str, CacheEntry], now: datetime) -> int:
        expired = [key for key, entry in store.items() if self._is_expired(entry, now)]
        for key in expired:
            del store[key]
        return len(expired)

    def _save(self, store: dict[str, CacheEntry]) -> bool:
        try:
            self._storage.set(CACHE_STORE_KEY, self._dump(store))
            return True
        except StorageError as e:
            removed = self._drop_expired(store, self._clock())
            log_event(
                logger,
                "cache.save.retry",
                level=logging.WARNING,
                error_type=type(e).__name__,
                removed=removed,
                entries=len(store),
            )
        try:
            self._storage.set(CACHE_STORE_KEY, self._dump(store))
            return True
        except StorageError as e:
            log_event(
                logger,
                "cache.save.dropped",
                level=logging.ERROR,
                error_type=type(e).__name__,
                entries=len(store),
            )
            return False

    def get_with_timestamp(self, query: str) -> CachedResponse | None:
        key = hash_query(query)
        store = self._load()
        entry = store.get(key)
        if entry is None:
            log_event(logger, "cache.miss", cache_key=key[:12])
            return None
        if self._is_expired(entry, self._clock()):
            del store[key]
            self._save(store)
            log_event(logger, "cache.expired", cache_key=key[:12], created_at=entry.created_at)
            return None
        log_event(logger, "cache.hit", cache_key=key[:12], query=query[:50])
        return CachedResponse(payload=entry.payload, created_at=entry.created_at)

    def get(self, query: str) -> AnnotatedResponse | None:
        cached = self.get_with_timestamp(query)
        return cached.payload if cached else None

    def put(self, query: str, payload: AnnotatedResponse) -> None:
        key = hash_query(query)
        store = self._load()
        store[key] = CacheEntry(key=key, payload=payload, created_at=self._clock())
        if self._save(store):
            log_event(logger, "cache.put", cache_key=key[:12], entries=len(store))

    def clear_expired(self) -> int:
        store = self._load()
        removed = self._drop_expired(store, self._clock())
        if removed:
            self._save(store)
            log_event(logger, "cache.clear_expired", removed=removed, remaining=len(store))
        return removed

    def clear_all(self) -> None:
        try:
            self._storage.remove(CACHE_STORE_KEY)
        except StorageError:
            log_event(logger, "cache.clear_all.failure", level=logging.WARNING)
            return
        log_event(logger, "cache.clear_all")

    def list_all(self) -> list[CacheEntry]:
        return [
            CacheEntry(key=key, payload=entry.payload, created_at=entry.created_at)
            for key, entry in self._load().items()
        ]

    def info(self) -> CacheInfo:
        entries = list(self._load().values())
        if not entries:
            return CacheInfo(count=0)
        timestamps = [e.created_at for e in entries]
        return CacheInfo(
            count=len(entries),
            oldest_created_at=min(timestamps),
            newest_created_at=max(timestamps),
        )
