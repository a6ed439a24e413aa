from __future__ import annotations

import logging
import os
import re
import time
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from newsdash.core.config import settings
from newsdash.core.logging import get_logger, log_event, log_exception, monotonic_ms
from newsdash.core.models import KeyValueEntry

logger = get_logger(__name__)

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]{1,200}$")


class StorageError(RuntimeError):
    pass


class StorageQuotaExceededError(StorageError):
    pass


def _byte_size(value: str) -> int:
    return len(value.encode("utf-8"))


class KeyValueStore:
    """
    String key-value slots shared by the response cache and the usage ledger.

    `set` raises StorageQuotaExceededError when the write would push the total
    stored size past `quota_bytes`.
    """

    quota_bytes: int | None = None

    def get(self, key: str) -> str | None:  # pragma: no cover
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def remove(self, key: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def _check_quota(self, *, key: str, value: str, other_bytes: int, backend: str) -> None:
        if self.quota_bytes is None:
            return
        total = other_bytes + _byte_size(value)
        if total > self.quota_bytes:
            log_event(
                logger,
                "storage.set.quota_exceeded",
                backend=backend,
                storage_key=key,
                byte_size=_byte_size(value),
                total_bytes=total,
                quota_bytes=self.quota_bytes,
            )
            raise StorageQuotaExceededError(
                f"Storage quota exceeded writing {key}: {total} > {self.quota_bytes} bytes"
            )


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self, *, quota_bytes: int | None = None):
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        other = sum(_byte_size(v) for k, v in self._data.items() if k != key)
        self._check_quota(key=key, value=value, other_bytes=other, backend="memory")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class LocalFileKeyValueStore(KeyValueStore):
    def __init__(self, root: Path, *, quota_bytes: int | None = None):
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self._root / key

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except Exception as e:  # noqa: BLE001
            log_exception(logger, "storage.get.failure", backend="local", storage_key=key)
            raise StorageError(f"Failed to read {key}") from e

    def set(self, key: str, value: str) -> None:
        start = time.monotonic()
        path = self._path(key)
        other = sum(
            p.stat().st_size
            for p in self._root.iterdir()
            if p.is_file() and p.name != key and not p.name.endswith(".tmp")
        )
        self._check_quota(key=key, value=value, other_bytes=other, backend="local")
        tmp = path.with_name(path.name + ".tmp")
        try:
            tmp.write_text(value, encoding="utf-8")
            os.replace(tmp, path)
        except Exception as e:  # noqa: BLE001
            log_exception(
                logger,
                "storage.set.failure",
                backend="local",
                storage_key=key,
                byte_size=_byte_size(value),
            )
            raise StorageError(f"Failed to write {key}") from e
        log_event(
            logger,
            "storage.set.success",
            level=logging.DEBUG,
            backend="local",
            storage_key=key,
            byte_size=_byte_size(value),
            duration_ms=monotonic_ms(start),
        )

    def remove(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            try:
                path.unlink()
            except Exception as e:  # noqa: BLE001
                log_exception(logger, "storage.remove.failure", backend="local", storage_key=key)
                raise StorageError(f"Failed to remove {key}") from e


class SqlKeyValueStore(KeyValueStore):
    def __init__(self, session_factory: sessionmaker, *, quota_bytes: int | None = None):
        self._session_factory = session_factory
        self.quota_bytes = quota_bytes

    def get(self, key: str) -> str | None:
        try:
            with self._session_factory() as session:
                entry = session.get(KeyValueEntry, key)
                return entry.value if entry else None
        except Exception as e:  # noqa: BLE001
            log_exception(logger, "storage.get.failure", backend="sql", storage_key=key)
            raise StorageError(f"Failed to read {key}") from e

    def set(self, key: str, value: str) -> None:
        start = time.monotonic()
        try:
            with self._session_factory() as session:
                other = self._other_bytes(session, key=key)
                self._check_quota(key=key, value=value, other_bytes=other, backend="sql")
                entry = session.get(KeyValueEntry, key)
                if entry is None:
                    entry = KeyValueEntry(key=key, value=value)
                else:
                    entry.value = value
                session.add(entry)
                session.commit()
        except StorageError:
            raise
        except Exception as e:  # noqa: BLE001
            log_exception(
                logger,
                "storage.set.failure",
                backend="sql",
                storage_key=key,
                byte_size=_byte_size(value),
            )
            raise StorageError(f"Failed to write {key}") from e
        log_event(
            logger,
            "storage.set.success",
            level=logging.DEBUG,
            backend="sql",
            storage_key=key,
            byte_size=_byte_size(value),
            duration_ms=monotonic_ms(start),
        )

    def remove(self, key: str) -> None:
        try:
            with self._session_factory() as session:
                entry = session.get(KeyValueEntry, key)
                if entry is not None:
                    session.delete(entry)
                    session.commit()
        except Exception as e:  # noqa: BLE001
            log_exception(logger, "storage.remove.failure", backend="sql", storage_key=key)
            raise StorageError(f"Failed to remove {key}") from e

    def _other_bytes(self, session: Session, *, key: str) -> int:
        if self.quota_bytes is None:
            return 0
        # quota is counted in UTF-8 bytes, same as _byte_size
        values = session.scalars(select(KeyValueEntry.value).where(KeyValueEntry.key != key))
        return sum(_byte_size(value or "") for value in values)


_storage: KeyValueStore | None = None


def _local_root() -> Path:
    root = settings.local_storage_path
    if not root.is_absolute():
        root = Path(os.getcwd()) / root
    return root


def get_storage() -> KeyValueStore:
    global _storage  # noqa: PLW0603
    if _storage is not None:
        return _storage

    quota = settings.storage_quota_bytes or None
    if settings.storage_backend == "memory":
        _storage = InMemoryKeyValueStore(quota_bytes=quota)
    elif settings.storage_backend == "sql":
        from newsdash.core.db import SessionLocal

        _storage = SqlKeyValueStore(SessionLocal, quota_bytes=quota)
    else:
        _storage = LocalFileKeyValueStore(_local_root(), quota_bytes=quota)
    return _storage


def diagnose_storage(*, write_test: bool = False) -> dict[str, Any]:
    """
    Best-effort check of the configured storage backend.

    When write_test=True, writes a small marker value, reads it back and removes it.
    """
    result: dict[str, Any] = {"ok": True, "backend": settings.storage_backend}
    if settings.storage_backend == "local":
        result["root"] = str(_local_root())
    if not write_test:
        return result

    key = f"healthz-{time.time_ns()}"
    start = time.monotonic()
    storage = get_storage()
    try:
        storage.set(key, "ok")
        out = storage.get(key)
        storage.remove(key)
    except Exception as e:  # noqa: BLE001
        result["ok"] = False
        result["error_type"] = type(e).__name__
        result["error"] = str(e)
        return result

    result["write_test"] = {"ok": out == "ok", "key": key, "duration_ms": monotonic_ms(start)}
    if out != "ok":
        result["ok"] = False
    return result
