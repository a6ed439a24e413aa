from __future__ import annotations

from newsdash.core.config import settings
from newsdash.core.db import engine
from newsdash.core.logging import get_logger, log_event
from newsdash.core.models import Base
from newsdash.core.storage import get_storage
from newsdash.modules.cache.service import ContentCache

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.storage_backend == "sql":
        Base.metadata.create_all(engine)

    # Expired cache entries are purged once per process start.
    removed = ContentCache(get_storage()).clear_expired()
    log_event(
        logger,
        "bootstrap.complete",
        environment=settings.environment,
        storage_backend=settings.storage_backend,
        expired_removed=removed,
        unmetered=settings.unmetered or None,
    )
