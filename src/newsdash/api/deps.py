from __future__ import annotations

from fastapi import Depends

from newsdash.core.storage import KeyValueStore, get_storage
from newsdash.modules.cache.service import ContentCache
from newsdash.modules.provider.gemini import GeminiClient
from newsdash.modules.query.service import QueryOrchestrator
from newsdash.modules.usage.service import UsageLedger


def storage_handle() -> KeyValueStore:
    return get_storage()


def get_content_cache(storage: KeyValueStore = Depends(storage_handle)) -> ContentCache:
    return ContentCache(storage)


def get_usage_ledger(storage: KeyValueStore = Depends(storage_handle)) -> UsageLedger:
    return UsageLedger(storage)


def get_gemini_client() -> GeminiClient:
    return GeminiClient()


def get_orchestrator(
    cache: ContentCache = Depends(get_content_cache),
    ledger: UsageLedger = Depends(get_usage_ledger),
    provider: GeminiClient = Depends(get_gemini_client),
) -> QueryOrchestrator:
    return QueryOrchestrator(cache=cache, ledger=ledger, provider=provider)
