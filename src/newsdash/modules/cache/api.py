from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from newsdash.api.deps import get_content_cache
from newsdash.modules.cache.schemas import CacheEntry, CacheInfo
from newsdash.modules.cache.service import ContentCache

router = APIRouter(tags=["cache"])


@router.get("/cache", response_model=CacheInfo)
def cache_info(cache: ContentCache = Depends(get_content_cache)) -> CacheInfo:
    return cache.info()


@router.get("/cache/entries", response_model=list[CacheEntry])
def list_cache_entries(cache: ContentCache = Depends(get_content_cache)) -> list[CacheEntry]:
    entries = cache.list_all()
    entries.sort(key=lambda e: e.created_at, reverse=True)
    return entries


@router.post("/cache/clear-expired")
def clear_expired_entries(cache: ContentCache = Depends(get_content_cache)) -> dict[str, int]:
    return {"removed": cache.clear_expired()}


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
def clear_cache(cache: ContentCache = Depends(get_content_cache)) -> Response:
    cache.clear_all()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
