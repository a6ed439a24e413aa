from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from newsdash.core.storage import diagnose_storage
from newsdash.modules.cache.api import router as cache_router
from newsdash.modules.query.api import router as query_router
from newsdash.modules.usage.api import router as usage_router

router = APIRouter()

router.include_router(query_router, prefix="/api")
router.include_router(cache_router, prefix="/api")
router.include_router(usage_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz/storage")
def healthz_storage(*, write_test: bool = False) -> JSONResponse:
    result = diagnose_storage(write_test=write_test)
    status_code = 200 if result.get("ok") else 503
    return JSONResponse(status_code=status_code, content=result)
