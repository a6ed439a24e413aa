from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from newsdash.api.deps import get_usage_ledger
from newsdash.core.config import settings
from newsdash.modules.usage.schemas import UsageInfo
from newsdash.modules.usage.service import UsageLedger

router = APIRouter(tags=["usage"])

_RESET_ENVIRONMENTS = {"dev", "test"}


@router.get("/usage", response_model=UsageInfo)
def usage_info(ledger: UsageLedger = Depends(get_usage_ledger)) -> UsageInfo:
    return ledger.info()


@router.post("/usage/reset", response_model=UsageInfo)
def reset_usage(ledger: UsageLedger = Depends(get_usage_ledger)) -> UsageInfo:
    if settings.environment not in _RESET_ENVIRONMENTS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Usage reset is disabled"
        )
    ledger.reset()
    return ledger.info()
