from fastapi import APIRouter

from app.api.deps import QuotaBreakerDep
from app.api.v1.schemas import QuotaStatusRead


router = APIRouter(tags=["generation"])


@router.get("/generation/quota-status", response_model=QuotaStatusRead)
def quota_status(breaker=QuotaBreakerDep):
    status = breaker.status()
    if status.exceeded:
        message = "AI generation quota is exhausted; new chapters are paused until the cooldown ends."
    else:
        message = "AI generation is available."
    return QuotaStatusRead(
        is_quota_exceeded=status.exceeded,
        message=message,
        exceeded_at=status.exceeded_at,
        retry_after=status.retry_after,
    )
