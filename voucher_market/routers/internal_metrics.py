from __future__ import annotations

from fastapi import APIRouter, Depends

from voucher_market.core.metrics import request_metrics
from voucher_market.deps import require_role
from voucher_market.models.user import User

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("")
def metrics(_user: User = Depends(require_role(["admin"]))):
    return {"endpoints": request_metrics.snapshot(), "roles": request_metrics.snapshot_per_role()}
