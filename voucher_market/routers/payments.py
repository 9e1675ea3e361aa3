from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from voucher_market.core.config import MAX_PURCHASE_QUANTITY
from voucher_market.core.database import get_db
from voucher_market.deps import get_current_user, require_role, verify_venue_access
from voucher_market.models.user import User
from voucher_market.services import payments as payment_service
from voucher_market.services.errors import ErrorKind, MarketError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

PaymentStatus = Literal["pending", "completed", "failed", "refunded"]


class CheckoutPayload(BaseModel):
    deal_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=MAX_PURCHASE_QUANTITY)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class RefundPayload(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


@router.post("/payfast", status_code=201)
def create_payfast_payment(
    payload: CheckoutPayload,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return payment_service.create_gateway_checkout(
        db,
        user,
        payload.deal_id,
        payload.quantity,
        return_url=payload.return_url,
        cancel_url=payload.cancel_url,
    )


@router.post("/webhook/payfast")
async def payfast_webhook(request: Request, db: Session = Depends(get_db)):
    if "application/json" in request.headers.get("content-type", ""):
        data = await request.json()
    else:
        form = await request.form()
        data = {key: value for key, value in form.multi_items()}
    signature = request.headers.get("X-Signature") or data.get("signature")

    try:
        result = payment_service.process_payfast_webhook(db, data, signature)
    except MarketError as exc:
        if exc.kind == ErrorKind.INVALID_WEBHOOK_SIGNATURE:
            return JSONResponse(status_code=400, content=exc.to_dict())
        logger.warning("payfast webhook not applied: %s", exc.message)
        return {"message": "Webhook received", "error": exc.message}
    except SQLAlchemyError:
        # the gateway redelivers anything but a 2xx
        db.rollback()
        logger.exception("payfast webhook failed")
        return JSONResponse(status_code=503, content={"detail": "Webhook processing failed", "code": "RETRY_LATER"})

    return {"message": "Webhook processed successfully", "payment_id": result["payment_id"], "status": result["status"]}


@router.get("")
def my_payments(
    status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return payment_service.list_user_payments(db, user, status=status, page=page, limit=limit)


@router.get("/admin/failed")
def failed(
    hours: int = Query(24, ge=1, le=720),
    _user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    return {"payments": payment_service.failed_payments(db, hours_ago=hours)}


@router.get("/admin/pending")
def pending(
    hours: int = Query(2, ge=1, le=720),
    _user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    return {"payments": payment_service.stale_pending_payments(db, hours_ago=hours)}


@router.get("/admin/analytics")
def global_analytics(
    period: int = Query(30, ge=1, le=365),
    _user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    return payment_service.payment_analytics(db, period_days=period)


@router.get("/venue/{venue_id}")
def venue_payments(
    venue_id: str,
    status: Optional[PaymentStatus] = None,
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    return payment_service.list_venue_payments(db, venue_id, status=status)


@router.get("/venue/{venue_id}/analytics")
def venue_analytics(
    venue_id: str,
    period: int = Query(30, ge=1, le=365),
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    return payment_service.payment_analytics(db, venue_id=venue_id, period_days=period)


@router.get("/{payment_id}")
def get_payment(payment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    payment = payment_service.get_payment_or_404(db, payment_id, user)
    return {"payment": payment_service.payment_to_dict(payment)}


@router.get("/{payment_id}/status")
def get_payment_status(payment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return payment_service.payment_status(db, user, payment_id)


@router.post("/{payment_id}/retry")
def retry(payment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return payment_service.retry_payment(db, user, payment_id)


@router.post("/{payment_id}/refund")
def refund(
    payment_id: str,
    payload: RefundPayload,
    user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    return payment_service.refund_payment(db, user, payment_id, reason=payload.reason)
