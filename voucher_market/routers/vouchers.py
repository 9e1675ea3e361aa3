from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.deps import get_current_user, require_role, verify_venue_access
from voucher_market.models.user import User
from voucher_market.schemas.vouchers import PurchasePayload, RedeemPayload, RedeemQrPayload
from voucher_market.services import vouchers as voucher_service

router = APIRouter(prefix="/api/vouchers", tags=["vouchers"])

VoucherStatus = Literal["active", "redeemed", "expired", "refunded"]


@router.get("")
def my_vouchers(
    status: Optional[VoucherStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return voucher_service.list_user_vouchers(db, user, status=status, page=page, limit=limit)


@router.post("/purchase", status_code=201)
def purchase(payload: PurchasePayload, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return voucher_service.purchase_vouchers(db, user, payload.deal_id, payload.quantity)


@router.post("/redeem")
def redeem(payload: RedeemPayload, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    return voucher_service.redeem_voucher(db, payload.voucher_code, user)


@router.post("/redeem/qr")
def redeem_qr(payload: RedeemQrPayload, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    return voucher_service.redeem_by_qr(db, payload.qr_code_data, user)


@router.get("/venue/{venue_id}")
def venue_vouchers(
    venue_id: str,
    status: Optional[VoucherStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    return voucher_service.list_venue_vouchers(db, venue_id, status=status, page=page, limit=limit)


@router.get("/venue/{venue_id}/analytics")
def venue_analytics(
    venue_id: str,
    period: int = Query(30, ge=1, le=365),
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    return voucher_service.voucher_analytics(db, venue_id=venue_id, period_days=period)


@router.get("/admin/analytics")
def global_analytics(
    period: int = Query(30, ge=1, le=365),
    _user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    return voucher_service.voucher_analytics(db, period_days=period)


@router.post("/admin/expire")
def expire_vouchers(_user: User = Depends(require_role(["admin"])), db: Session = Depends(get_db)):
    expired = voucher_service.expire_old_vouchers(db)
    return {"expired": expired, "count": len(expired), "message": f"Expired {len(expired)} vouchers"}


@router.post("/admin/expiring/remind")
def remind_expiring(
    days: int = Query(7, ge=1, le=30),
    _user: User = Depends(require_role(["admin"])),
    db: Session = Depends(get_db),
):
    reminded = voucher_service.send_expiry_reminders(db, days_ahead=days)
    return {"vouchers": reminded, "count": len(reminded)}


@router.get("/{voucher_id}")
def get_voucher(voucher_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    voucher = voucher_service.get_user_voucher(db, user, voucher_id)
    return {"voucher": voucher_service.voucher_to_dict(voucher)}


@router.get("/{voucher_id}/qr")
def voucher_qr(voucher_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return voucher_service.get_voucher_qr(db, user, voucher_id)
