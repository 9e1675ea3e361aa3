from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Mapping, Optional
from urllib.parse import quote_plus, urlencode

from sqlalchemy import func
from sqlalchemy.orm import Session

from voucher_market.core import config
from voucher_market.core.timeutils import utcnow
from voucher_market.models.payment import Payment
from voucher_market.models.user import User
from voucher_market.models.voucher import Voucher
from voucher_market.services.audit import log_action
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.pagination import paginate
from voucher_market.services.voucher_store import VoucherStore
from voucher_market.services.vouchers import emit_purchase_event, purchase_vouchers

logger = logging.getLogger(__name__)

PAYFAST_LIVE_URL = "https://www.payfast.co.za/eng/process"
PAYFAST_SANDBOX_URL = "https://sandbox.payfast.co.za/eng/process"
ITEM_NAME = "Voucher Purchase"

GATEWAY_STATUS_MAP = {
    "COMPLETE": "completed",
    "FAILED": "failed",
    "CANCELLED": "failed",
}


def payment_to_dict(payment: Payment) -> dict[str, Any]:
    data = {
        "id": payment.id,
        "user_id": payment.user_id,
        "deal_id": payment.deal_id,
        "venue_id": payment.venue_id,
        "amount": float(payment.amount),
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "external_payment_id": payment.external_payment_id,
        "voucher_ids": list(payment.voucher_ids or []),
        "status": payment.status,
        "processed_at": payment.processed_at.isoformat() if payment.processed_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
    if payment.deal is not None:
        data["deal_title"] = payment.deal.title
    if payment.venue is not None:
        data["venue_name"] = payment.venue.name
    return data


# --- gateway signing ----------------------------------------------------------


def payfast_signature(data: Mapping[str, Any], passphrase: Optional[str] = None) -> str:
    """MD5 over the non-empty fields in their given order, plus the passphrase when set."""
    passphrase = config.PAYFAST_PASSPHRASE if passphrase is None else passphrase
    pairs = [
        f"{key}={quote_plus(str(value).strip())}"
        for key, value in data.items()
        if key != "signature" and value is not None and str(value).strip() != ""
    ]
    if passphrase:
        pairs.append(f"passphrase={quote_plus(passphrase.strip())}")
    return hashlib.md5("&".join(pairs).encode("utf-8")).hexdigest()


def verify_webhook_signature(data: Mapping[str, Any], signature: Optional[str], passphrase: Optional[str] = None) -> bool:
    if not signature:
        return False
    expected = payfast_signature(data, passphrase)
    return hmac.compare_digest(expected, signature.strip().lower())


def build_payment_url(
    payment: Payment,
    user: User,
    *,
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> str:
    fields = OrderedDict(
        [
            ("merchant_id", config.PAYFAST_MERCHANT_ID),
            ("merchant_key", config.PAYFAST_MERCHANT_KEY),
            ("return_url", return_url or f"{config.FRONTEND_URL}/payment/success"),
            ("cancel_url", cancel_url or f"{config.FRONTEND_URL}/payment/cancel"),
            ("notify_url", f"{config.API_URL}/api/payments/webhook/payfast"),
            ("name_first", user.first_name),
            ("name_last", user.last_name),
            ("email_address", user.email),
            ("m_payment_id", payment.external_payment_id),
            ("amount", f"{float(payment.amount):.2f}"),
            ("item_name", ITEM_NAME),
        ]
    )
    fields = OrderedDict((key, value) for key, value in fields.items() if value not in (None, ""))
    fields["signature"] = payfast_signature(fields)
    base_url = PAYFAST_SANDBOX_URL if config.PAYFAST_SANDBOX else PAYFAST_LIVE_URL
    return f"{base_url}?{urlencode(fields)}"


# --- checkout & webhook ---------------------------------------------------------


def create_gateway_checkout(
    db: Session,
    user: User,
    deal_id: str,
    quantity: int,
    *,
    return_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> dict[str, Any]:
    external_payment_id = uuid.uuid4().hex
    result = purchase_vouchers(
        db,
        user,
        deal_id,
        quantity,
        payment_method="payfast",
        external_payment_id=external_payment_id,
    )
    payment = get_payment_or_404(db, result["payment_id"])
    return {
        "payment_id": payment.id,
        "external_payment_id": external_payment_id,
        "payment_url": build_payment_url(payment, user, return_url=return_url, cancel_url=cancel_url),
        "amount": float(payment.amount),
        "status": payment.status,
        "vouchers": result["vouchers"],
    }


def _commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def process_payfast_webhook(db: Session, data: Mapping[str, Any], signature: Optional[str] = None) -> dict[str, Any]:
    """Apply a gateway notification. Transitions only ever start from ``pending``."""
    signature = signature or data.get("signature")
    if not verify_webhook_signature(data, signature):
        if config.IS_PROD:
            raise MarketError(ErrorKind.INVALID_WEBHOOK_SIGNATURE, "Invalid webhook signature")
        logger.warning("payfast webhook signature mismatch accepted outside production")

    external_id = data.get("m_payment_id") or data.get("payment_id")
    payment = (
        db.query(Payment).filter(Payment.external_payment_id == str(external_id)).first() if external_id else None
    )
    if payment is None:
        raise MarketError(ErrorKind.PAYMENT_NOT_FOUND, f"Payment not found for external ID: {external_id}")

    new_status = GATEWAY_STATUS_MAP.get(str(data.get("payment_status", "")).upper(), "pending")
    if new_status == "pending":
        return {"payment_id": payment.id, "status": payment.status, "message": "Payment pending"}

    now = utcnow()
    payment_data = dict(payment.payment_data or {})
    payment_data.update(
        {
            "payfast_data": {key: value for key, value in data.items() if key != "signature"},
            "pf_payment_id": data.get("pf_payment_id"),
            "amount_fee": data.get("amount_fee") or 0,
            "amount_net": data.get("amount_net") or data.get("amount_gross"),
        }
    )

    store = VoucherStore(db)
    extra = {"payment_data": payment_data}
    if new_status == "completed":
        extra["processed_at"] = now
    if not store.update_payment_status(payment.id, new_status, "pending", **extra):
        db.rollback()
        db.refresh(payment)
        logger.info("payfast webhook ignored payment_id=%s status=%s", payment.id, payment.status)
        return {"payment_id": payment.id, "status": payment.status, "message": f"Payment already {payment.status}"}

    released = 0
    if new_status == "failed":
        released = store.refund_active_vouchers(payment.voucher_ids or [])
    log_action(
        db,
        user_id=None,
        action=f"payment.{new_status}",
        entity_type="payment",
        entity_id=payment.id,
        meta={"source": "payfast", "vouchers_released": released},
    )
    _commit(db)
    db.refresh(payment)
    logger.info("payfast webhook applied payment_id=%s status=%s", payment.id, new_status)

    if new_status == "completed":
        vouchers = db.query(Voucher).filter(Voucher.id.in_(payment.voucher_ids or [])).all()
        emit_purchase_event(payment.user, payment.deal, payment, vouchers)

    return {"payment_id": payment.id, "status": new_status, "message": f"Payment {new_status}"}


# --- lookups ----------------------------------------------------------------------


def get_payment_or_404(db: Session, payment_id: str, user: Optional[User] = None) -> Payment:
    query = db.query(Payment).filter(Payment.id == payment_id)
    if user is not None and user.role != "admin":
        query = query.filter(Payment.user_id == user.id)
    payment = query.first()
    if payment is None:
        raise MarketError(ErrorKind.PAYMENT_NOT_FOUND, "Payment not found")
    return payment


def payment_status(db: Session, user: User, payment_id: str) -> dict[str, Any]:
    payment = get_payment_or_404(db, payment_id, user)
    data = payment_to_dict(payment)
    return {
        "payment_id": payment.id,
        "external_payment_id": payment.external_payment_id,
        "status": payment.status,
        "amount": data["amount"],
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "created_at": data["created_at"],
        "processed_at": data["processed_at"],
        "deal_title": data.get("deal_title"),
        "venue_name": data.get("venue_name"),
    }


def list_user_payments(
    db: Session, user: User, *, status: Optional[str] = None, page: int = 1, limit: int = 20
) -> dict[str, Any]:
    query = db.query(Payment).filter(Payment.user_id == user.id)
    if status:
        query = query.filter(Payment.status == status)
    payments, pagination = paginate(query.order_by(Payment.created_at.desc()), page, limit)
    return {"payments": [payment_to_dict(p) for p in payments], "pagination": pagination}


def list_venue_payments(db: Session, venue_id: str, *, status: Optional[str] = None) -> dict[str, Any]:
    query = db.query(Payment).filter(Payment.venue_id == venue_id)
    if status:
        query = query.filter(Payment.status == status)
    payments = query.order_by(Payment.created_at.desc()).all()
    return {
        "payments": [payment_to_dict(p) for p in payments],
        "summary": {
            "total_payments": len(payments),
            "total_amount": round(sum(float(p.amount) for p in payments if p.status == "completed"), 2),
        },
    }


def failed_payments(db: Session, hours_ago: int = 24) -> list[dict[str, Any]]:
    since = utcnow() - timedelta(hours=hours_ago)
    payments = (
        db.query(Payment)
        .filter(Payment.status == "failed", Payment.created_at >= since)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return [payment_to_dict(p) for p in payments]


def stale_pending_payments(db: Session, hours_ago: int = 2) -> list[dict[str, Any]]:
    cutoff = utcnow() - timedelta(hours=hours_ago)
    payments = (
        db.query(Payment)
        .filter(Payment.status == "pending", Payment.created_at <= cutoff)
        .order_by(Payment.created_at.desc())
        .all()
    )
    return [payment_to_dict(p) for p in payments]


# --- state changes ----------------------------------------------------------------


def retry_payment(db: Session, user: User, payment_id: str) -> dict[str, Any]:
    """Reopen a failed gateway payment and restore the vouchers its failure released."""
    payment = get_payment_or_404(db, payment_id, user)
    store = VoucherStore(db)
    now = utcnow()
    if not store.update_payment_status(payment.id, "pending", "failed"):
        db.rollback()
        raise MarketError(ErrorKind.PAYMENT_STATE_CONFLICT, "Only failed payments can be retried", status=payment.status)

    restored = store.reactivate_refunded_vouchers(payment.voucher_ids or [], now)
    _commit(db)
    db.refresh(payment)
    logger.info("payment retry payment_id=%s vouchers_restored=%s", payment.id, restored)

    result = {"payment": payment_to_dict(payment), "message": "Payment queued for retry"}
    if payment.payment_method == "payfast":
        result["payment_url"] = build_payment_url(payment, payment.user)
    return result


def refund_payment(db: Session, admin: User, payment_id: str, reason: Optional[str] = None) -> dict[str, Any]:
    payment = get_payment_or_404(db, payment_id)
    store = VoucherStore(db)
    now = utcnow()
    payment_data = dict(payment.payment_data or {})
    payment_data.update({"refund_reason": reason, "refunded_at": now.isoformat()})

    if not store.update_payment_status(payment.id, "refunded", "completed", payment_data=payment_data):
        db.rollback()
        raise MarketError(
            ErrorKind.PAYMENT_STATE_CONFLICT, "Only completed payments can be refunded", status=payment.status
        )

    refunded = store.refund_active_vouchers(payment.voucher_ids or [])
    log_action(
        db,
        user_id=admin.id,
        action="payment.refunded",
        entity_type="payment",
        entity_id=payment.id,
        meta={"reason": reason, "vouchers_refunded": refunded},
    )
    _commit(db)
    db.refresh(payment)
    logger.info("payment refunded payment_id=%s vouchers_refunded=%s", payment.id, refunded)
    return {"payment": payment_to_dict(payment), "vouchers_refunded": refunded, "message": "Payment refunded successfully"}


# --- analytics ----------------------------------------------------------------------


def payment_analytics(db: Session, venue_id: Optional[str] = None, period_days: int = 30) -> dict[str, Any]:
    since = utcnow() - timedelta(days=period_days)
    query = db.query(Payment).filter(Payment.created_at >= since)
    if venue_id:
        query = query.filter(Payment.venue_id == venue_id)
    payments = query.all()

    by_status: dict[str, int] = {}
    for payment in payments:
        by_status[payment.status] = by_status.get(payment.status, 0) + 1
    completed = [payment for payment in payments if payment.status == "completed"]
    revenue = sum(float(payment.amount) for payment in completed)
    total = len(payments)

    daily_query = (
        db.query(
            func.date(Payment.created_at).label("payment_date"),
            func.count(Payment.id),
            func.coalesce(func.sum(Payment.amount), 0),
        )
        .filter(Payment.status == "completed", Payment.created_at >= since)
    )
    if venue_id:
        daily_query = daily_query.filter(Payment.venue_id == venue_id)
    daily = daily_query.group_by(func.date(Payment.created_at)).order_by(func.date(Payment.created_at).desc()).all()

    return {
        "venue_id": venue_id,
        "period_days": period_days,
        "total_payments": total,
        "completed_payments": by_status.get("completed", 0),
        "pending_payments": by_status.get("pending", 0),
        "failed_payments": by_status.get("failed", 0),
        "refunded_payments": by_status.get("refunded", 0),
        "total_revenue": round(revenue, 2),
        "average_payment": round(revenue / len(completed), 2) if completed else 0.0,
        "unique_customers": len({payment.user_id for payment in payments}),
        "success_rate": round(by_status.get("completed", 0) / total * 100, 2) if total else 0.0,
        "daily_revenue": [
            {"date": str(day), "payment_count": int(count), "revenue": round(float(amount or 0), 2)}
            for day, count, amount in daily
        ],
    }
