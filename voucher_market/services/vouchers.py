from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from voucher_market.core.config import DEFAULT_CURRENCY, VOUCHER_VALIDITY_DAYS
from voucher_market.core.timeutils import age_in_years, utcnow
from voucher_market.models._ids import new_id
from voucher_market.models.deal import Deal
from voucher_market.models.payment import Payment
from voucher_market.models.user import User
from voucher_market.models.voucher import Voucher
from voucher_market.services.audit import log_action
from voucher_market.services.deals import check_availability, insufficient
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.event_bus import event_bus
from voucher_market.services.event_handlers import VOUCHER_EXPIRING, VOUCHERS_PURCHASED
from voucher_market.services.pagination import paginate
from voucher_market.services.venues import ensure_venue_access
from voucher_market.services.voucher_codes import (
    decode_qr_payload,
    encode_qr_payload,
    generate_unique_code,
    render_qr_data_url,
)
from voucher_market.services.voucher_store import VoucherStore

logger = logging.getLogger(__name__)

MINIMUM_AGE = 18


def voucher_to_dict(voucher: Voucher) -> dict[str, Any]:
    data = {
        "id": voucher.id,
        "voucher_code": voucher.voucher_code,
        "deal_id": voucher.deal_id,
        "venue_id": voucher.venue_id,
        "payment_id": voucher.payment_id,
        "purchase_price": float(voucher.purchase_price),
        "quantity": voucher.quantity,
        "status": voucher.status,
        "expires_at": voucher.expires_at.isoformat() if voucher.expires_at else None,
        "redeemed_at": voucher.redeemed_at.isoformat() if voucher.redeemed_at else None,
        "redeemed_by": voucher.redeemed_by,
        "created_at": voucher.created_at.isoformat() if voucher.created_at else None,
    }
    if voucher.deal is not None:
        data["deal_title"] = voucher.deal.title
    if voucher.venue is not None:
        data["venue_name"] = voucher.venue.name
    return data


# --- purchase ---------------------------------------------------------------


def check_purchase_limit(store: VoucherStore, user_id: str, deal: Deal, quantity: int) -> int:
    current = store.count_vouchers_for_user_and_deal(user_id, deal.id)
    cap = int(deal.max_per_customer)
    if current + quantity > cap:
        raise MarketError(
            ErrorKind.PURCHASE_LIMIT_EXCEEDED,
            f"Maximum {cap} vouchers per customer. You have {current}.",
            cap=cap,
            current=current,
        )
    return current


def verify_age(user: User, deal: Deal, today: Optional[date] = None) -> None:
    if not deal.requires_age_verification:
        return
    if not user.date_of_birth:
        raise MarketError(
            ErrorKind.AGE_VERIFICATION_REQUIRED,
            "Age verification required. Please update your date of birth.",
        )
    if age_in_years(user.date_of_birth, today or utcnow().date()) < MINIMUM_AGE:
        raise MarketError(ErrorKind.UNDERAGE, "You must be 18 or older to purchase this deal")


def _reservation_failure(store: VoucherStore, deal_id: str) -> MarketError:
    deal = store.find_deal(deal_id)
    if deal is None:
        return MarketError(ErrorKind.DEAL_NOT_FOUND, "Deal not found")
    if deal.status != "active":
        return MarketError(ErrorKind.DEAL_NOT_ACTIVE, "Deal not active")
    remaining = max(0, int(deal.max_vouchers) - store.issued_count(deal_id))
    return MarketError(ErrorKind.INSUFFICIENT_VOUCHERS, insufficient(remaining).reason, remaining=remaining)


def _build_vouchers(store: VoucherStore, user: User, deal: Deal, quantity: int, now: datetime) -> list[Voucher]:
    expires_at = now + timedelta(days=VOUCHER_VALIDITY_DAYS)
    taken: set[str] = set()
    vouchers = []
    for _ in range(quantity):
        voucher_id = new_id()
        code = generate_unique_code(store.code_exists, taken=taken)
        vouchers.append(
            Voucher(
                id=voucher_id,
                user_id=user.id,
                deal_id=deal.id,
                venue_id=deal.venue_id,
                voucher_code=code,
                qr_code_data=encode_qr_payload(
                    voucher_id=voucher_id, deal_id=deal.id, venue_id=deal.venue_id, voucher_code=code
                ),
                purchase_price=deal.deal_price,
                quantity=1,
                status="active",
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
        )
    return vouchers


def purchase_vouchers(
    db: Session,
    user: User,
    deal_id: str,
    quantity: int = 1,
    *,
    payment_method: str = "direct",
    external_payment_id: Optional[str] = None,
    payment_data: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Issue quantity vouchers and their payment row in one transaction.

    Direct purchases complete immediately. Gateway purchases (``payfast``)
    leave the payment pending until the webhook settles it.

    Capacity is claimed with a conditional UPDATE on the deal row before any
    voucher is inserted, so two buyers racing for the last slot cannot both
    succeed; the per-customer limit is re-checked while that row is locked.
    """
    store = VoucherStore(db)
    now = now or utcnow()

    check_availability(store, deal_id, quantity, now).raise_for_status()
    deal = store.find_deal(deal_id)
    check_purchase_limit(store, user.id, deal, quantity)
    verify_age(user, deal, now.date())

    total_amount = Decimal(deal.deal_price) * quantity
    completed = payment_method == "direct"

    try:
        if not store.reserve_capacity(deal.id, quantity):
            db.rollback()
            raise _reservation_failure(store, deal.id)

        check_purchase_limit(store, user.id, deal, quantity)

        vouchers = _build_vouchers(store, user, deal, quantity, now)
        payment = store.insert_payment(
            Payment(
                id=new_id(),
                user_id=user.id,
                deal_id=deal.id,
                venue_id=deal.venue_id,
                amount=total_amount,
                currency=DEFAULT_CURRENCY,
                payment_method=payment_method,
                external_payment_id=external_payment_id,
                payment_data=payment_data,
                voucher_ids=[voucher.id for voucher in vouchers],
                status="completed" if completed else "pending",
                processed_at=now if completed else None,
            )
        )
        for voucher in vouchers:
            voucher.payment_id = payment.id
        store.insert_vouchers(vouchers)
        db.commit()
    except MarketError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        logger.exception("voucher purchase failed deal_id=%s user_id=%s", deal_id, user.id)
        raise

    db.expire(deal)
    logger.info(
        "vouchers purchased deal_id=%s user_id=%s quantity=%s payment_id=%s",
        deal.id,
        user.id,
        quantity,
        payment.id,
    )
    if completed:
        emit_purchase_event(user, deal, payment, vouchers)

    return {
        "vouchers": [voucher_to_dict(voucher) for voucher in vouchers],
        "payment_id": payment.id,
        "payment_status": payment.status,
        "total_amount": float(total_amount),
        "message": "Vouchers purchased successfully",
    }


def emit_purchase_event(user: User, deal: Deal, payment: Payment, vouchers: list[Voucher]) -> None:
    event_bus.emit(
        VOUCHERS_PURCHASED,
        {
            "user_email": user.email,
            "user_name": user.full_name,
            "payment_id": payment.id,
            "total_amount": float(payment.amount),
            "deal_title": deal.title,
            "venue_name": deal.venue.name if deal.venue else None,
            "vouchers": [
                {
                    "id": voucher.id,
                    "voucher_code": voucher.voucher_code,
                    "purchase_price": float(voucher.purchase_price),
                    "expires_at": voucher.expires_at.date().isoformat(),
                }
                for voucher in vouchers
            ],
        },
    )


# --- redemption -------------------------------------------------------------


def _not_active(voucher: Voucher) -> MarketError:
    if voucher.status == "expired":
        return MarketError(ErrorKind.VOUCHER_EXPIRED, "This voucher has expired")
    return MarketError(ErrorKind.VOUCHER_NOT_ACTIVE, f"This voucher has been {voucher.status}", status=voucher.status)


def ensure_paid(voucher: Voucher) -> None:
    """Gateway vouchers stay unusable until their payment settles."""
    if voucher.payment is not None and voucher.payment.status != "completed":
        raise MarketError(
            ErrorKind.PAYMENT_PENDING,
            "Payment for this voucher has not been completed",
            payment_status=voucher.payment.status,
        )


def _commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


def redeem_voucher(db: Session, voucher_code: str, actor: User, now: Optional[datetime] = None) -> dict[str, Any]:
    store = VoucherStore(db)
    voucher = store.find_voucher_by_code((voucher_code or "").strip().upper())
    if voucher is None:
        raise MarketError(ErrorKind.INVALID_VOUCHER_CODE, "Invalid voucher code")
    ensure_venue_access(db, actor, voucher.venue_id)

    if voucher.status != "active":
        raise MarketError(
            ErrorKind.VOUCHER_NOT_ACTIVE, f"This voucher has been {voucher.status}", status=voucher.status
        )
    ensure_paid(voucher)

    now = now or utcnow()
    if voucher.expires_at < now:
        won = store.update_voucher_status(voucher.id, "expired", expected_status="active", now=now)
        _commit(db)
        db.refresh(voucher)
        if won:
            logger.info("voucher expired on redemption attempt voucher_id=%s", voucher.id)
            raise MarketError(ErrorKind.VOUCHER_EXPIRED, "This voucher has expired")
        raise _not_active(voucher)

    if not store.update_voucher_status(voucher.id, "redeemed", expected_status="active", actor_id=actor.id, now=now):
        db.rollback()
        db.refresh(voucher)
        raise _not_active(voucher)

    log_action(
        db,
        user_id=actor.id,
        action="voucher.redeemed",
        entity_type="voucher",
        entity_id=voucher.id,
        meta={"voucher_code": voucher.voucher_code, "venue_id": voucher.venue_id},
    )
    _commit(db)
    db.refresh(voucher)
    logger.info("voucher redeemed voucher_id=%s venue_id=%s", voucher.id, voucher.venue_id)

    customer = voucher.user
    deal = voucher.deal
    return {
        "message": "Voucher redeemed successfully",
        "voucher": voucher_to_dict(voucher),
        "customer_info": {"name": customer.full_name, "email": customer.email},
        "deal_info": {"title": deal.title, "terms": deal.terms_and_conditions},
    }


def redeem_by_qr(db: Session, qr_payload: str, actor: User, now: Optional[datetime] = None) -> dict[str, Any]:
    claims = decode_qr_payload(qr_payload)
    voucher = VoucherStore(db).find_voucher_by_code(claims["code"])
    if (
        voucher is None
        or voucher.id != claims["voucher_id"]
        or voucher.deal_id != claims["deal_id"]
        or voucher.venue_id != claims["venue_id"]
    ):
        raise MarketError(ErrorKind.INVALID_QR_PAYLOAD, "Invalid QR code")
    return redeem_voucher(db, voucher.voucher_code, actor, now=now)


# --- expiry -----------------------------------------------------------------


def expire_old_vouchers(db: Session, now: Optional[datetime] = None) -> list[dict[str, str]]:
    """Move every active voucher past its expiry to expired. Safe to run repeatedly."""
    expired = VoucherStore(db).sweep_expired_vouchers(now or utcnow())
    _commit(db)
    logger.info("expiry sweep finished expired=%s", len(expired))
    return expired


def send_expiry_reminders(db: Session, days_ahead: int = 7, now: Optional[datetime] = None) -> list[dict[str, Any]]:
    now = now or utcnow()
    vouchers = (
        db.query(Voucher)
        .filter(
            Voucher.status == "active",
            Voucher.expires_at > now,
            Voucher.expires_at <= now + timedelta(days=days_ahead),
        )
        .order_by(Voucher.expires_at)
        .all()
    )
    reminded = []
    for voucher in vouchers:
        summary = {
            "id": voucher.id,
            "voucher_code": voucher.voucher_code,
            "deal_title": voucher.deal.title,
            "expires_at": voucher.expires_at.date().isoformat(),
        }
        event_bus.emit(
            VOUCHER_EXPIRING,
            {**summary, "user_email": voucher.user.email, "user_name": voucher.user.full_name},
        )
        reminded.append(summary)
    return reminded


# --- queries ----------------------------------------------------------------


def list_user_vouchers(
    db: Session, user: User, *, status: Optional[str] = None, page: int = 1, limit: int = 20
) -> dict[str, Any]:
    query = db.query(Voucher).filter(Voucher.user_id == user.id)
    if status:
        query = query.filter(Voucher.status == status)
    vouchers, pagination = paginate(query.order_by(Voucher.created_at.desc()), page, limit)
    return {"vouchers": [voucher_to_dict(v) for v in vouchers], "pagination": pagination}


def get_user_voucher(db: Session, user: User, voucher_id: str) -> Voucher:
    voucher = db.query(Voucher).filter(Voucher.id == voucher_id, Voucher.user_id == user.id).first()
    if voucher is None:
        raise MarketError(ErrorKind.VOUCHER_NOT_FOUND, "Voucher not found")
    return voucher


def get_voucher_qr(db: Session, user: User, voucher_id: str) -> dict[str, str]:
    voucher = get_user_voucher(db, user, voucher_id)
    if voucher.status != "active":
        raise MarketError(
            ErrorKind.VOUCHER_NOT_ACTIVE, "QR code only available for active vouchers", status=voucher.status
        )
    ensure_paid(voucher)
    return {
        "voucher_code": voucher.voucher_code,
        "qr_code_data": voucher.qr_code_data,
        "qr_image": render_qr_data_url(voucher.qr_code_data),
    }


def list_venue_vouchers(
    db: Session, venue_id: str, *, status: Optional[str] = None, page: int = 1, limit: int = 20
) -> dict[str, Any]:
    query = db.query(Voucher).filter(Voucher.venue_id == venue_id)
    if status:
        query = query.filter(Voucher.status == status)
    vouchers, pagination = paginate(query.order_by(Voucher.created_at.desc()), page, limit)
    return {"vouchers": [voucher_to_dict(v) for v in vouchers], "pagination": pagination}


def voucher_analytics(db: Session, venue_id: Optional[str] = None, period_days: int = 30) -> dict[str, Any]:
    since = utcnow() - timedelta(days=period_days)
    query = db.query(Voucher.status, func.count(Voucher.id), func.coalesce(func.sum(Voucher.purchase_price), 0)).filter(
        Voucher.created_at >= since
    )
    if venue_id:
        query = query.filter(Voucher.venue_id == venue_id)
    rows = query.group_by(Voucher.status).all()

    counts = {status: int(count) for status, count, _ in rows}
    total = sum(counts.values())
    revenue = sum(float(amount or 0) for status, _, amount in rows if status != "refunded")

    def rate(count: int) -> float:
        return round(count / total * 100, 2) if total else 0.0

    return {
        "venue_id": venue_id,
        "period_days": period_days,
        "total_vouchers": total,
        "active_vouchers": counts.get("active", 0),
        "redeemed_vouchers": counts.get("redeemed", 0),
        "expired_vouchers": counts.get("expired", 0),
        "refunded_vouchers": counts.get("refunded", 0),
        "total_revenue": round(revenue, 2),
        "redemption_rate": rate(counts.get("redeemed", 0)),
        "expiry_rate": rate(counts.get("expired", 0)),
    }
