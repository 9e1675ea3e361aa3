from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from voucher_market.core.timeutils import to_naive_utc, utcnow
from voucher_market.models.deal import Deal
from voucher_market.models.user import User
from voucher_market.models.venue import Venue
from voucher_market.models.voucher import Voucher
from voucher_market.services.audit import log_action
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.pagination import paginate
from voucher_market.services.venues import ensure_venue_access, get_venue_or_404
from voucher_market.services.voucher_store import VoucherStore

logger = logging.getLogger(__name__)

DEAL_FIELDS = (
    "title",
    "description",
    "terms_and_conditions",
    "deal_image_url",
    "original_price",
    "deal_price",
    "max_vouchers",
    "max_per_customer",
    "start_date",
    "end_date",
    "requires_age_verification",
)


@dataclass
class Availability:
    available: bool
    reason: Optional[str] = None
    kind: Optional[ErrorKind] = None
    vouchers_remaining: Optional[int] = None

    def raise_for_status(self) -> None:
        if not self.available:
            fields = {} if self.vouchers_remaining is None else {"remaining": self.vouchers_remaining}
            raise MarketError(self.kind, self.reason, **fields)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"available": self.available}
        if self.reason:
            data["reason"] = self.reason
            data["code"] = self.kind.value
        if self.vouchers_remaining is not None:
            data["vouchers_remaining"] = self.vouchers_remaining
        return data


def insufficient(remaining: int) -> Availability:
    remaining = max(0, remaining)
    return Availability(
        False,
        f"Only {remaining} vouchers remaining",
        ErrorKind.INSUFFICIENT_VOUCHERS,
        vouchers_remaining=remaining,
    )


def check_availability(
    store: VoucherStore, deal_id: str, quantity: int = 1, now: Optional[datetime] = None
) -> Availability:
    """Decide whether quantity more vouchers can be issued. Read only; first failing rule wins."""
    deal = store.find_deal(deal_id)
    if deal is None:
        return Availability(False, "Deal not found", ErrorKind.DEAL_NOT_FOUND)
    if deal.status != "active":
        return Availability(False, "Deal not active", ErrorKind.DEAL_NOT_ACTIVE)

    now = now or utcnow()
    if now < deal.start_date or now > deal.end_date:
        return Availability(False, "Deal not available", ErrorKind.DEAL_NOT_AVAILABLE)

    remaining = int(deal.max_vouchers) - store.count_vouchers_for_deal(deal.id)
    if remaining < quantity:
        return insufficient(remaining)
    return Availability(True, vouchers_remaining=remaining)


def deal_to_dict(deal: Deal, *, vouchers_sold: Optional[int] = None) -> dict[str, Any]:
    sold = int(deal.vouchers_issued or 0) if vouchers_sold is None else vouchers_sold
    data = {
        "id": deal.id,
        "venue_id": deal.venue_id,
        "title": deal.title,
        "description": deal.description,
        "terms_and_conditions": deal.terms_and_conditions,
        "deal_image_url": deal.deal_image_url,
        "original_price": float(deal.original_price),
        "deal_price": float(deal.deal_price),
        "savings_amount": float(deal.savings_amount),
        "savings_percentage": deal.savings_percentage,
        "max_vouchers": deal.max_vouchers,
        "max_per_customer": deal.max_per_customer,
        "vouchers_sold": sold,
        "vouchers_remaining": max(0, int(deal.max_vouchers) - sold),
        "start_date": deal.start_date.isoformat(),
        "end_date": deal.end_date.isoformat(),
        "requires_age_verification": bool(deal.requires_age_verification),
        "status": deal.status,
        "created_at": deal.created_at.isoformat() if deal.created_at else None,
    }
    venue = deal.venue
    if venue is not None:
        data["venue_name"] = venue.name
        data["venue_city"] = venue.city
        data["venue_logo"] = venue.logo_url
    return data


def get_deal_or_404(db: Session, deal_id: str) -> Deal:
    deal = db.query(Deal).filter(Deal.id == deal_id).first()
    if not deal:
        raise MarketError(ErrorKind.DEAL_NOT_FOUND, "Deal not found")
    return deal


def _live_deals_query(db: Session, now: datetime):
    return (
        db.query(Deal)
        .join(Venue, Venue.id == Deal.venue_id)
        .filter(
            Deal.status == "active",
            Deal.start_date <= now,
            Deal.end_date >= now,
            Venue.is_active.is_(True),
        )
    )


def list_deals(
    db: Session,
    *,
    city: Optional[str] = None,
    venue_id: Optional[str] = None,
    search: Optional[str] = None,
    min_savings: Optional[float] = None,
    max_price: Optional[float] = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    query = _live_deals_query(db, utcnow())
    if city:
        query = query.filter(func.lower(Venue.city) == city.strip().lower())
    if venue_id:
        query = query.filter(Deal.venue_id == venue_id)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Deal.title.ilike(pattern), Deal.description.ilike(pattern), Venue.name.ilike(pattern)))
    if min_savings is not None:
        query = query.filter(
            (Deal.original_price - Deal.deal_price) * 100 >= Deal.original_price * Decimal(str(min_savings))
        )
    if max_price is not None:
        query = query.filter(Deal.deal_price <= Decimal(str(max_price)))

    deals, pagination = paginate(query.order_by(Deal.created_at.desc()), page, limit)
    return {"deals": [deal_to_dict(deal) for deal in deals], "pagination": pagination}


def trending_deals(db: Session, limit: int = 10) -> list[dict[str, Any]]:
    deals = (
        _live_deals_query(db, utcnow())
        .filter(Deal.vouchers_issued > 0)
        .order_by(Deal.vouchers_issued.desc(), Deal.created_at.desc())
        .limit(limit)
        .all()
    )
    return [deal_to_dict(deal) for deal in deals]


def expiring_deals(db: Session, days_ahead: int = 7) -> list[dict[str, Any]]:
    now = utcnow()
    deals = (
        _live_deals_query(db, now)
        .filter(Deal.end_date <= now + timedelta(days=days_ahead))
        .order_by(Deal.end_date)
        .all()
    )
    return [deal_to_dict(deal) for deal in deals]


def venue_deals(db: Session, venue_id: str, status: Optional[str] = None) -> list[dict[str, Any]]:
    get_venue_or_404(db, venue_id)
    query = db.query(Deal).filter(Deal.venue_id == venue_id)
    if status:
        query = query.filter(Deal.status == status)
    return [deal_to_dict(deal) for deal in query.order_by(Deal.created_at.desc()).all()]


def _validate_prices(original_price: Decimal, deal_price: Decimal) -> None:
    if original_price <= 0 or deal_price <= 0:
        raise MarketError(ErrorKind.VALIDATION, "Prices must be greater than zero")
    if deal_price >= original_price:
        raise MarketError(ErrorKind.VALIDATION, "Deal price must be less than original price")


def _validate_window(start_date: datetime, end_date: datetime) -> None:
    if start_date >= end_date:
        raise MarketError(ErrorKind.VALIDATION, "Start date must be before end date")


def _validate_caps(max_vouchers: int, max_per_customer: int) -> None:
    if max_vouchers <= 0 or max_per_customer <= 0:
        raise MarketError(ErrorKind.VALIDATION, "Max vouchers and max per customer must be greater than zero")


def create_deal(db: Session, user: User, venue_id: str, data: Mapping[str, Any]) -> Deal:
    get_venue_or_404(db, venue_id)
    ensure_venue_access(db, user, venue_id)

    values = {field: data[field] for field in DEAL_FIELDS if field in data}
    values["start_date"] = to_naive_utc(values["start_date"])
    values["end_date"] = to_naive_utc(values["end_date"])
    values["original_price"] = Decimal(str(values["original_price"]))
    values["deal_price"] = Decimal(str(values["deal_price"]))
    values.setdefault("max_vouchers", 1000)
    values.setdefault("max_per_customer", 10)

    _validate_prices(values["original_price"], values["deal_price"])
    _validate_window(values["start_date"], values["end_date"])
    # one minute of slack for clock skew between client and server
    if values["start_date"] < utcnow() - timedelta(minutes=1):
        raise MarketError(ErrorKind.VALIDATION, "Start date cannot be in the past")
    _validate_caps(values["max_vouchers"], values["max_per_customer"])

    deal = Deal(venue_id=venue_id, status="draft", vouchers_issued=0, **values)
    db.add(deal)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(deal)
    logger.info("deal created deal_id=%s venue_id=%s", deal.id, venue_id)
    return deal


def update_deal(db: Session, user: User, deal_id: str, changes: Mapping[str, Any]) -> Deal:
    deal = get_deal_or_404(db, deal_id)
    ensure_venue_access(db, user, deal.venue_id)

    values = {field: changes[field] for field in DEAL_FIELDS if field in changes and changes[field] is not None}
    for field in ("original_price", "deal_price"):
        if field in values:
            values[field] = Decimal(str(values[field]))
    for field in ("start_date", "end_date"):
        if field in values:
            values[field] = to_naive_utc(values[field])

    _validate_prices(
        values.get("original_price", deal.original_price),
        values.get("deal_price", deal.deal_price),
    )
    _validate_window(values.get("start_date", deal.start_date), values.get("end_date", deal.end_date))
    _validate_caps(values.get("max_vouchers", deal.max_vouchers), values.get("max_per_customer", deal.max_per_customer))
    if values.get("max_vouchers", deal.max_vouchers) < int(deal.vouchers_issued or 0):
        raise MarketError(ErrorKind.VALIDATION, "Max vouchers cannot be lower than vouchers already sold")

    for field, value in values.items():
        setattr(deal, field, value)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(deal)
    return deal


def _transition(db: Session, user: User, deal: Deal, new_status: str) -> Deal:
    previous = deal.status
    deal.status = new_status
    log_action(
        db,
        user_id=user.id,
        action=f"deal.{new_status}",
        entity_type="deal",
        entity_id=deal.id,
        meta={"from": previous, "to": new_status},
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(deal)
    logger.info("deal status changed deal_id=%s from=%s to=%s", deal.id, previous, new_status)
    return deal


def activate_deal(db: Session, user: User, deal_id: str) -> Deal:
    deal = get_deal_or_404(db, deal_id)
    ensure_venue_access(db, user, deal.venue_id)
    if deal.status != "draft":
        raise MarketError(ErrorKind.DEAL_STATE_CONFLICT, "Only draft deals can be activated", status=deal.status)
    if deal.end_date <= utcnow():
        raise MarketError(ErrorKind.DEAL_STATE_CONFLICT, "Cannot activate deal that has already ended")
    return _transition(db, user, deal, "active")


def pause_deal(db: Session, user: User, deal_id: str) -> Deal:
    deal = get_deal_or_404(db, deal_id)
    ensure_venue_access(db, user, deal.venue_id)
    if deal.status != "active":
        raise MarketError(ErrorKind.DEAL_STATE_CONFLICT, "Only active deals can be paused", status=deal.status)
    return _transition(db, user, deal, "paused")


def end_deal(db: Session, user: User, deal_id: str) -> Deal:
    deal = get_deal_or_404(db, deal_id)
    ensure_venue_access(db, user, deal.venue_id)
    if deal.status not in {"active", "paused"}:
        raise MarketError(
            ErrorKind.DEAL_STATE_CONFLICT, "Only active or paused deals can be ended", status=deal.status
        )
    return _transition(db, user, deal, "ended")


def deal_analytics(db: Session, deal_id: str, period_days: int = 30) -> dict[str, Any]:
    deal = get_deal_or_404(db, deal_id)
    since = utcnow() - timedelta(days=period_days)
    in_period = (Voucher.deal_id == deal.id, Voucher.created_at >= since)

    by_status = {
        status: int(count)
        for status, count in db.query(Voucher.status, func.count(Voucher.id)).filter(*in_period).group_by(Voucher.status)
    }
    revenue = db.query(func.coalesce(func.sum(Voucher.purchase_price), 0)).filter(*in_period).scalar()
    customers = db.query(func.count(func.distinct(Voucher.user_id))).filter(*in_period).scalar()
    return {
        "deal_info": {
            "id": deal.id,
            "title": deal.title,
            "venue_name": deal.venue.name if deal.venue else None,
            "status": deal.status,
        },
        "analytics": {
            "total_vouchers": sum(by_status.values()),
            "active_vouchers": by_status.get("active", 0),
            "redeemed_vouchers": by_status.get("redeemed", 0),
            "total_revenue": round(float(revenue or 0), 2),
            "unique_customers": int(customers or 0),
        },
        "period_days": period_days,
    }
