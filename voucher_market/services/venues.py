from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from voucher_market.core.timeutils import utcnow
from voucher_market.models.deal import Deal
from voucher_market.models.user import User
from voucher_market.models.venue import Venue, VenueProfile
from voucher_market.models.voucher import Voucher
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.pagination import paginate

logger = logging.getLogger(__name__)

VENUE_FIELDS = (
    "name",
    "description",
    "address",
    "city",
    "postal_code",
    "latitude",
    "longitude",
    "phone",
    "email",
    "website",
    "logo_url",
    "cover_image_url",
    "opening_hours",
    "requires_age_verification",
)


def venue_to_dict(venue: Venue, *, active_deals: Optional[int] = None) -> dict[str, Any]:
    data = {field: getattr(venue, field) for field in VENUE_FIELDS}
    data.update(
        {
            "id": venue.id,
            "is_active": bool(venue.is_active),
            "created_at": venue.created_at.isoformat() if venue.created_at else None,
        }
    )
    if active_deals is not None:
        data["active_deals"] = active_deals
    return data


def get_venue_or_404(db: Session, venue_id: str) -> Venue:
    venue = db.query(Venue).filter(Venue.id == venue_id).first()
    if not venue:
        raise MarketError(ErrorKind.VENUE_NOT_FOUND, "Venue not found")
    return venue


def has_venue_access(db: Session, user: User, venue_id: str) -> bool:
    if user.role == "admin":
        return True
    return (
        db.query(VenueProfile.id)
        .filter(VenueProfile.user_id == user.id, VenueProfile.venue_id == venue_id)
        .first()
        is not None
    )


def ensure_venue_access(db: Session, user: User, venue_id: str) -> None:
    if not has_venue_access(db, user, venue_id):
        logger.warning("venue access denied user_id=%s venue_id=%s", user.id, venue_id)
        raise MarketError(ErrorKind.VENUE_ACCESS_DENIED, "Access denied to this venue")


def _active_deal_counts(db: Session, venue_ids: list[str]) -> dict[str, int]:
    if not venue_ids:
        return {}
    rows = (
        db.query(Deal.venue_id, func.count(Deal.id))
        .filter(Deal.venue_id.in_(venue_ids), Deal.status == "active")
        .group_by(Deal.venue_id)
        .all()
    )
    return {venue_id: int(count) for venue_id, count in rows}


def list_venues(
    db: Session,
    *,
    city: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    query = db.query(Venue).filter(Venue.is_active.is_(True))
    if city:
        query = query.filter(func.lower(Venue.city) == city.strip().lower())
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Venue.name.ilike(pattern), Venue.description.ilike(pattern)))
    venues, pagination = paginate(query.order_by(Venue.name), page, limit)
    counts = _active_deal_counts(db, [venue.id for venue in venues])
    return {
        "venues": [venue_to_dict(venue, active_deals=counts.get(venue.id, 0)) for venue in venues],
        "pagination": pagination,
    }


def get_venue_details(db: Session, venue_id: str) -> dict[str, Any]:
    venue = get_venue_or_404(db, venue_id)
    from voucher_market.services.deals import deal_to_dict

    deals = (
        db.query(Deal)
        .filter(Deal.venue_id == venue.id, Deal.status == "active")
        .order_by(Deal.end_date)
        .all()
    )
    return {**venue_to_dict(venue, active_deals=len(deals)), "deals": [deal_to_dict(deal) for deal in deals]}


def create_venue(db: Session, user: User, data: Mapping[str, Any]) -> Venue:
    venue = Venue(**{field: data[field] for field in VENUE_FIELDS if field in data})
    db.add(venue)
    try:
        db.flush()
        db.add(VenueProfile(user_id=user.id, venue_id=venue.id, permissions={"manage": True}))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(venue)
    logger.info("venue created venue_id=%s user_id=%s", venue.id, user.id)
    return venue


def update_venue(db: Session, venue: Venue, changes: Mapping[str, Any]) -> Venue:
    for field in VENUE_FIELDS:
        if field in changes:
            setattr(venue, field, changes[field])
    venue.updated_at = utcnow()
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(venue)
    return venue


def venue_analytics(db: Session, venue_id: str, period_days: int = 30) -> dict[str, Any]:
    get_venue_or_404(db, venue_id)
    since = utcnow() - timedelta(days=period_days)
    rows = (
        db.query(Voucher.status, func.count(Voucher.id), func.coalesce(func.sum(Voucher.purchase_price), 0))
        .filter(Voucher.venue_id == venue_id, Voucher.created_at >= since)
        .group_by(Voucher.status)
        .all()
    )
    counts = {status: int(count) for status, count, _ in rows}
    revenue = sum(float(amount or 0) for status, _, amount in rows if status in {"active", "redeemed", "expired"})

    top_deals = (
        db.query(Deal.id, Deal.title, func.count(Voucher.id).label("sold"))
        .join(Voucher, Voucher.deal_id == Deal.id)
        .filter(Deal.venue_id == venue_id, Voucher.created_at >= since)
        .group_by(Deal.id, Deal.title)
        .order_by(func.count(Voucher.id).desc())
        .limit(5)
        .all()
    )
    return {
        "venue_id": venue_id,
        "period_days": period_days,
        "total_vouchers": sum(counts.values()),
        "active_vouchers": counts.get("active", 0),
        "redeemed_vouchers": counts.get("redeemed", 0),
        "expired_vouchers": counts.get("expired", 0),
        "refunded_vouchers": counts.get("refunded", 0),
        "revenue": round(revenue, 2),
        "top_deals": [{"id": deal_id, "title": title, "vouchers_sold": int(sold)} for deal_id, title, sold in top_deals],
    }
