from __future__ import annotations

import logging
from datetime import date
from typing import Any, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from voucher_market.models.user import User
from voucher_market.models.venue import Venue, VenueProfile
from voucher_market.models.voucher import Voucher
from voucher_market.services.auth import create_access_token, hash_password, verify_password
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.event_bus import event_bus
from voucher_market.services.event_handlers import USER_REGISTERED

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("first_name", "last_name", "phone", "date_of_birth")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def issue_token(user: User) -> str:
    return create_access_token(user.id, extra={"role": user.role})


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone": user.phone,
        "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
        "role": user.role,
        "is_active": bool(user.is_active),
        "email_verified": bool(user.email_verified),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def register_user(
    db: Session,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone: Optional[str] = None,
    date_of_birth: Optional[date] = None,
    role: str = "customer",
) -> tuple[User, str]:
    normalized = normalize_email(email)
    if db.query(User.id).filter(User.email == normalized).first():
        raise MarketError(ErrorKind.EMAIL_TAKEN, "Email already registered")

    user = User(
        email=normalized,
        password_hash=hash_password(password),
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        phone=phone,
        date_of_birth=date_of_birth,
        role=role,
    )
    db.add(user)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(user)
    logger.info("user registered user_id=%s role=%s", user.id, user.role)

    event_bus.emit(USER_REGISTERED, {"user_email": user.email, "user_name": user.full_name})
    return user, issue_token(user)


def authenticate(db: Session, *, email: str, password: str) -> tuple[User, str]:
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if not user or not verify_password(password, user.password_hash):
        raise MarketError(ErrorKind.INVALID_CREDENTIALS, "Invalid credentials")
    if not user.is_active:
        raise MarketError(ErrorKind.INVALID_CREDENTIALS, "Account deactivated")
    return user, issue_token(user)


def get_profile(db: Session, user: User) -> dict[str, Any]:
    rows = (
        db.query(Voucher.status, func.count(Voucher.id), func.coalesce(func.sum(Voucher.purchase_price), 0))
        .filter(Voucher.user_id == user.id)
        .group_by(Voucher.status)
        .all()
    )
    by_status = {status: int(count) for status, count, _ in rows}
    total_spent = sum(float(amount or 0) for _, _, amount in rows)
    recent = (
        db.query(Voucher)
        .filter(Voucher.user_id == user.id)
        .order_by(Voucher.created_at.desc())
        .limit(5)
        .all()
    )
    return {
        "user": user_to_dict(user),
        "stats": {
            "total_vouchers": sum(by_status.values()),
            "active_vouchers": by_status.get("active", 0),
            "redeemed_vouchers": by_status.get("redeemed", 0),
            "total_spent": round(total_spent, 2),
        },
        "recent_vouchers": [
            {"id": v.id, "voucher_code": v.voucher_code, "status": v.status, "deal_id": v.deal_id} for v in recent
        ],
    }


def update_profile(db: Session, user: User, changes: Mapping[str, Any]) -> User:
    for field in PROFILE_FIELDS:
        if field in changes:
            setattr(user, field, changes[field])
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(user)
    return user


def change_password(db: Session, user: User, *, current_password: str, new_password: str) -> None:
    if not verify_password(current_password, user.password_hash):
        raise MarketError(ErrorKind.VALIDATION, "Current password is incorrect")
    user.password_hash = hash_password(new_password)
    db.commit()
    logger.info("password changed user_id=%s", user.id)


def deactivate_account(db: Session, user: User, *, password: str) -> None:
    if not verify_password(password, user.password_hash):
        raise MarketError(ErrorKind.VALIDATION, "Password is incorrect")
    active = (
        db.query(func.count(Voucher.id))
        .filter(Voucher.user_id == user.id, Voucher.status == "active")
        .scalar()
    )
    if active:
        raise MarketError(ErrorKind.VALIDATION, "Cannot delete account with active vouchers")
    user.is_active = False
    db.commit()
    logger.info("account deactivated user_id=%s", user.id)


def list_user_venues(db: Session, user: User) -> list[Venue]:
    return (
        db.query(Venue)
        .join(VenueProfile, VenueProfile.venue_id == Venue.id)
        .filter(VenueProfile.user_id == user.id)
        .order_by(Venue.name)
        .all()
    )
