from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.deps import require_role, verify_venue_access
from voucher_market.models.user import User
from voucher_market.services import venues as venue_service

router = APIRouter(prefix="/api/venues", tags=["venues"])


class VenueCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = None
    address: str = Field(..., min_length=5)
    city: str = Field(..., min_length=2, max_length=100)
    postal_code: str = Field(..., min_length=2, max_length=10)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    website: Optional[str] = None
    logo_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    opening_hours: Optional[dict[str, Any]] = None
    requires_age_verification: bool = False


class VenueUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    address: Optional[str] = Field(None, min_length=5)
    city: Optional[str] = Field(None, min_length=2, max_length=100)
    postal_code: Optional[str] = Field(None, min_length=2, max_length=10)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    website: Optional[str] = None
    logo_url: Optional[str] = None
    cover_image_url: Optional[str] = None
    opening_hours: Optional[dict[str, Any]] = None
    requires_age_verification: Optional[bool] = None


@router.get("")
def list_venues(
    city: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return venue_service.list_venues(db, city=city, search=search, page=page, limit=limit)


@router.get("/{venue_id}")
def get_venue(venue_id: str, db: Session = Depends(get_db)):
    return {"venue": venue_service.get_venue_details(db, venue_id)}


@router.post("", status_code=201)
def create_venue(payload: VenueCreate, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    venue = venue_service.create_venue(db, user, payload.model_dump())
    return {"venue": venue_service.venue_to_dict(venue), "message": "Venue created successfully"}


@router.put("/{venue_id}")
def update_venue(
    venue_id: str,
    payload: VenueUpdate,
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    venue = venue_service.get_venue_or_404(db, venue_id)
    updated = venue_service.update_venue(db, venue, payload.model_dump(exclude_unset=True))
    return {"venue": venue_service.venue_to_dict(updated), "message": "Venue updated successfully"}


@router.get("/{venue_id}/analytics")
def venue_analytics(
    venue_id: str,
    period: int = Query(30, ge=1, le=365),
    _user: User = Depends(verify_venue_access),
    db: Session = Depends(get_db),
):
    return venue_service.venue_analytics(db, venue_id, period_days=period)
