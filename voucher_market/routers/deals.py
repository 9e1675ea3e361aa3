from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.deps import require_role
from voucher_market.models.user import User
from voucher_market.schemas.deals import DealCreate, DealUpdate
from voucher_market.services import deals as deal_service
from voucher_market.services.venues import ensure_venue_access
from voucher_market.services.voucher_store import VoucherStore

router = APIRouter(prefix="/api/deals", tags=["deals"])


@router.get("")
def list_deals(
    city: Optional[str] = None,
    venue_id: Optional[str] = None,
    search: Optional[str] = None,
    min_savings: Optional[float] = Query(None, ge=0, le=100),
    max_price: Optional[float] = Query(None, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return deal_service.list_deals(
        db,
        city=city,
        venue_id=venue_id,
        search=search,
        min_savings=min_savings,
        max_price=max_price,
        page=page,
        limit=limit,
    )


@router.get("/search")
def search_deals(
    q: Optional[str] = Query(None, alias="query"),
    city: Optional[str] = None,
    min_savings: Optional[float] = Query(None, ge=0, le=100),
    max_price: Optional[float] = Query(None, gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return deal_service.list_deals(
        db, search=q, city=city, min_savings=min_savings, max_price=max_price, page=page, limit=limit
    )


@router.get("/trending")
def trending(limit: int = Query(10, ge=1, le=50), db: Session = Depends(get_db)):
    return {"deals": deal_service.trending_deals(db, limit=limit)}


@router.get("/expiring")
def expiring(days: int = Query(7, ge=1, le=90), db: Session = Depends(get_db)):
    return {"deals": deal_service.expiring_deals(db, days_ahead=days)}


@router.get("/venue/{venue_id}")
def venue_deals(venue_id: str, status: Optional[str] = None, db: Session = Depends(get_db)):
    return {"deals": deal_service.venue_deals(db, venue_id, status=status)}


@router.get("/{deal_id}")
def get_deal(deal_id: str, db: Session = Depends(get_db)):
    deal = deal_service.get_deal_or_404(db, deal_id)
    return {"deal": deal_service.deal_to_dict(deal)}


@router.get("/{deal_id}/availability")
def availability(deal_id: str, quantity: int = Query(1, ge=1, le=10), db: Session = Depends(get_db)):
    return deal_service.check_availability(VoucherStore(db), deal_id, quantity).to_dict()


@router.post("", status_code=201)
def create_deal(payload: DealCreate, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    data = payload.model_dump()
    venue_id = data.pop("venue_id")
    deal = deal_service.create_deal(db, user, venue_id, data)
    return {"deal": deal_service.deal_to_dict(deal), "message": "Deal created successfully"}


@router.put("/{deal_id}")
def update_deal(
    deal_id: str,
    payload: DealUpdate,
    user: User = Depends(require_role(["venue"])),
    db: Session = Depends(get_db),
):
    deal = deal_service.update_deal(db, user, deal_id, payload.model_dump(exclude_unset=True))
    return {"deal": deal_service.deal_to_dict(deal), "message": "Deal updated successfully"}


@router.post("/{deal_id}/activate")
def activate(deal_id: str, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    deal = deal_service.activate_deal(db, user, deal_id)
    return {"deal": deal_service.deal_to_dict(deal), "message": "Deal activated successfully"}


@router.post("/{deal_id}/pause")
def pause(deal_id: str, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    deal = deal_service.pause_deal(db, user, deal_id)
    return {"deal": deal_service.deal_to_dict(deal), "message": "Deal paused successfully"}


@router.post("/{deal_id}/end")
def end(deal_id: str, user: User = Depends(require_role(["venue"])), db: Session = Depends(get_db)):
    deal = deal_service.end_deal(db, user, deal_id)
    return {"deal": deal_service.deal_to_dict(deal), "message": "Deal ended successfully"}


@router.get("/{deal_id}/analytics")
def analytics(
    deal_id: str,
    period: int = Query(30, ge=1, le=365),
    user: User = Depends(require_role(["venue"])),
    db: Session = Depends(get_db),
):
    deal = deal_service.get_deal_or_404(db, deal_id)
    ensure_venue_access(db, user, deal.venue_id)
    return deal_service.deal_analytics(db, deal_id, period_days=period)
