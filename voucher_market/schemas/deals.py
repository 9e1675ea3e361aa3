from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class DealCreate(BaseModel):
    venue_id: str
    title: str = Field(..., min_length=3, max_length=255)
    description: Optional[str] = None
    terms_and_conditions: str = ""
    deal_image_url: Optional[str] = None
    original_price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    deal_price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    max_vouchers: int = Field(1000, ge=1)
    max_per_customer: int = Field(10, ge=1)
    start_date: datetime
    end_date: datetime
    requires_age_verification: bool = False


class DealUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=255)
    description: Optional[str] = None
    terms_and_conditions: Optional[str] = None
    deal_image_url: Optional[str] = None
    original_price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    deal_price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    max_vouchers: Optional[int] = Field(None, ge=1)
    max_per_customer: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    requires_age_verification: Optional[bool] = None
