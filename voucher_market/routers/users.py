from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.deps import get_current_user
from voucher_market.models.user import User
from voucher_market.services import users as user_service
from voucher_market.services.venues import venue_to_dict

router = APIRouter(prefix="/api/users", tags=["users"])


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[date] = None

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("Date of birth cannot be in the future")
        return value


class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


class AccountDelete(BaseModel):
    password: str = Field(..., min_length=1)


@router.get("/profile")
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return user_service.get_profile(db, user)


@router.put("/profile")
def update_profile(payload: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = user_service.update_profile(db, user, payload.model_dump(exclude_unset=True))
    return {"user": user_service.user_to_dict(updated), "message": "Profile updated successfully"}


@router.put("/change-password")
def change_password(payload: PasswordChange, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user_service.change_password(
        db, user, current_password=payload.current_password, new_password=payload.new_password
    )
    return {"message": "Password changed successfully"}


@router.delete("/account")
def delete_account(payload: AccountDelete, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user_service.deactivate_account(db, user, password=payload.password)
    return {"message": "Account deactivated successfully"}


@router.get("/venues")
def my_venues(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"venues": [venue_to_dict(venue) for venue in user_service.list_user_venues(db, user)]}
