from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.deps import get_current_user
from voucher_market.models.user import User
from voucher_market.services import users as user_service

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[date] = None

    @field_validator("date_of_birth")
    @classmethod
    def _not_in_future(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("Date of birth cannot be in the future")
        return value


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


def _auth_response(user: User, token: str) -> dict:
    return {"user": user_service.user_to_dict(user), "token": token, "token_type": "bearer"}


@router.post("/register", status_code=201)
def register(payload: RegisterPayload, db: Session = Depends(get_db)):
    user, token = user_service.register_user(db, **payload.model_dump())
    return {**_auth_response(user, token), "message": "User registered successfully"}


@router.post("/login")
def login(payload: LoginPayload, db: Session = Depends(get_db)):
    user, token = user_service.authenticate(db, email=payload.email, password=payload.password)
    return {**_auth_response(user, token), "message": "Login successful"}


@router.post("/token")
def token(form: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    _user, access_token = user_service.authenticate(db, email=form.username, password=form.password)
    return {"access_token": access_token, "token_type": "bearer"}


@router.get("/me")
def me(user: User = Depends(get_current_user)):
    return {"user": user_service.user_to_dict(user)}


@router.post("/logout")
def logout(_user: User = Depends(get_current_user)):
    # Tokens are stateless; the client drops its copy.
    return {"message": "Logged out successfully"}
