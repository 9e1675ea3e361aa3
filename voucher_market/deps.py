from __future__ import annotations

import logging
from typing import Iterable

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from voucher_market.core.database import get_db
from voucher_market.core.request_context import set_request_context
from voucher_market.models.user import User
from voucher_market.services.auth import decode_access_token
from voucher_market.services.venues import has_venue_access

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

logger = logging.getLogger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    request: Request,
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to an active user and tag the request with it."""
    try:
        payload = decode_access_token(token)
    except ValueError:
        raise _unauthorized("Invalid or expired token")

    user = db.query(User).filter(User.id == str(payload["sub"])).first()
    if not user:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("Account deactivated")

    request.state.user = user
    set_request_context(user_id=str(user.id), role=user.role)
    return user


def _log_access_denied(*, reason: str, user: User, request: Request, venue_id: str | None = None) -> None:
    logger.warning(
        "Access denied (%s): user_id=%s user_role=%s venue_id=%s endpoint=%s",
        reason,
        getattr(user, "id", None),
        getattr(user, "role", None),
        venue_id,
        f"{request.method} {request.url.path}",
    )


def require_role(roles: Iterable[str]):
    """Dependency factory; admins pass every role check."""
    allowed = {role.strip().lower() for role in roles} | {"admin"}

    def _dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if (user.role or "").lower() not in allowed:
            _log_access_denied(reason="role_denied", user=user, request=request)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return _dependency


def verify_venue_access(
    venue_id: str,
    request: Request,
    user: User = Depends(require_role(["venue"])),
    db: Session = Depends(get_db),
) -> User:
    if not has_venue_access(db, user, venue_id):
        _log_access_denied(reason="venue_denied", user=user, request=request, venue_id=venue_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied to this venue")
    return user
