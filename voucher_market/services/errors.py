from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    DEAL_NOT_FOUND = "DEAL_NOT_FOUND"
    DEAL_NOT_ACTIVE = "DEAL_NOT_ACTIVE"
    DEAL_NOT_AVAILABLE = "DEAL_NOT_AVAILABLE"
    INSUFFICIENT_VOUCHERS = "INSUFFICIENT_VOUCHERS"
    PURCHASE_LIMIT_EXCEEDED = "PURCHASE_LIMIT_EXCEEDED"
    AGE_VERIFICATION_REQUIRED = "AGE_VERIFICATION_REQUIRED"
    UNDERAGE = "UNDERAGE"
    INVALID_VOUCHER_CODE = "INVALID_VOUCHER_CODE"
    VOUCHER_NOT_FOUND = "VOUCHER_NOT_FOUND"
    VOUCHER_NOT_ACTIVE = "VOUCHER_NOT_ACTIVE"
    VOUCHER_EXPIRED = "VOUCHER_EXPIRED"
    INVALID_QR_PAYLOAD = "INVALID_QR_PAYLOAD"
    DEAL_STATE_CONFLICT = "DEAL_STATE_CONFLICT"
    VENUE_NOT_FOUND = "VENUE_NOT_FOUND"
    VENUE_ACCESS_DENIED = "VENUE_ACCESS_DENIED"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PAYMENT_STATE_CONFLICT = "PAYMENT_STATE_CONFLICT"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    EMAIL_TAKEN = "EMAIL_TAKEN"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"


_NOT_FOUND = {
    ErrorKind.DEAL_NOT_FOUND,
    ErrorKind.INVALID_VOUCHER_CODE,
    ErrorKind.VOUCHER_NOT_FOUND,
    ErrorKind.VENUE_NOT_FOUND,
    ErrorKind.PAYMENT_NOT_FOUND,
    ErrorKind.USER_NOT_FOUND,
}
_FORBIDDEN = {ErrorKind.VENUE_ACCESS_DENIED}
_UNAUTHORIZED = {ErrorKind.INVALID_CREDENTIALS}
_CONFLICT = {ErrorKind.EMAIL_TAKEN}


class MarketError(Exception):
    """Business-rule or lookup failure with a stable kind and user-facing message."""

    def __init__(self, kind: ErrorKind, message: str, **fields: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.fields = fields

    @property
    def status_code(self) -> int:
        if self.kind in _NOT_FOUND:
            return 404
        if self.kind in _FORBIDDEN:
            return 403
        if self.kind in _UNAUTHORIZED:
            return 401
        if self.kind in _CONFLICT:
            return 409
        return 400

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.kind.value, **self.fields}

    def __repr__(self) -> str:
        return f"MarketError({self.kind.value}, {self.message!r})"
