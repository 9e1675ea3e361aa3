from __future__ import annotations

import base64
import secrets
import string
import time
from typing import Any, Callable, Dict, Optional

from jose import JWTError, jwt
from reportlab.graphics import renderSVG
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing

from voucher_market.core.config import QR_SIGNING_SECRET
from voucher_market.services.errors import ErrorKind, MarketError

CODE_PREFIX = "VC"
CODE_SUFFIX_LENGTH = 6
QR_TOKEN_TYPE = "voucher_qr"
QR_ALGORITHM = "HS256"

_ALPHABET = string.ascii_uppercase + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_voucher_code(now_ms: Optional[int] = None) -> str:
    """Uppercase, URL-safe code short enough to type at the counter, e.g. VC-MB2X4K1Q-7HF3ZP."""
    millis = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{CODE_PREFIX}-{_to_base36(millis)}-{suffix}"


def generate_unique_code(exists: Callable[[str], bool], *, taken: Optional[set] = None, attempts: int = 5) -> str:
    taken = taken if taken is not None else set()
    for _ in range(attempts):
        code = generate_voucher_code()
        if code not in taken and not exists(code):
            taken.add(code)
            return code
    raise RuntimeError("Could not generate a unique voucher code")


def encode_qr_payload(*, voucher_id: str, deal_id: str, venue_id: str, voucher_code: str, secret: str = QR_SIGNING_SECRET) -> str:
    claims = {
        "typ": QR_TOKEN_TYPE,
        "voucher_id": voucher_id,
        "deal_id": deal_id,
        "venue_id": venue_id,
        "code": voucher_code,
    }
    return jwt.encode(claims, secret, algorithm=QR_ALGORITHM)


def decode_qr_payload(payload: str, secret: str = QR_SIGNING_SECRET) -> Dict[str, Any]:
    try:
        claims = jwt.decode(payload, secret, algorithms=[QR_ALGORITHM])
    except JWTError as exc:
        raise MarketError(ErrorKind.INVALID_QR_PAYLOAD, "Invalid QR code") from exc

    if claims.get("typ") != QR_TOKEN_TYPE or not all(
        claims.get(key) for key in ("voucher_id", "deal_id", "venue_id", "code")
    ):
        raise MarketError(ErrorKind.INVALID_QR_PAYLOAD, "Invalid QR code")
    return claims


def render_qr_data_url(payload: str, size: int = 240) -> str:
    widget = QrCodeWidget(payload)
    x1, y1, x2, y2 = widget.getBounds()
    width, height = x2 - x1, y2 - y1
    drawing = Drawing(size, size, transform=[size / width, 0, 0, size / height, 0, 0])
    drawing.add(widget)
    svg = renderSVG.drawToString(drawing)
    if isinstance(svg, str):
        svg = svg.encode("utf-8")
    return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")
