import base64
import re

import pytest

from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.voucher_codes import (
    decode_qr_payload,
    encode_qr_payload,
    generate_unique_code,
    generate_voucher_code,
    render_qr_data_url,
)
from tests.fixtures_data import VOUCHER_CODE_PATTERN


def test_voucher_code_format():
    code = generate_voucher_code(now_ms=1_700_000_000_000)

    assert re.match(VOUCHER_CODE_PATTERN, code)
    assert int(code.split("-")[1], 36) == 1_700_000_000_000


def test_voucher_codes_differ_within_same_millisecond():
    codes = {generate_voucher_code(now_ms=42) for _ in range(50)}

    assert len(codes) > 1


def test_unique_code_retries_on_collision():
    seen = []

    def exists(code):
        seen.append(code)
        return len(seen) < 3

    code = generate_unique_code(exists)

    assert code == seen[-1]
    assert len(seen) == 3


def test_unique_code_skips_codes_taken_in_same_batch():
    taken = set()
    first = generate_unique_code(lambda _code: False, taken=taken)
    second = generate_unique_code(lambda _code: False, taken=taken)

    assert first != second
    assert taken == {first, second}


def test_unique_code_gives_up_after_attempts():
    with pytest.raises(RuntimeError):
        generate_unique_code(lambda _code: True, attempts=3)


def test_qr_payload_carries_voucher_identity():
    payload = encode_qr_payload(voucher_id="v-1", deal_id="d-1", venue_id="ven-1", voucher_code="VC-1-ABCDEF")

    claims = decode_qr_payload(payload)

    assert claims["voucher_id"] == "v-1"
    assert claims["deal_id"] == "d-1"
    assert claims["venue_id"] == "ven-1"
    assert claims["code"] == "VC-1-ABCDEF"


@pytest.mark.parametrize("payload", ["", "not-a-token", "a.b.c"])
def test_malformed_qr_payload_is_rejected(payload):
    with pytest.raises(MarketError) as exc_info:
        decode_qr_payload(payload)

    assert exc_info.value.kind == ErrorKind.INVALID_QR_PAYLOAD
    assert exc_info.value.message == "Invalid QR code"


def test_qr_payload_with_wrong_secret_is_rejected():
    payload = encode_qr_payload(
        voucher_id="v-1", deal_id="d-1", venue_id="ven-1", voucher_code="VC-1-ABCDEF", secret="first"
    )

    with pytest.raises(MarketError):
        decode_qr_payload(payload, secret="second")


def test_qr_image_is_svg_data_url():
    data_url = render_qr_data_url("VC-1-ABCDEF")

    prefix = "data:image/svg+xml;base64,"
    assert data_url.startswith(prefix)
    svg = base64.b64decode(data_url[len(prefix):]).decode("utf-8")
    assert "<svg" in svg
