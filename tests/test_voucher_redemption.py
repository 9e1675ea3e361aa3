import base64
import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from voucher_market.core.timeutils import utcnow
from voucher_market.models.audit_log import AuditLog
from voucher_market.models.voucher import Voucher
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.voucher_codes import encode_qr_payload
from voucher_market.services.voucher_store import VoucherStore
from voucher_market.services.vouchers import purchase_vouchers, redeem_by_qr, redeem_voucher
from tests.fixtures_data import EXPECTED_ERRORS


@pytest.fixture
def staff(make_user):
    return make_user(role="venue")


@pytest.fixture
def voucher(db, make_user, make_venue, make_deal, staff):
    venue = make_venue(owner=staff)
    deal = make_deal(venue)
    result = purchase_vouchers(db, make_user(first_name="Lerato", last_name="Dube"), deal.id, 1)
    return db.get(Voucher, result["vouchers"][0]["id"])


def test_redeem_marks_voucher_and_returns_customer_info(db, staff, voucher):
    result = redeem_voucher(db, voucher.voucher_code, staff)

    assert result["message"] == "Voucher redeemed successfully"
    assert result["voucher"]["status"] == "redeemed"
    assert result["customer_info"]["name"] == "Lerato Dube"
    assert result["deal_info"]["terms"] == voucher.deal.terms_and_conditions

    db.refresh(voucher)
    assert voucher.status == "redeemed"
    assert voucher.redeemed_by == staff.id
    assert voucher.redeemed_at is not None
    audit = db.query(AuditLog).filter(AuditLog.action == "voucher.redeemed").one()
    assert audit.entity_id == voucher.id


def test_redeem_accepts_lowercase_code_with_whitespace(db, staff, voucher):
    result = redeem_voucher(db, f"  {voucher.voucher_code.lower()} ", staff)

    assert result["voucher"]["id"] == voucher.id


def test_second_redemption_is_rejected(db, staff, voucher):
    redeem_voucher(db, voucher.voucher_code, staff)

    with pytest.raises(MarketError) as exc_info:
        redeem_voucher(db, voucher.voucher_code, staff)

    assert exc_info.value.kind == ErrorKind.VOUCHER_NOT_ACTIVE
    assert exc_info.value.message == EXPECTED_ERRORS["redeemed"]


def test_unknown_code_is_rejected(db, staff, voucher):
    with pytest.raises(MarketError) as exc_info:
        redeem_voucher(db, "VC-NOPE-000000", staff)

    assert exc_info.value.kind == ErrorKind.INVALID_VOUCHER_CODE
    assert exc_info.value.message == EXPECTED_ERRORS["invalid_code"]


def test_past_expiry_voucher_is_expired_on_redemption(db, staff, voucher):
    voucher.expires_at = utcnow() - timedelta(minutes=5)
    db.commit()

    with pytest.raises(MarketError) as exc_info:
        redeem_voucher(db, voucher.voucher_code, staff)

    assert exc_info.value.kind == ErrorKind.VOUCHER_EXPIRED
    assert exc_info.value.message == EXPECTED_ERRORS["expired"]
    db.refresh(voucher)
    assert voucher.status == "expired"
    assert voucher.redeemed_at is None


def test_staff_without_venue_access_is_denied(db, make_user, voucher):
    outsider = make_user(role="venue")

    with pytest.raises(MarketError) as exc_info:
        redeem_voucher(db, voucher.voucher_code, outsider)

    assert exc_info.value.kind == ErrorKind.VENUE_ACCESS_DENIED
    assert exc_info.value.status_code == 403
    db.refresh(voucher)
    assert voucher.status == "active"


def test_admin_can_redeem_for_any_venue(db, make_user, voucher):
    result = redeem_voucher(db, voucher.voucher_code, make_user(role="admin"))

    assert result["voucher"]["status"] == "redeemed"


def test_concurrent_redemption_has_a_single_winner(db, make_user, staff, voucher):
    other_staff = make_user(role="admin")
    original = VoucherStore.update_voucher_status

    def racing_update(self, voucher_id, new_status, expected_status="active", actor_id=None, now=None):
        # the competing redemption commits between our read and our write
        original(self, voucher_id, "redeemed", expected_status="active", actor_id=other_staff.id, now=now)
        self.db.commit()
        return original(self, voucher_id, new_status, expected_status, actor_id, now)

    with patch.object(VoucherStore, "update_voucher_status", racing_update):
        with pytest.raises(MarketError) as exc_info:
            redeem_voucher(db, voucher.voucher_code, staff)

    assert exc_info.value.message == EXPECTED_ERRORS["redeemed"]
    db.refresh(voucher)
    assert voucher.redeemed_by == other_staff.id
    assert db.query(AuditLog).filter(AuditLog.action == "voucher.redeemed").count() == 0


def test_redeem_by_qr(db, staff, voucher):
    result = redeem_by_qr(db, voucher.qr_code_data, staff)

    assert result["voucher"]["id"] == voucher.id
    assert result["voucher"]["status"] == "redeemed"


def test_tampered_qr_payload_is_rejected(db, staff, voucher):
    header, claims, signature = voucher.qr_code_data.split(".")
    decoded = json.loads(base64.urlsafe_b64decode(claims + "=" * (-len(claims) % 4)))
    decoded["venue_id"] = "another-venue"
    forged_claims = base64.urlsafe_b64encode(json.dumps(decoded).encode()).decode().rstrip("=")

    with pytest.raises(MarketError) as exc_info:
        redeem_by_qr(db, ".".join([header, forged_claims, signature]), staff)

    assert exc_info.value.kind == ErrorKind.INVALID_QR_PAYLOAD
    db.refresh(voucher)
    assert voucher.status == "active"


def test_qr_payload_signed_with_another_secret_is_rejected(db, staff, voucher):
    forged = encode_qr_payload(
        voucher_id=voucher.id,
        deal_id=voucher.deal_id,
        venue_id=voucher.venue_id,
        voucher_code=voucher.voucher_code,
        secret="not-the-signing-secret",
    )

    with pytest.raises(MarketError) as exc_info:
        redeem_by_qr(db, forged, staff)

    assert exc_info.value.kind == ErrorKind.INVALID_QR_PAYLOAD


def test_qr_payload_for_other_voucher_identity_is_rejected(db, staff, voucher):
    forged = encode_qr_payload(
        voucher_id="someone-else",
        deal_id=voucher.deal_id,
        venue_id=voucher.venue_id,
        voucher_code=voucher.voucher_code,
    )

    with pytest.raises(MarketError) as exc_info:
        redeem_by_qr(db, forged, staff)

    assert exc_info.value.kind == ErrorKind.INVALID_QR_PAYLOAD


def test_redeem_endpoint_requires_venue_role(client, make_user, headers_for, voucher):
    customer = make_user()

    response = client.post(
        "/api/vouchers/redeem",
        json={"voucher_code": voucher.voucher_code},
        headers=headers_for(customer),
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "Insufficient permissions"


def test_redeem_endpoint_returns_error_body(client, staff, headers_for, voucher):
    first = client.post("/api/vouchers/redeem", json={"voucher_code": voucher.voucher_code}, headers=headers_for(staff))
    second = client.post("/api/vouchers/redeem", json={"voucher_code": voucher.voucher_code}, headers=headers_for(staff))

    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json() == {
        "detail": "This voucher has been redeemed",
        "code": "VOUCHER_NOT_ACTIVE",
        "status": "redeemed",
    }
