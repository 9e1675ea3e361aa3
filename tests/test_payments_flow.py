import hashlib
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.exc import OperationalError

from voucher_market.models.audit_log import AuditLog
from voucher_market.models.payment import Payment
from voucher_market.models.voucher import Voucher
from voucher_market.services.errors import ErrorKind, MarketError
from voucher_market.services.payments import (
    create_gateway_checkout,
    payfast_signature,
    refund_payment,
    retry_payment,
    verify_webhook_signature,
)
from voucher_market.services.vouchers import get_voucher_qr, purchase_vouchers, redeem_by_qr, redeem_voucher
from tests.fixtures_data import PAYFAST_COMPLETE_ITN

WEBHOOK_URL = "/api/payments/webhook/payfast"


@pytest.fixture
def deal(make_venue, make_deal):
    return make_deal(make_venue(), deal_price="60.00")


@pytest.fixture
def checkout(db, make_user, deal):
    return create_gateway_checkout(db, make_user(), deal.id, 2)


def _itn(checkout, **overrides):
    data = {"m_payment_id": checkout["external_payment_id"], **PAYFAST_COMPLETE_ITN, **overrides}
    data["signature"] = payfast_signature(data)
    return data


def _voucher_statuses(db, payment_id):
    db.expire_all()
    return sorted(v.status for v in db.query(Voucher).filter(Voucher.payment_id == payment_id))


def test_signature_matches_payfast_scheme():
    data = {"merchant_id": "10000100", "item_name": "Two beers", "empty": "", "signature": "ignored"}

    expected = hashlib.md5(b"merchant_id=10000100&item_name=Two+beers&passphrase=jt7NOE43FZPn").hexdigest()

    assert payfast_signature(data, passphrase="jt7NOE43FZPn") == expected
    assert verify_webhook_signature(data, expected.upper(), passphrase="jt7NOE43FZPn") is True
    assert verify_webhook_signature(data, "0" * 32, passphrase="jt7NOE43FZPn") is False
    assert verify_webhook_signature(data, None) is False


def test_checkout_leaves_payment_pending_without_emails(db, checkout, outbox):
    payment = db.get(Payment, checkout["payment_id"])

    assert payment.status == "pending"
    assert payment.payment_method == "payfast"
    assert checkout["amount"] == 120.0
    assert _voucher_statuses(db, payment.id) == ["active", "active"]
    assert outbox == []

    url = urlparse(checkout["payment_url"])
    query = parse_qs(url.query)
    assert url.netloc == "sandbox.payfast.co.za"
    assert query["m_payment_id"] == [checkout["external_payment_id"]]
    assert query["amount"] == ["120.00"]
    assert "signature" in query


def test_completed_webhook_settles_payment_and_sends_emails(client, db, checkout, outbox):
    response = client.post(WEBHOOK_URL, data=_itn(checkout))

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    db.expire_all()
    payment = db.get(Payment, checkout["payment_id"])
    assert payment.status == "completed"
    assert payment.processed_at is not None
    assert payment.payment_data["pf_payment_id"] == "1089250"
    assert len(outbox) == 3


def test_failed_webhook_releases_vouchers(client, db, checkout):
    response = client.post(WEBHOOK_URL, data=_itn(checkout, payment_status="FAILED"))

    assert response.json()["status"] == "failed"
    assert db.get(Payment, checkout["payment_id"]).status == "failed"
    assert _voucher_statuses(db, checkout["payment_id"]) == ["refunded", "refunded"]
    assert db.query(AuditLog).filter(AuditLog.action == "payment.failed").count() == 1


def test_webhook_after_settlement_is_ignored(client, db, checkout):
    client.post(WEBHOOK_URL, data=_itn(checkout))

    response = client.post(WEBHOOK_URL, data=_itn(checkout, payment_status="CANCELLED"))

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert db.get(Payment, checkout["payment_id"]).status == "completed"
    assert _voucher_statuses(db, checkout["payment_id"]) == ["active", "active"]


def test_pending_gateway_status_changes_nothing(client, db, checkout):
    response = client.post(WEBHOOK_URL, data=_itn(checkout, payment_status="PENDING"))

    assert response.json()["status"] == "pending"
    assert db.get(Payment, checkout["payment_id"]).status == "pending"


def test_invalid_signature_is_rejected_in_production(client, db, checkout, monkeypatch):
    monkeypatch.setattr("voucher_market.core.config.IS_PROD", True)
    data = _itn(checkout)
    data["signature"] = "0" * 32

    response = client.post(WEBHOOK_URL, data=data)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_WEBHOOK_SIGNATURE"
    assert db.get(Payment, checkout["payment_id"]).status == "pending"


def test_unknown_payment_is_acknowledged(client):
    data = {"m_payment_id": "does-not-exist", **PAYFAST_COMPLETE_ITN}
    data["signature"] = payfast_signature(data)

    response = client.post(WEBHOOK_URL, data=data)

    assert response.status_code == 200
    assert response.json()["message"] == "Webhook received"
    assert "does-not-exist" in response.json()["error"]


def test_retry_reopens_failed_payment_and_restores_vouchers(client, db, make_user, checkout):
    client.post(WEBHOOK_URL, data=_itn(checkout, payment_status="FAILED"))
    payment = db.get(Payment, checkout["payment_id"])

    result = retry_payment(db, payment.user, payment.id)

    assert result["payment"]["status"] == "pending"
    assert result["payment_url"].startswith("https://sandbox.payfast.co.za/eng/process?")
    assert _voucher_statuses(db, payment.id) == ["active", "active"]

    with pytest.raises(MarketError) as exc_info:
        retry_payment(db, payment.user, payment.id)
    assert exc_info.value.kind == ErrorKind.PAYMENT_STATE_CONFLICT
    assert exc_info.value.message == "Only failed payments can be retried"


def test_retry_is_limited_to_payment_owner(db, make_user, checkout):
    with pytest.raises(MarketError) as exc_info:
        retry_payment(db, make_user(), checkout["payment_id"])

    assert exc_info.value.kind == ErrorKind.PAYMENT_NOT_FOUND


def test_refund_cascades_to_active_vouchers_only(db, make_user, make_venue, make_deal):
    staff = make_user(role="venue")
    venue = make_venue(owner=staff)
    deal = make_deal(venue)
    result = purchase_vouchers(db, make_user(), deal.id, 3)
    redeem_voucher(db, result["vouchers"][0]["voucher_code"], staff)
    admin = make_user(role="admin")

    refund = refund_payment(db, admin, result["payment_id"], reason="Venue closed")

    assert refund["vouchers_refunded"] == 2
    assert refund["payment"]["status"] == "refunded"
    assert _voucher_statuses(db, result["payment_id"]) == ["redeemed", "refunded", "refunded"]
    payment = db.get(Payment, result["payment_id"])
    assert payment.payment_data["refund_reason"] == "Venue closed"

    with pytest.raises(MarketError) as exc_info:
        refund_payment(db, admin, result["payment_id"])
    assert exc_info.value.message == "Only completed payments can be refunded"


def test_refund_endpoint_requires_admin(client, db, make_user, headers_for, deal):
    customer = make_user()
    result = purchase_vouchers(db, customer, deal.id, 1)

    response = client.post(
        f"/api/payments/{result['payment_id']}/refund",
        json={"reason": "changed my mind"},
        headers=headers_for(customer),
    )

    assert response.status_code == 403


def test_payment_status_endpoint_hides_other_users_payments(client, db, make_user, headers_for, deal):
    owner = make_user()
    result = purchase_vouchers(db, owner, deal.id, 1)

    mine = client.get(f"/api/payments/{result['payment_id']}/status", headers=headers_for(owner))
    theirs = client.get(f"/api/payments/{result['payment_id']}/status", headers=headers_for(make_user()))

    assert mine.status_code == 200
    assert mine.json()["status"] == "completed"
    assert theirs.status_code == 404
    assert theirs.json()["code"] == "PAYMENT_NOT_FOUND"


def test_unpaid_gateway_vouchers_cannot_be_used_until_settled(client, db, make_user, checkout):
    payment = db.get(Payment, checkout["payment_id"])
    admin = make_user(role="admin")
    first, second = checkout["vouchers"]

    with pytest.raises(MarketError) as qr_error:
        get_voucher_qr(db, payment.user, first["id"])
    with pytest.raises(MarketError) as redeem_error:
        redeem_voucher(db, first["voucher_code"], admin)
    voucher = db.get(Voucher, second["id"])
    with pytest.raises(MarketError) as qr_redeem_error:
        redeem_by_qr(db, voucher.qr_code_data, admin)

    for error in (qr_error, redeem_error, qr_redeem_error):
        assert error.value.kind == ErrorKind.PAYMENT_PENDING
        assert error.value.fields["payment_status"] == "pending"
    assert _voucher_statuses(db, payment.id) == ["active", "active"]

    client.post(WEBHOOK_URL, data=_itn(checkout))
    db.expire_all()

    assert get_voucher_qr(db, payment.user, first["id"])["voucher_code"] == first["voucher_code"]
    assert redeem_voucher(db, first["voucher_code"], admin)["voucher"]["status"] == "redeemed"


def test_unpaid_voucher_qr_endpoint_returns_payment_pending(client, db, headers_for, checkout):
    payment = db.get(Payment, checkout["payment_id"])

    response = client.get(f"/api/vouchers/{checkout['vouchers'][0]['id']}/qr", headers=headers_for(payment.user))

    assert response.status_code == 400
    assert response.json()["code"] == "PAYMENT_PENDING"


def test_webhook_persistence_failure_asks_gateway_to_redeliver(client, db, checkout):
    failure = OperationalError("UPDATE payments", {}, Exception("database is locked"))

    with patch("voucher_market.services.payments.process_payfast_webhook", side_effect=failure):
        response = client.post(WEBHOOK_URL, data=_itn(checkout))

    assert response.status_code == 503
    assert db.get(Payment, checkout["payment_id"]).status == "pending"

    redelivered = client.post(WEBHOOK_URL, data=_itn(checkout))
    assert redelivered.json()["status"] == "completed"
