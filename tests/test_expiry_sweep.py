from datetime import timedelta

import pytest

from voucher_market.core.timeutils import utcnow
from voucher_market.models.voucher import Voucher
from voucher_market.services.vouchers import expire_old_vouchers, purchase_vouchers, send_expiry_reminders


@pytest.fixture
def vouchers(db, make_user, make_venue, make_deal):
    deal = make_deal(make_venue(), max_per_customer=10)
    result = purchase_vouchers(db, make_user(), deal.id, 4)
    return [db.get(Voucher, item["id"]) for item in result["vouchers"]]


def test_sweep_expires_only_active_vouchers_past_due(db, vouchers):
    now = utcnow()
    overdue, redeemed_overdue, due_soon, fresh = vouchers
    overdue.expires_at = now - timedelta(days=1)
    redeemed_overdue.expires_at = now - timedelta(days=1)
    redeemed_overdue.status = "redeemed"
    due_soon.expires_at = now + timedelta(hours=1)
    db.commit()

    expired = expire_old_vouchers(db, now=now)

    assert expired == [{"id": overdue.id, "voucher_code": overdue.voucher_code}]
    db.expire_all()
    assert db.get(Voucher, overdue.id).status == "expired"
    assert db.get(Voucher, redeemed_overdue.id).status == "redeemed"
    assert db.get(Voucher, due_soon.id).status == "active"
    assert db.get(Voucher, fresh.id).status == "active"


def test_sweep_is_idempotent(db, vouchers):
    now = utcnow()
    for voucher in vouchers[:2]:
        voucher.expires_at = now - timedelta(minutes=1)
    db.commit()

    first = expire_old_vouchers(db, now=now)
    second = expire_old_vouchers(db, now=now)

    assert len(first) == 2
    assert second == []
    assert db.query(Voucher).filter(Voucher.status == "expired").count() == 2


def test_expiry_reminders_cover_only_upcoming_window(db, vouchers, outbox):
    now = utcnow()
    vouchers[0].expires_at = now + timedelta(days=3)
    vouchers[1].expires_at = now + timedelta(days=20)
    vouchers[2].expires_at = now - timedelta(days=1)
    db.commit()

    reminded = send_expiry_reminders(db, days_ahead=7, now=now)

    assert [item["id"] for item in reminded] == [vouchers[0].id]
    assert len(outbox) == 1
    assert vouchers[0].voucher_code in outbox[0]["text"]


def test_expire_endpoint_is_admin_only(client, db, make_user, headers_for, vouchers):
    vouchers[0].expires_at = utcnow() - timedelta(days=2)
    db.commit()

    denied = client.post("/api/vouchers/admin/expire", headers=headers_for(make_user()))
    allowed = client.post("/api/vouchers/admin/expire", headers=headers_for(make_user(role="admin")))

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["count"] == 1
    assert allowed.json()["message"] == "Expired 1 vouchers"
