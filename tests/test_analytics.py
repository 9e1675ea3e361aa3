from voucher_market.services.deals import deal_analytics
from voucher_market.services.payments import payment_analytics
from voucher_market.services.vouchers import purchase_vouchers, redeem_voucher, voucher_analytics


def test_voucher_payment_and_deal_analytics(db, make_user, make_venue, make_deal):
    staff = make_user(role="venue")
    venue = make_venue(owner=staff)
    deal = make_deal(venue, deal_price="50.00", original_price="100.00")
    first = purchase_vouchers(db, make_user(), deal.id, 3)
    purchase_vouchers(db, make_user(), deal.id, 1)
    redeem_voucher(db, first["vouchers"][0]["voucher_code"], staff)

    vouchers = voucher_analytics(db, venue_id=venue.id)
    payments = payment_analytics(db, venue_id=venue.id)
    per_deal = deal_analytics(db, deal.id)

    assert vouchers["total_vouchers"] == 4
    assert vouchers["redeemed_vouchers"] == 1
    assert vouchers["redemption_rate"] == 25.0
    assert vouchers["total_revenue"] == 200.0
    assert payments["completed_payments"] == 2
    assert payments["total_revenue"] == 200.0
    assert payments["average_payment"] == 100.0
    assert payments["success_rate"] == 100.0
    assert sum(day["payment_count"] for day in payments["daily_revenue"]) == 2
    assert per_deal["analytics"]["unique_customers"] == 2
    assert per_deal["analytics"]["active_vouchers"] == 3


def test_venue_analytics_route_requires_access(client, make_user, make_venue, headers_for):
    owner = make_user(role="venue")
    venue = make_venue(owner=owner)

    allowed = client.get(f"/api/vouchers/venue/{venue.id}/analytics", headers=headers_for(owner))
    denied = client.get(f"/api/payments/venue/{venue.id}/analytics", headers=headers_for(make_user(role="venue")))

    assert allowed.status_code == 200
    assert allowed.json()["total_vouchers"] == 0
    assert denied.status_code == 403
