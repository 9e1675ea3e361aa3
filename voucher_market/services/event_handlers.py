from __future__ import annotations

from voucher_market.services import notifications
from voucher_market.services.event_bus import event_bus
from voucher_market.services.notifications import Recipient

VOUCHERS_PURCHASED = "vouchers.purchased"
USER_REGISTERED = "user.registered"
VOUCHER_EXPIRING = "voucher.expiring"


def _recipient(payload: dict) -> Recipient:
    return Recipient(email=payload["user_email"], name=payload.get("user_name") or payload["user_email"])


def handle_vouchers_purchased(payload: dict) -> None:
    service = notifications.notification_service
    recipient = _recipient(payload)
    service.send_purchase_confirmation(
        recipient,
        {
            "payment_id": payload["payment_id"],
            "amount": payload["total_amount"],
            "vouchers": [
                {"deal_title": payload["deal_title"], "voucher_code": voucher["voucher_code"]}
                for voucher in payload["vouchers"]
            ],
        },
    )
    for voucher in payload["vouchers"]:
        service.send_voucher_notification(
            recipient,
            {
                **voucher,
                "deal_title": payload["deal_title"],
                "venue_name": payload.get("venue_name"),
            },
        )


def handle_user_registered(payload: dict) -> None:
    notifications.notification_service.send_welcome(_recipient(payload))


def handle_voucher_expiring(payload: dict) -> None:
    notifications.notification_service.send_expiry_reminder(_recipient(payload), payload)


event_bus.subscribe(VOUCHERS_PURCHASED, handle_vouchers_purchased)
event_bus.subscribe(USER_REGISTERED, handle_user_registered)
event_bus.subscribe(VOUCHER_EXPIRING, handle_voucher_expiring)
