from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Mapping

from voucher_market.core import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str

    @classmethod
    def from_user(cls, user) -> "Recipient":
        name = f"{user.first_name or ''} {user.last_name or ''}".strip()
        return cls(email=user.email, name=name or user.email)


class EmailProvider(ABC):
    @abstractmethod
    def send(self, *, to: str, subject: str, html: str, text: str) -> None:
        """Deliver one message or raise."""


class ConsoleEmailProvider(EmailProvider):
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send(self, *, to: str, subject: str, html: str, text: str) -> None:
        self.sent.append({"to": to, "subject": subject, "text": text})
        logger.info("email (console) to=%s subject=%s", to, subject)


class SmtpEmailProvider(EmailProvider):
    def __init__(
        self,
        *,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        username: str = config.SMTP_USER,
        password: str = config.SMTP_PASSWORD,
        sender: str = config.FROM_EMAIL,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def send(self, *, to: str, subject: str, html: str, text: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.port != 25:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)


def build_email_provider(name: str | None = None) -> EmailProvider:
    provider = (name or config.EMAIL_PROVIDER).strip().lower()
    if provider == "smtp":
        return SmtpEmailProvider()
    return ConsoleEmailProvider()


def _money(value: Any) -> str:
    return f"R{float(value or 0):.2f}"


class NotificationService:
    """Customer-facing emails. Delivery failures are logged and reported as False."""

    def __init__(self, provider: EmailProvider) -> None:
        self.provider = provider

    def _send(self, recipient: Recipient, subject: str, text: str) -> bool:
        html = "<br>".join(text.splitlines())
        try:
            self.provider.send(to=recipient.email, subject=subject, html=f"<p>{html}</p>", text=text)
        except Exception:
            logger.exception("Failed to send email subject=%s", subject)
            return False
        return True

    def send_purchase_confirmation(self, recipient: Recipient, order_summary: Mapping[str, Any]) -> bool:
        lines = [f"Hi {recipient.name},", "", "Thanks for your purchase!", ""]
        for voucher in order_summary.get("vouchers", []):
            lines.append(f"- {voucher.get('deal_title')}: {voucher.get('voucher_code')}")
        lines += [
            "",
            f"Order: {order_summary.get('payment_id')}",
            f"Total: {_money(order_summary.get('amount'))}",
            f"View your vouchers: {config.FRONTEND_URL}/vouchers",
        ]
        return self._send(recipient, "Purchase confirmation", "\n".join(lines))

    def send_voucher_notification(self, recipient: Recipient, voucher_summary: Mapping[str, Any]) -> bool:
        text = "\n".join(
            [
                f"Hi {recipient.name},",
                "",
                f"Your voucher for {voucher_summary.get('deal_title')} at {voucher_summary.get('venue_name')} is ready.",
                f"Code: {voucher_summary.get('voucher_code')}",
                f"Value paid: {_money(voucher_summary.get('purchase_price'))}",
                f"Valid until: {voucher_summary.get('expires_at')}",
                f"Show it at the venue: {config.FRONTEND_URL}/vouchers/{voucher_summary.get('id')}",
            ]
        )
        return self._send(recipient, f"Your voucher {voucher_summary.get('voucher_code')}", text)

    def send_expiry_reminder(self, recipient: Recipient, voucher_summary: Mapping[str, Any]) -> bool:
        text = "\n".join(
            [
                f"Hi {recipient.name},",
                "",
                f"Your voucher {voucher_summary.get('voucher_code')} for {voucher_summary.get('deal_title')} "
                f"expires on {voucher_summary.get('expires_at')}.",
                "Don't forget to use it!",
            ]
        )
        return self._send(recipient, "Your voucher is expiring soon", text)

    def send_welcome(self, recipient: Recipient) -> bool:
        text = "\n".join(
            [
                f"Hi {recipient.name},",
                "",
                "Welcome! Browse today's deals and grab a voucher.",
                f"{config.FRONTEND_URL}/deals",
            ]
        )
        return self._send(recipient, "Welcome", text)


notification_service = NotificationService(build_email_provider())
