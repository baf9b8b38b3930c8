"""
Client notifications for the booking lifecycle
Every send is fire-and-forget: failures are logged and reported as False, never raised
"""

import logging
from html import escape
from typing import Any, Protocol

from ..config import FRONTEND_URL, OWNER_EMAIL
from ..email_service import send_email

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_receipt(self, record: Any) -> bool: ...

    async def send_reschedule_confirmation(self, record: Any) -> bool: ...

    async def send_service_change_confirmation(self, record: Any) -> bool: ...

    async def send_transfer_confirmation(self, record: Any, previous_name: str) -> bool: ...

    async def send_welcome(self, account: Any) -> bool: ...


def manage_url(booking) -> str:
    return f"{FRONTEND_URL.rstrip('/')}/booking/manage/{booking.manage_token}"


def _booking_summary(booking) -> str:
    return (
        f"<p><strong>Service:</strong> {escape(booking.service_name)}<br>"
        f"<strong>When:</strong> {escape(booking.time_slot)}<br>"
        f"<strong>Total:</strong> KSH {booking.final_price:,.0f}<br>"
        f"<strong>Paid so far:</strong> KSH {booking.deposit:,.0f}</p>"
    )


class EmailNotifier:
    """Notifier backed by the Resend email service"""

    def __init__(self, owner_email: str = OWNER_EMAIL, sender=send_email):
        self.owner_email = owner_email
        self.sender = sender

    async def _deliver(self, notification_type: str, to: str, subject: str, html: str) -> bool:
        if not to:
            logger.debug(f"⚠️ No email address for {notification_type} notification")
            return False
        try:
            await self.sender(to=to, subject=subject, html_content=html, reply_to=self.owner_email)
            logger.info(f"✅ {notification_type} email sent successfully to {to}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send {notification_type} email to {to}: {e}")
            return False

    async def send_receipt(self, record: Any) -> bool:
        name = escape(getattr(record, "name", "") or "there")
        if hasattr(record, "time_slot"):
            body = f"<p>Hi {name}, we received your payment.</p>" + _booking_summary(record)
            body += f'<p>Manage your appointment: <a href="{manage_url(record)}">{manage_url(record)}</a></p>'
        else:
            body = (
                f"<p>Hi {name}, we received your payment of KSH {record.amount_paid:,.0f} "
                f"for order {escape(record.id)}.</p>"
            )
        return await self._deliver("receipt", record.email, "Payment received - LashDiary", body)

    async def send_reschedule_confirmation(self, record: Any) -> bool:
        body = (
            f"<p>Hi {escape(record.name)}, your appointment has been moved.</p>"
            + _booking_summary(record)
            + "<p>Deposits are non-refundable and carry over to the new time.</p>"
        )
        return await self._deliver(
            "reschedule_confirmation", record.email, "Your appointment was rescheduled", body
        )

    async def send_service_change_confirmation(self, record: Any) -> bool:
        body = f"<p>Hi {escape(record.name)}, your service has been updated.</p>" + _booking_summary(record)
        return await self._deliver(
            "service_change_confirmation", record.email, "Your appointment was updated", body
        )

    async def send_transfer_confirmation(self, record: Any, previous_name: str) -> bool:
        body = (
            f"<p>Hi {escape(record.name)}, {escape(previous_name)} has transferred their "
            f"appointment to you.</p>" + _booking_summary(record)
            + f'<p>Manage it here: <a href="{manage_url(record)}">{manage_url(record)}</a></p>'
        )
        return await self._deliver(
            "transfer_confirmation", record.email, "An appointment was transferred to you", body
        )

    async def send_welcome(self, account: Any) -> bool:
        business = escape(getattr(account, "business_name", None) or "your business")
        body = (
            f"<p>Welcome to LashDiary Labs, {escape(account.name)}!</p>"
            f"<p>We are setting up the website for {business}. "
            f"We'll be in touch with next steps shortly.</p>"
        )
        return await self._deliver("welcome", account.email, "Welcome to LashDiary Labs", body)


_default_notifier = EmailNotifier()


def get_notifier() -> Notifier:
    """FastAPI dependency"""
    return _default_notifier
