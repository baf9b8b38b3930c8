"""
Booking lifecycle - client self-service changes and staff transitions

State machine:
    pending -> confirmed -> completed | cancelled
    confirmed -> confirmed   (reschedule, service change, transfer)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ...config import CLIENT_MANAGE_WINDOW_HOURS, RESCHEDULE_LOCKOUT_HOURS
from ...models import BOOKING_CANCELLED, BOOKING_COMPLETED, BOOKING_CONFIRMED, Booking
from ...services.notification_service import Notifier
from .availability_service import AvailabilityService
from .errors import BookingNotFound, InvalidRequest, ManageForbidden, SlotUnavailable
from .repository import BookingRepository
from .time_calculator import (
    ensure_aware,
    hours_until,
    parse_date,
    parse_slot,
    slot_key,
    to_db_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ManagePolicy:
    is_past: bool
    hours_until: float
    within_24h: bool
    within_policy_window: bool
    can_manage: bool
    can_reschedule: bool
    # Clients never cancel online; deposits are non-refundable and staff handle cancellations
    can_cancel_policy: bool
    cancellation_policy_hours: int
    cancellation_cutoff_at: datetime


def policy_hours(booking: Booking) -> int:
    if booking.cancellation_policy_hours and booking.cancellation_policy_hours > 0:
        return booking.cancellation_policy_hours
    return CLIENT_MANAGE_WINDOW_HOURS


class BookingLifecycleService:
    def __init__(
        self,
        repo: BookingRepository,
        availability: AvailabilityService,
        notifier: Notifier,
        lockout_hours: int = RESCHEDULE_LOCKOUT_HOURS,
    ):
        self.repo = repo
        self.availability = availability
        self.notifier = notifier
        self.lockout_hours = lockout_hours

    def can_manage(self, booking: Booking, now: Optional[datetime] = None) -> ManagePolicy:
        now = ensure_aware(now or utcnow())
        start = ensure_aware(booking.starts_at)
        until = hours_until(start, now)
        window = policy_hours(booking)

        is_past = start <= now
        within_24h = until < self.lockout_hours
        can_manage = (
            booking.status == BOOKING_CONFIRMED
            and not is_past
            and not booking.client_manage_disabled
            and booking.cancelled_at is None
        )
        return ManagePolicy(
            is_past=is_past,
            hours_until=until,
            within_24h=within_24h,
            within_policy_window=until < window,
            can_manage=can_manage,
            can_reschedule=can_manage and not within_24h,
            can_cancel_policy=False,
            cancellation_policy_hours=window,
            cancellation_cutoff_at=start - timedelta(hours=window),
        )

    def get_for_client(self, token: str) -> Booking:
        booking = self.repo.get_by_manage_token((token or "").strip())
        if booking is None:
            raise BookingNotFound("Booking not found")
        if booking.client_manage_disabled:
            raise ManageForbidden("Self-service actions disabled for this booking.")
        return booking

    def _require_changeable(self, booking: Booking, now: datetime) -> ManagePolicy:
        if booking.status == BOOKING_CANCELLED:
            raise ManageForbidden("Booking already cancelled.")
        policy = self.can_manage(booking, now)
        if not policy.can_reschedule:
            if policy.within_24h or policy.is_past:
                message = (
                    "Appointments can no longer be changed online. "
                    "Please contact the studio for assistance."
                )
            else:
                message = "This booking cannot be modified online."
            raise ManageForbidden(message)
        return policy

    def _history_entry(self, booking: Booking, to_date: str, to_slot: str, now: datetime, notes: str) -> dict:
        return {
            "from_date": booking.date,
            "from_time_slot": booking.time_slot,
            "to_date": to_date,
            "to_time_slot": to_slot,
            "rescheduled_at": now.isoformat(),
            "rescheduled_by": "client",
            "notes": notes,
        }

    async def reschedule(
        self, token: str, new_date: str, new_slot: str, now: Optional[datetime] = None
    ) -> Booking:
        """
        Move a confirmed booking to another offered slot.

        The slot is re-validated against live availability at call time, and the
        move itself is atomic on the ledger's slot key.
        """
        now = ensure_aware(now or utcnow())
        booking = self.get_for_client(token)
        policy = self._require_changeable(booking, now)

        parse_date(new_date)
        requested = parse_slot(new_slot)
        if slot_key(requested) == booking.slot_key:
            raise InvalidRequest("You are already booked for that slot.")
        if requested <= now:
            raise InvalidRequest("Cannot reschedule to a past time.")

        offered = await self.availability.list_available_slots(new_date, now=now)
        match = next((s for s in offered if slot_key(s.starts_at) == slot_key(requested)), None)
        if match is None:
            raise SlotUnavailable("Selected time is not available for booking.")

        entry = self._history_entry(booking, new_date, match.value, now, "Client rescheduled online.")
        booking.reschedule_history = [*(booking.reschedule_history or []), entry]
        booking.rescheduled_at = to_db_datetime(now)
        booking.last_client_manage_action_at = to_db_datetime(now)
        booking.cancellation_policy_hours = policy.cancellation_policy_hours
        booking.cancellation_cutoff_at = to_db_datetime(
            match.starts_at - timedelta(hours=policy.cancellation_policy_hours)
        )
        booking = self.repo.move_to_slot(booking, new_date, match.starts_at, now)
        logger.info(f"✅ Booking {booking.id} rescheduled to {booking.time_slot}")

        await self._notify(self.notifier.send_reschedule_confirmation(booking), "reschedule", booking)
        return booking

    async def change_service(self, token: str, new_service_id: str, now: Optional[datetime] = None) -> Booking:
        """Swap the service; price follows the new service, deposit and discount carry over"""
        now = ensure_aware(now or utcnow())
        booking = self.get_for_client(token)
        self._require_changeable(booking, now)

        service = self.repo.get_service(new_service_id)
        if service is None or not service.active:
            raise InvalidRequest("Selected service is not available.")
        if service.id == booking.service_id:
            raise InvalidRequest("You are already booked for that service.")

        booking.service_id = service.id
        booking.service_name = service.name
        booking.original_price = service.price
        booking.final_price = max(service.price - (booking.discount or 0), 0)
        booking.paid_in_full = (booking.deposit or 0) >= booking.final_price
        if not booking.paid_in_full:
            booking.paid_in_full_at = None
        elif booking.paid_in_full_at is None:
            booking.paid_in_full_at = to_db_datetime(now)
        booking.last_client_manage_action_at = to_db_datetime(now)
        booking = self.repo.commit(booking)
        logger.info(f"✅ Booking {booking.id} changed to service {service.id}")

        await self._notify(self.notifier.send_service_change_confirmation(booking), "service change", booking)
        return booking

    async def transfer(
        self, token: str, new_name: str, new_email: str, new_phone: str, now: Optional[datetime] = None
    ) -> Booking:
        """Hand the appointment to another guest, keeping slot and payments"""
        now = ensure_aware(now or utcnow())
        booking = self.get_for_client(token)
        self._require_changeable(booking, now)

        new_name = (new_name or "").strip()
        new_email = (new_email or "").strip()
        new_phone = (new_phone or "").strip()
        if len(new_name) < 2:
            raise InvalidRequest("Please provide the guest's full name.")
        if "@" not in new_email:
            raise InvalidRequest("Please provide a valid email for the new guest.")
        if len(new_phone) < 7:
            raise InvalidRequest("Please provide a valid phone number for the new guest.")

        previous_name = booking.name
        entry = self._history_entry(
            booking, booking.date, booking.time_slot, now, f"Client transferred appointment to {new_name}."
        )
        booking.reschedule_history = [*(booking.reschedule_history or []), entry]
        booking.name = new_name
        booking.email = new_email
        booking.phone = new_phone
        booking.last_client_manage_action_at = to_db_datetime(now)
        booking = self.repo.commit(booking)
        logger.info(f"✅ Booking {booking.id} transferred from {previous_name} to {new_name}")

        await self._notify(
            self.notifier.send_transfer_confirmation(booking, previous_name), "transfer", booking
        )
        return booking

    def cancel(self, booking_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> Booking:
        """Staff cancellation. Frees the slot; payments stay on the record."""
        now = ensure_aware(now or utcnow())
        booking = self.repo.get_by_id(booking_id)
        if booking is None:
            raise BookingNotFound("Booking not found")
        if booking.status in (BOOKING_CANCELLED, BOOKING_COMPLETED):
            raise InvalidRequest(f"Booking is already {booking.status}.")

        booking.status = BOOKING_CANCELLED
        booking.slot_key = None
        booking.cancelled_at = to_db_datetime(now)
        booking.cancellation_reason = reason or "cancelled_by_staff"
        booking = self.repo.commit(booking)
        logger.info(f"🗑️ Booking {booking.id} cancelled ({booking.cancellation_reason})")
        return booking

    def complete_past_bookings(self, now: Optional[datetime] = None) -> list[Booking]:
        """Mark confirmed bookings whose start has passed as completed"""
        now = ensure_aware(now or utcnow())
        completed = []
        for booking in self.repo.confirmed_started_before(now):
            booking.status = BOOKING_COMPLETED
            booking.completed_at = to_db_datetime(now)
            completed.append(booking)
        if completed:
            self.repo.commit(completed[0])
            logger.info(f"✅ Marked {len(completed)} bookings completed")
        return completed

    async def _notify(self, send, action: str, booking: Booking) -> None:
        try:
            await send
        except Exception as e:
            logger.error(f"❌ {action} notification failed for booking {booking.id}: {e}")
