"""Reservation service - turns an offered slot into a pending booking"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from ...config import CLIENT_MANAGE_WINDOW_HOURS, SLOT_HOLD_MINUTES
from ...models import Booking
from .availability_service import AvailabilityService
from .errors import InvalidRequest, SlotUnavailable
from .repository import BookingRepository
from .schemas import ReserveSlotRequest
from .time_calculator import ensure_aware, parse_slot, slot_key, to_db_datetime, utcnow

logger = logging.getLogger(__name__)


class ReservationService:
    def __init__(
        self,
        repo: BookingRepository,
        availability: AvailabilityService,
        hold_minutes: int = SLOT_HOLD_MINUTES,
        policy_hours: int = CLIENT_MANAGE_WINDOW_HOURS,
    ):
        self.repo = repo
        self.availability = availability
        self.hold_minutes = hold_minutes
        self.policy_hours = policy_hours

    async def reserve(self, request: ReserveSlotRequest, now: Optional[datetime] = None) -> Booking:
        """
        Hold a slot for a client while they pay the deposit.

        The slot must be one the availability service offers right now; the ledger's
        unique slot key settles any race between clients who saw the same slot.
        """
        now = ensure_aware(now or utcnow())

        service = self.repo.get_service(request.service_id)
        if service is None or not service.active:
            raise InvalidRequest("Selected service is not available.")

        requested = parse_slot(request.time_slot)
        offered = await self.availability.list_available_slots(request.date, now=now)
        match = next((s for s in offered if slot_key(s.starts_at) == slot_key(requested)), None)
        if match is None:
            logger.info(f"⚠️ Reservation refused, {request.time_slot} is not offered")
            raise SlotUnavailable("This time slot is no longer available. Please pick another time.")

        # Price comes from the catalogue only
        final_price = service.price
        booking = Booking(
            name=request.name.strip(),
            email=request.email.strip(),
            phone=request.phone.strip(),
            location=request.location,
            notes=request.notes,
            service_id=service.id,
            service_name=service.name,
            date=request.date,
            original_price=service.price,
            discount=0,
            final_price=final_price,
            deposit_required=min(service.deposit, final_price),
            deposit=0,
            paid_in_full=final_price <= 0,
            cancellation_policy_hours=self.policy_hours,
            cancellation_cutoff_at=to_db_datetime(match.starts_at - timedelta(hours=self.policy_hours)),
            reschedule_history=[],
        )
        booking = self.repo.create_reservation(booking, match.starts_at, now, self.hold_minutes)
        logger.info(f"✅ Reserved {booking.time_slot} for {booking.email} ({booking.id})")
        return booking
