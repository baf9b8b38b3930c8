"""Booking ledger - database operations for bookings and services"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import (
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    Booking,
    Service,
)
from .errors import InvalidRequest, PersistenceFailure, SlotUnavailable
from .time_calculator import format_slot_value, slot_key, to_db_datetime

logger = logging.getLogger(__name__)

HOLD_EXPIRED_REASON = "hold_expired"


def _hold_is_live(now: datetime):
    """Filter clause: booking still occupies its slot at `now`"""
    now_db = to_db_datetime(now)
    return and_(
        Booking.status != BOOKING_CANCELLED,
        or_(
            Booking.status != BOOKING_PENDING,
            Booking.deposit > 0,
            Booking.hold_expires_at.is_(None),
            Booking.hold_expires_at > now_db,
        ),
    )


class BookingRepository:
    """Repository for booking ledger operations"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, booking_id: str) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.id == booking_id).first()

    def get_by_manage_token(self, token: str) -> Optional[Booking]:
        """Resolve an active (non-revoked) manage token"""
        if not token:
            return None
        return (
            self.db.query(Booking)
            .filter(Booking.manage_token == token, Booking.manage_token_revoked.is_(False))
            .first()
        )

    def get_service(self, service_id: str) -> Optional[Service]:
        return self.db.query(Service).filter(Service.id == service_id).first()

    def active_slot_keys(self, date_str: str, now: datetime) -> set[str]:
        """Slot keys held by non-cancelled bookings on a business-local date"""
        rows = (
            self.db.query(Booking.starts_at)
            .filter(Booking.date == date_str, _hold_is_live(now))
            .all()
        )
        return {slot_key(row.starts_at) for row in rows}

    def release_expired_holds(self, starts_at: datetime, now: datetime) -> int:
        """
        Cancel unpaid pending bookings whose hold has lapsed on this start instant,
        freeing the unique slot key. Runs inside the caller's transaction.
        """
        stale = (
            self.db.query(Booking)
            .filter(
                Booking.slot_key == slot_key(starts_at),
                Booking.status == BOOKING_PENDING,
                Booking.deposit <= 0,
                Booking.hold_expires_at.isnot(None),
                Booking.hold_expires_at <= to_db_datetime(now),
            )
            .all()
        )
        for booking in stale:
            booking.status = BOOKING_CANCELLED
            booking.slot_key = None
            booking.cancelled_at = to_db_datetime(now)
            booking.cancellation_reason = HOLD_EXPIRED_REASON
            logger.info(f"⌛ Released expired hold {booking.id} at {booking.time_slot}")
        if stale:
            self.db.flush()
        return len(stale)

    def create_reservation(self, booking: Booking, starts_at: datetime, now: datetime, hold_minutes: int) -> Booking:
        """
        Insert a pending booking for `starts_at`.

        The unique slot_key column makes the check-and-insert atomic: of any number of
        concurrent attempts on the same instant exactly one commit succeeds.
        """
        booking.starts_at = to_db_datetime(starts_at)
        booking.time_slot = format_slot_value(starts_at)
        booking.slot_key = slot_key(starts_at)
        booking.status = BOOKING_PENDING
        booking.hold_expires_at = to_db_datetime(now + timedelta(minutes=hold_minutes))

        try:
            self.release_expired_holds(starts_at, now)
            self.db.add(booking)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"⚠️ Slot {booking.time_slot} was taken by a concurrent reservation")
            raise SlotUnavailable("This time slot is no longer available. Please pick another time.") from None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to save reservation: {e}")
            raise PersistenceFailure("Failed to save reservation") from e

        self.db.refresh(booking)
        return booking

    def move_to_slot(self, booking: Booking, date_str: str, starts_at: datetime, now: datetime) -> Booking:
        """
        Point an existing booking at a new start instant (atomic on the slot key).
        Caller applies any other field changes before calling; they commit together.
        """
        try:
            self.release_expired_holds(starts_at, now)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailure("Failed to update booking") from e

        booking.date = date_str
        booking.starts_at = to_db_datetime(starts_at)
        booking.time_slot = format_slot_value(starts_at)
        booking.slot_key = slot_key(starts_at)
        return self.commit(booking)

    def attach_checkout_request(self, booking: Booking, checkout_request_id: str) -> Booking:
        """Record the CheckoutRequestID returned when the deposit STK push was started"""
        if booking.status != BOOKING_PENDING:
            raise InvalidRequest("Only a pending booking can start a deposit payment.")
        booking.checkout_request_id = checkout_request_id
        return self.commit(booking)

    def commit(self, booking: Booking) -> Booking:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise SlotUnavailable("That slot was just taken. Please choose another.") from None
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to update booking {booking.id}: {e}")
            raise PersistenceFailure("Failed to update booking") from e
        self.db.refresh(booking)
        return booking

    def confirmed_started_before(self, now: datetime) -> list[Booking]:
        return (
            self.db.query(Booking)
            .filter(Booking.status == BOOKING_CONFIRMED, Booking.starts_at <= to_db_datetime(now))
            .all()
        )
