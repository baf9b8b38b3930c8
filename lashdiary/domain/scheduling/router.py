"""Scheduling router - availability, reservations and client self-service"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from ...models import Booking
from ...rate_limiter import create_rate_limiter
from ...services.google_calendar_service import ExternalCalendarGateway, get_calendar_gateway
from ...services.notification_service import Notifier, get_notifier
from .availability_service import AvailabilityService
from .errors import BookingError, InvalidRequest
from .lifecycle_service import BookingLifecycleService
from .repository import BookingRepository
from .reservation_service import ReservationService
from .rules import BusinessRules, BusinessRuleStore
from .schemas import (
    AvailableDatesResponse,
    AvailableSlotsResponse,
    DateOptionResponse,
    ManageActionRequest,
    ManagedBookingResponse,
    ManagePolicyResponse,
    ReserveSlotRequest,
    ReserveSlotResponse,
    SlotOptionResponse,
)
from .time_calculator import parse_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Booking"])

reserve_rate_limit = create_rate_limiter(limit=10, window_seconds=60, key_prefix="reserve_slot")
manage_rate_limit = create_rate_limiter(limit=30, window_seconds=60, key_prefix="manage_booking")


def to_http_error(error: BookingError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=str(error))


# ============================================================================
# DEPENDENCIES
# ============================================================================


def get_business_rules(db: Session = Depends(get_db)) -> BusinessRules:
    """Fresh rules snapshot per request"""
    return BusinessRuleStore(db).load()


def get_booking_repository(db: Session = Depends(get_db)) -> BookingRepository:
    return BookingRepository(db)


def get_availability_service(
    rules: BusinessRules = Depends(get_business_rules),
    repo: BookingRepository = Depends(get_booking_repository),
    calendar: ExternalCalendarGateway = Depends(get_calendar_gateway),
) -> AvailabilityService:
    return AvailabilityService(rules, repo, calendar)


def get_reservation_service(
    repo: BookingRepository = Depends(get_booking_repository),
    availability: AvailabilityService = Depends(get_availability_service),
) -> ReservationService:
    return ReservationService(repo, availability)


def get_lifecycle_service(
    repo: BookingRepository = Depends(get_booking_repository),
    availability: AvailabilityService = Depends(get_availability_service),
    notifier: Notifier = Depends(get_notifier),
) -> BookingLifecycleService:
    return BookingLifecycleService(repo, availability, notifier)


def serialize_managed_booking(booking: Booking, service: BookingLifecycleService) -> ManagedBookingResponse:
    policy = service.can_manage(booking)
    return ManagedBookingResponse(
        id=booking.id,
        name=booking.name,
        email=booking.email,
        phone=booking.phone,
        service_id=booking.service_id,
        service_name=booking.service_name,
        date=booking.date,
        time_slot=booking.time_slot,
        status=booking.status,
        original_price=booking.original_price,
        discount=booking.discount,
        final_price=booking.final_price,
        deposit_required=booking.deposit_required,
        deposit=booking.deposit,
        paid_in_full=booking.paid_in_full,
        reschedule_history=booking.reschedule_history or [],
        policy=ManagePolicyResponse(**policy.__dict__),
    )


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/calendar/available-slots")
@router.get("/availability")
async def get_available_slots(
    date: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    availability: AvailabilityService = Depends(get_availability_service),
):
    """Slots for ?date=YYYY-MM-DD, or the bookable dates (?start=, ?end=) when no date is given"""
    if not date:
        try:
            range_start = parse_date(start) if start else None
            range_end = parse_date(end) if end else None
        except BookingError as e:
            raise to_http_error(e) from e
        if range_start and range_end and range_start > range_end:
            raise HTTPException(status_code=400, detail="start must not be after end")
        options = availability.list_available_dates(range_start, range_end)
        return AvailableDatesResponse(dates=[DateOptionResponse(**o.__dict__) for o in options])

    try:
        slots = await availability.list_available_slots(date)
    except BookingError as e:
        raise to_http_error(e) from e
    return AvailableSlotsResponse(
        date=date, slots=[SlotOptionResponse(value=s.value, label=s.label) for s in slots]
    )


# ============================================================================
# RESERVATIONS
# ============================================================================


@router.post(
    "/booking/reserve-slot",
    response_model=ReserveSlotResponse,
    status_code=201,
    dependencies=[Depends(reserve_rate_limit)],
)
async def reserve_slot(
    body: ReserveSlotRequest,
    service: ReservationService = Depends(get_reservation_service),
):
    """Hold a slot as a pending booking until the deposit arrives"""
    try:
        booking = await service.reserve(body)
    except BookingError as e:
        raise to_http_error(e) from e
    return ReserveSlotResponse(
        booking_id=booking.id,
        status=booking.status,
        time_slot=booking.time_slot,
        hold_expires_at=booking.hold_expires_at,
        deposit_required=booking.deposit_required,
        final_price=booking.final_price,
        manage_token=booking.manage_token,
    )


# ============================================================================
# CLIENT SELF-SERVICE
# ============================================================================


@router.get(
    "/booking/manage/{token}",
    response_model=ManagedBookingResponse,
    dependencies=[Depends(manage_rate_limit)],
)
async def get_managed_booking(
    token: str,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    try:
        booking = service.get_for_client(token)
    except BookingError as e:
        raise to_http_error(e) from e
    return serialize_managed_booking(booking, service)


@router.post(
    "/booking/manage/{token}",
    response_model=ManagedBookingResponse,
    dependencies=[Depends(manage_rate_limit)],
)
async def manage_booking(
    token: str,
    body: ManageActionRequest,
    service: BookingLifecycleService = Depends(get_lifecycle_service),
):
    """Reschedule, transfer or change the service of a confirmed booking"""
    try:
        if body.action == "reschedule":
            if not body.new_date or not body.new_time_slot:
                raise InvalidRequest("New date and time are required to reschedule.")
            booking = await service.reschedule(token, body.new_date, body.new_time_slot)
        elif body.action == "transfer":
            booking = await service.transfer(
                token, body.new_name or "", body.new_email or "", body.new_phone or ""
            )
        else:
            if not body.new_service_id:
                raise InvalidRequest("A service is required.")
            booking = await service.change_service(token, body.new_service_id)
    except BookingError as e:
        raise to_http_error(e) from e
    return serialize_managed_booking(booking, service)
