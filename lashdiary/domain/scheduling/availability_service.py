"""Availability service - bookable dates and slots"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from ...config import CALENDAR_BLOCK_OVERLAPS, DEFAULT_DATE_HORIZON_DAYS
from ...services.google_calendar_service import BusyInterval, ExternalCalendarGateway
from .repository import BookingRepository
from .rules import BusinessRules
from .time_calculator import (
    business_today,
    ensure_aware,
    format_date_label,
    format_slot_value,
    format_time_label,
    materialize_slot,
    parse_date,
    slot_key,
    utcnow,
    weekday_key,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DateOption:
    value: str
    label: str


@dataclass(frozen=True)
class SlotOption:
    value: str
    label: str
    starts_at: datetime


class AvailabilityService:
    """
    Combines business rules, the booking ledger and the external calendar into
    the set of offerable dates and slots. Never writes to the ledger.
    """

    def __init__(
        self,
        rules: BusinessRules,
        repo: BookingRepository,
        calendar: ExternalCalendarGateway,
        horizon_days: int = DEFAULT_DATE_HORIZON_DAYS,
        block_overlaps: bool = CALENDAR_BLOCK_OVERLAPS,
    ):
        self.rules = rules
        self.repo = repo
        self.calendar = calendar
        self.horizon_days = horizon_days
        self.block_overlaps = block_overlaps

    def _blocks(self, interval: BusyInterval, start: datetime) -> bool:
        if self.block_overlaps:
            return interval.contains(start)
        return interval.starts_at(start)

    def _date_is_open(self, day: date) -> bool:
        if self.rules.is_fully_booked(day):
            return False
        return self.rules.is_day_enabled(weekday_key(day))

    def list_available_dates(
        self,
        range_start: Optional[date] = None,
        range_end: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> list[DateOption]:
        """
        Dates a client may pick, defaulting to today through today + horizon.

        The range is clipped to [max(today, minimum booking date, window start), window end].
        Does not consult the external calendar; per-slot conflicts are resolved by
        list_available_slots.
        """
        today = business_today(now)
        start = range_start or today
        end = range_end or today + timedelta(days=self.horizon_days)

        lower_bounds = [start, today]
        if self.rules.minimum_booking_date:
            lower_bounds.append(self.rules.minimum_booking_date)
        if self.rules.window_start:
            lower_bounds.append(self.rules.window_start)
        start = max(lower_bounds)
        if self.rules.window_end:
            end = min(end, self.rules.window_end)

        options = []
        day = start
        while day <= end:
            if self._date_is_open(day):
                options.append(DateOption(value=day.isoformat(), label=format_date_label(day)))
            day += timedelta(days=1)
        return options

    async def _busy_intervals(self, day: date) -> list[BusyInterval]:
        try:
            return await self.calendar.get_busy_intervals(day)
        except Exception as e:
            # Calendar outages must never block booking; the ledger still prevents double-booking
            logger.warning(f"⚠️ Calendar lookup failed for {day.isoformat()}, assuming no conflicts: {e}")
            return []

    async def list_available_slots(self, date_str: str, now: Optional[datetime] = None) -> list[SlotOption]:
        """
        Slots that are safe to reserve for a YYYY-MM-DD date at this instant.

        Raises InvalidDate for malformed input; every other problem yields fewer slots,
        never an error.
        """
        day = parse_date(date_str)
        now = ensure_aware(now or utcnow())
        today = business_today(now)

        if self.rules.is_fully_booked(day):
            return []
        weekday = weekday_key(day)
        if not self.rules.is_day_enabled(weekday):
            logger.debug(f"{date_str} is a closed {weekday}")
            return []
        if not self.rules.within_window(day):
            return []
        if day < today:
            return []

        templates = self.rules.resolve_time_slots(weekday)
        candidates = [(t, materialize_slot(day, t.hour, t.minute)) for t in templates]
        if not candidates:
            return []

        busy = await self._busy_intervals(day)
        booked = self.repo.active_slot_keys(day.isoformat(), now)
        notice = timedelta(hours=self.rules.minimum_advance_notice_hours)

        available = []
        for template, start in candidates:
            if any(self._blocks(interval, start) for interval in busy):
                continue
            if slot_key(start) in booked:
                continue
            if start - now < notice:
                continue
            if day == today and start <= now:
                continue
            available.append(
                SlotOption(
                    value=format_slot_value(start),
                    label=template.label or format_time_label(template.hour, template.minute),
                    starts_at=start,
                )
            )

        logger.info(f"📅 {date_str}: {len(available)} of {len(candidates)} slots available")
        return available
