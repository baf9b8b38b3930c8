"""
Business rules for availability: operating days, slot templates, booking window
and manual blackout dates.

Rules are stored as one JSON row and loaded as an immutable snapshot per request.
"""

import logging
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from ...config import MIN_ADVANCE_NOTICE_HOURS
from ...models import SiteSetting

logger = logging.getLogger(__name__)

AVAILABILITY_SETTING_KEY = "availability"

# Absent weekdays are open, except Saturday
DEFAULT_DAY_ENABLED = {
    "sunday": True,
    "monday": True,
    "tuesday": True,
    "wednesday": True,
    "thursday": True,
    "friday": True,
    "saturday": False,
}


class SlotTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    hour: int = Field(ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    label: Optional[str] = None


DEFAULT_WEEKDAY_SLOTS = (
    SlotTemplate(hour=9, minute=30, label="9:30 AM"),
    SlotTemplate(hour=12, minute=0, label="12:00 PM"),
    SlotTemplate(hour=14, minute=30, label="2:30 PM"),
    SlotTemplate(hour=16, minute=30, label="4:30 PM"),
)
DEFAULT_SUNDAY_SLOTS = (
    SlotTemplate(hour=12, minute=30, label="12:30 PM"),
    SlotTemplate(hour=15, minute=0, label="3:00 PM"),
)
DEFAULT_SATURDAY_SLOTS = (SlotTemplate(hour=12, minute=30, label="12:30 PM"),)


class DayHours(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: Optional[bool] = None
    open: Optional[str] = None
    close: Optional[str] = None


class BookingWindowRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: Optional[date] = None
    end: Optional[date] = None


class BookingWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: BookingWindowRange = Field(default_factory=BookingWindowRange)
    next: Optional[BookingWindowRange] = None
    note: Optional[str] = None


class BusinessRules(BaseModel):
    """Read-only snapshot of the availability configuration"""

    model_config = ConfigDict(frozen=True)

    business_hours: dict[str, DayHours] = Field(default_factory=dict)
    # Keys: "weekdays" (shared Mon-Fri bucket) and any of monday..sunday
    time_slots: dict[str, list[SlotTemplate]] = Field(default_factory=dict)
    booking_window: Optional[BookingWindow] = None
    minimum_booking_date: Optional[date] = None
    fully_booked_dates: frozenset[str] = Field(default_factory=frozenset)
    minimum_advance_notice_hours: float = MIN_ADVANCE_NOTICE_HOURS

    @field_validator("business_hours", "time_slots", mode="before")
    @classmethod
    def lowercase_keys(cls, v):
        if isinstance(v, dict):
            return {str(k).lower(): val for k, val in v.items()}
        return v

    @property
    def window_start(self) -> Optional[date]:
        if self.booking_window is None:
            return None
        return self.booking_window.current.start

    @property
    def window_end(self) -> Optional[date]:
        if self.booking_window is None:
            return None
        return self.booking_window.current.end

    def is_fully_booked(self, day: date) -> bool:
        return day.isoformat() in self.fully_booked_dates

    def is_day_enabled(self, weekday: str) -> bool:
        """Configured enabled flag for a weekday, else the built-in default"""
        hours = self.business_hours.get(weekday)
        if hours is not None and hours.enabled is not None:
            return hours.enabled
        return DEFAULT_DAY_ENABLED[weekday]

    def resolve_time_slots(self, weekday: str) -> list[SlotTemplate]:
        """
        Slot template for a weekday.

        Priority order:
            sunday             -> sunday template -> built-in Sunday default
            saturday           -> saturday template -> built-in Saturday default
            friday             -> friday template -> shared weekdays -> built-in weekday default
            monday..thursday   -> per-day template -> shared weekdays -> built-in weekday default

        Empty configured lists count as absent.
        """
        if weekday == "sunday":
            chain = [self.time_slots.get("sunday")]
            default = DEFAULT_SUNDAY_SLOTS
        elif weekday == "saturday":
            chain = [self.time_slots.get("saturday")]
            default = DEFAULT_SATURDAY_SLOTS
        else:
            chain = [self.time_slots.get(weekday), self.time_slots.get("weekdays")]
            default = DEFAULT_WEEKDAY_SLOTS

        for candidate in chain:
            if candidate:
                return sorted(candidate, key=lambda s: (s.hour, s.minute))
        return list(default)

    def within_window(self, day: date) -> bool:
        """Booking window and minimum booking date bounds (inclusive)"""
        if self.minimum_booking_date and day < self.minimum_booking_date:
            return False
        if self.window_start and day < self.window_start:
            return False
        if self.window_end and day > self.window_end:
            return False
        return True


class BusinessRuleStore:
    """Loads and saves the availability rules row"""

    def __init__(self, db: Session):
        self.db = db

    def load(self) -> BusinessRules:
        """
        Fresh snapshot from storage. Missing or unreadable data falls back to defaults
        rather than failing the request.
        """
        setting = self.db.get(SiteSetting, AVAILABILITY_SETTING_KEY)
        if setting is None or not setting.value:
            return BusinessRules()

        try:
            return BusinessRules.model_validate(setting.value)
        except ValidationError as e:
            logger.error(f"❌ Invalid availability settings, using defaults: {e}")
            return BusinessRules()

    def save(self, rules: BusinessRules) -> BusinessRules:
        payload = rules.model_dump(mode="json")
        payload["fully_booked_dates"] = sorted(rules.fully_booked_dates)

        setting = self.db.get(SiteSetting, AVAILABILITY_SETTING_KEY)
        if setting is None:
            setting = SiteSetting(key=AVAILABILITY_SETTING_KEY, value=payload)
            self.db.add(setting)
        else:
            setting.value = payload
        self.db.commit()
        logger.info("✅ Availability settings saved")
        return rules
