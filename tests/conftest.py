"""
Shared fixtures for the booking engine tests.

Environment is set before any lashdiary import so config picks it up.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BUSINESS_TIMEZONE"] = "Africa/Nairobi"
os.environ.pop("REDIS_URL", None)
os.environ.pop("MPESA_CALLBACK_TOKEN", None)
os.environ.pop("MPESA_ALLOWED_IPS", None)

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lashdiary.database import Base
from lashdiary.domain.scheduling.availability_service import AvailabilityService
from lashdiary.domain.scheduling.lifecycle_service import BookingLifecycleService
from lashdiary.domain.scheduling.repository import BookingRepository
from lashdiary.domain.scheduling.rules import BusinessRules
from lashdiary.domain.scheduling.time_calculator import (
    business_today,
    format_slot_value,
    get_business_tz,
    slot_key,
    to_db_datetime,
    weekday_key,
)
from lashdiary.models import BOOKING_CONFIRMED, Booking, Service
from lashdiary.services.google_calendar_service import BusyInterval

# Monday 2025-03-03 09:00 in Nairobi (UTC+3)
NOW = datetime(2025, 3, 3, 6, 0, tzinfo=timezone.utc)


def local(year, month, day, hour, minute=0):
    """Aware datetime in the business timezone"""
    return get_business_tz().localize(datetime(year, month, day, hour, minute))


class FakeCalendarGateway:
    def __init__(self, intervals=None, fail=False):
        self.intervals = intervals or []
        self.fail = fail
        self.calls = []

    async def get_busy_intervals(self, day):
        self.calls.append(day)
        if self.fail:
            raise TimeoutError("calendar timed out")
        return [i for i in self.intervals if i.start.astimezone(get_business_tz()).date() == day]


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def _record(self, kind, record):
        self.sent.append((kind, record.id))
        if self.fail:
            raise RuntimeError("smtp down")
        return True

    async def send_receipt(self, record):
        return await self._record("receipt", record)

    async def send_reschedule_confirmation(self, record):
        return await self._record("reschedule", record)

    async def send_service_change_confirmation(self, record):
        return await self._record("service_change", record)

    async def send_transfer_confirmation(self, record, previous_name):
        return await self._record("transfer", record)

    async def send_welcome(self, account):
        return await self._record("welcome", account)

    def kinds(self):
        return [kind for kind, _ in self.sent]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=True, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def calendar():
    return FakeCalendarGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rules():
    return BusinessRules()


@pytest.fixture
def repo(db):
    return BookingRepository(db)


@pytest.fixture
def availability(rules, repo, calendar):
    return AvailabilityService(rules, repo, calendar)


@pytest.fixture
def lifecycle(repo, availability, notifier):
    return BookingLifecycleService(repo, availability, notifier)


@pytest.fixture
def service(db):
    return make_service(db)


def make_service(db, service_id="classic-lashes", name="Classic Lashes", price=6000, deposit=2000):
    svc = Service(id=service_id, name=name, price=price, deposit=deposit, active=True)
    db.add(svc)
    db.commit()
    return svc


def make_booking(db, service, starts_at, status=BOOKING_CONFIRMED, deposit=0, **overrides):
    booking = Booking(
        name="Wanjiku Client",
        email="wanjiku@example.com",
        phone="0712345678",
        service_id=service.id,
        service_name=service.name,
        date=starts_at.astimezone(get_business_tz()).date().isoformat(),
        time_slot=format_slot_value(starts_at),
        starts_at=to_db_datetime(starts_at),
        slot_key=slot_key(starts_at),
        original_price=service.price,
        final_price=service.price,
        deposit_required=service.deposit,
        deposit=deposit,
        status=status,
        reschedule_history=[],
    )
    for key, value in overrides.items():
        setattr(booking, key, value)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def busy(start, minutes=120):
    return BusyInterval(start=start, end=start + timedelta(minutes=minutes))


def upcoming_weekday(days_ahead=7):
    """A Monday-Friday date at least `days_ahead` days from the real current date"""
    day = business_today() + timedelta(days=days_ahead)
    while weekday_key(day) in ("saturday", "sunday"):
        day += timedelta(days=1)
    return day
