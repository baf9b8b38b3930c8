from datetime import datetime, timedelta

import pytest

from lashdiary.domain.scheduling.errors import (
    BookingNotFound,
    InvalidRequest,
    ManageForbidden,
    SlotUnavailable,
)
from lashdiary.models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    Payment,
)
from tests.conftest import NOW, local, make_booking, make_service


@pytest.fixture
def confirmed(db, service):
    booking = make_booking(db, service, local(2025, 3, 10, 12, 0), deposit=2000)
    db.add(
        Payment(
            booking_id=booking.id,
            amount=2000,
            provider_correlation_id="ws_CO_dep",
            provider_receipt_id="SLK0001",
        )
    )
    db.commit()
    return booking


class TestCanManage:
    def test_flags_well_ahead(self, lifecycle, confirmed):
        policy = lifecycle.can_manage(confirmed, NOW)
        assert policy.can_reschedule is True
        assert policy.within_24h is False
        assert policy.within_policy_window is False
        assert policy.can_cancel_policy is False
        assert policy.cancellation_cutoff_at == local(2025, 3, 7, 12, 0)

    def test_policy_window_is_informational(self, lifecycle, db, service):
        booking = make_booking(db, service, NOW + timedelta(hours=48))
        policy = lifecycle.can_manage(booking, NOW)
        assert policy.within_policy_window is True
        assert policy.can_reschedule is True

    def test_lockout_inside_24_hours(self, lifecycle, db, service):
        booking = make_booking(db, service, NOW + timedelta(hours=23, minutes=59))
        policy = lifecycle.can_manage(booking, NOW)
        assert policy.within_24h is True
        assert policy.can_reschedule is False

    def test_past_and_pending(self, lifecycle, db, service):
        past = make_booking(db, service, NOW - timedelta(hours=1))
        assert lifecycle.can_manage(past, NOW).is_past is True
        pending = make_booking(db, service, NOW + timedelta(days=5), status=BOOKING_PENDING)
        assert lifecycle.can_manage(pending, NOW).can_reschedule is False


class TestReschedule:
    @pytest.mark.asyncio
    async def test_moves_booking_and_keeps_payments(self, lifecycle, confirmed, notifier, db):
        booking = await lifecycle.reschedule(
            confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW
        )

        assert booking.time_slot == "2025-03-12T14:30:00+03:00"
        assert booking.date == "2025-03-12"
        assert booking.slot_key == "2025-03-12T11:30Z"
        assert booking.status == BOOKING_CONFIRMED
        assert booking.deposit == 2000
        assert [p.provider_correlation_id for p in booking.payments] == ["ws_CO_dep"]
        assert booking.cancellation_cutoff_at == datetime(2025, 3, 9, 11, 30)
        assert booking.reschedule_history[-1]["from_time_slot"] == "2025-03-10T12:00:00+03:00"
        assert booking.reschedule_history[-1]["to_time_slot"] == "2025-03-12T14:30:00+03:00"
        assert notifier.kinds() == ["reschedule"]

    @pytest.mark.asyncio
    async def test_old_slot_is_released(self, lifecycle, availability, confirmed):
        before = await availability.list_available_slots("2025-03-10", now=NOW)
        assert "2025-03-10T12:00:00+03:00" not in [s.value for s in before]

        await lifecycle.reschedule(confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

        after = await availability.list_available_slots("2025-03-10", now=NOW)
        assert "2025-03-10T12:00:00+03:00" in [s.value for s in after]

    @pytest.mark.asyncio
    async def test_lockout_at_23h59m(self, lifecycle, db, service):
        booking = make_booking(db, service, NOW + timedelta(hours=23, minutes=59))
        with pytest.raises(ManageForbidden):
            await lifecycle.reschedule(booking.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_allowed_at_25h(self, lifecycle, db, service):
        booking = make_booking(db, service, NOW + timedelta(hours=25), deposit=2000)
        moved = await lifecycle.reschedule(
            booking.manage_token, "2025-03-12", "2025-03-12T09:30:00+03:00", now=NOW
        )
        assert moved.time_slot == "2025-03-12T09:30:00+03:00"
        assert moved.deposit == 2000

    @pytest.mark.asyncio
    async def test_same_slot_rejected(self, lifecycle, confirmed):
        with pytest.raises(InvalidRequest):
            await lifecycle.reschedule(confirmed.manage_token, "2025-03-10", "2025-03-10T12:00:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_taken_slot_rejected(self, lifecycle, confirmed, db, service):
        make_booking(db, service, local(2025, 3, 12, 14, 30), email="someone@example.com")
        with pytest.raises(SlotUnavailable):
            await lifecycle.reschedule(confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_off_template_slot_rejected(self, lifecycle, confirmed):
        with pytest.raises(SlotUnavailable):
            await lifecycle.reschedule(confirmed.manage_token, "2025-03-12", "2025-03-12T13:15:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_or_revoked_token(self, lifecycle, confirmed, db):
        with pytest.raises(BookingNotFound):
            await lifecycle.reschedule("not-a-token", "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

        confirmed.manage_token_revoked = True
        db.commit()
        with pytest.raises(BookingNotFound):
            await lifecycle.reschedule(confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_client_manage_disabled(self, lifecycle, confirmed, db):
        confirmed.client_manage_disabled = True
        db.commit()
        with pytest.raises(ManageForbidden):
            await lifecycle.reschedule(confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW)

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_move(self, repo, availability, confirmed):
        from lashdiary.domain.scheduling.lifecycle_service import BookingLifecycleService
        from tests.conftest import RecordingNotifier

        service = BookingLifecycleService(repo, availability, RecordingNotifier(fail=True))
        booking = await service.reschedule(
            confirmed.manage_token, "2025-03-12", "2025-03-12T14:30:00+03:00", now=NOW
        )
        assert booking.time_slot == "2025-03-12T14:30:00+03:00"


class TestChangeService:
    @pytest.mark.asyncio
    async def test_reprices_and_keeps_deposit(self, lifecycle, confirmed, db, notifier):
        confirmed.discount = 500
        db.commit()
        make_service(db, service_id="volume-lashes", name="Volume Lashes", price=8000, deposit=3000)

        booking = await lifecycle.change_service(confirmed.manage_token, "volume-lashes", now=NOW)

        assert booking.service_name == "Volume Lashes"
        assert booking.original_price == 8000
        assert booking.final_price == 7500
        assert booking.deposit == 2000
        assert booking.paid_in_full is False
        assert booking.slot_key == confirmed.slot_key
        assert notifier.kinds() == ["service_change"]

    @pytest.mark.asyncio
    async def test_cheaper_service_can_be_paid_in_full(self, lifecycle, confirmed, db):
        make_service(db, service_id="lash-lift", name="Lash Lift", price=1500, deposit=500)
        booking = await lifecycle.change_service(confirmed.manage_token, "lash-lift", now=NOW)
        assert booking.paid_in_full is True
        assert booking.paid_in_full_at is not None

    @pytest.mark.asyncio
    async def test_pricier_service_clears_paid_in_full_stamp(self, lifecycle, confirmed, db):
        make_service(db, service_id="lash-lift", name="Lash Lift", price=1500, deposit=500)
        make_service(db, service_id="mega-volume", name="Mega Volume", price=9000, deposit=3000)
        await lifecycle.change_service(confirmed.manage_token, "lash-lift", now=NOW)

        booking = await lifecycle.change_service(confirmed.manage_token, "mega-volume", now=NOW)

        assert booking.paid_in_full is False
        assert booking.paid_in_full_at is None

    @pytest.mark.asyncio
    async def test_unknown_service(self, lifecycle, confirmed):
        with pytest.raises(InvalidRequest):
            await lifecycle.change_service(confirmed.manage_token, "nope", now=NOW)


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer_to_new_guest(self, lifecycle, confirmed, notifier):
        booking = await lifecycle.transfer(
            confirmed.manage_token, "Njeri Kamau", "njeri@example.com", "0733444555", now=NOW
        )
        assert booking.name == "Njeri Kamau"
        assert booking.email == "njeri@example.com"
        assert booking.slot_key == confirmed.slot_key
        assert booking.deposit == 2000
        assert "Njeri Kamau" in booking.reschedule_history[-1]["notes"]
        assert notifier.kinds() == ["transfer"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name,email,phone",
        [("N", "njeri@example.com", "0733444555"), ("Njeri", "njeri", "0733444555"), ("Njeri", "n@x.co", "123")],
    )
    async def test_guest_details_validated(self, lifecycle, confirmed, name, email, phone):
        with pytest.raises(InvalidRequest):
            await lifecycle.transfer(confirmed.manage_token, name, email, phone, now=NOW)


class TestStaffTransitions:
    @pytest.mark.asyncio
    async def test_cancel_reopens_slot(self, lifecycle, availability, confirmed):
        booking = lifecycle.cancel(confirmed.id, "client no-show policy", now=NOW)
        assert booking.status == BOOKING_CANCELLED
        assert booking.slot_key is None
        assert booking.deposit == 2000

        slots = await availability.list_available_slots("2025-03-10", now=NOW)
        assert "2025-03-10T12:00:00+03:00" in [s.value for s in slots]

    def test_cancel_twice(self, lifecycle, confirmed):
        lifecycle.cancel(confirmed.id, now=NOW)
        with pytest.raises(InvalidRequest):
            lifecycle.cancel(confirmed.id, now=NOW)

    def test_cancel_unknown(self, lifecycle):
        with pytest.raises(BookingNotFound):
            lifecycle.cancel("booking-missing", now=NOW)

    def test_complete_past_bookings(self, lifecycle, db, service):
        done = make_booking(db, service, NOW - timedelta(hours=3))
        upcoming = make_booking(db, service, NOW + timedelta(days=2))

        completed = lifecycle.complete_past_bookings(now=NOW)

        assert [b.id for b in completed] == [done.id]
        db.refresh(done)
        db.refresh(upcoming)
        assert done.status == BOOKING_COMPLETED
        assert upcoming.status == BOOKING_CONFIRMED
