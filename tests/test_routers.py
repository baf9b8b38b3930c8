from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from lashdiary import webhook_security
from lashdiary.config import MPESA_CALLBACK_PERSIST_RETRIES
from lashdiary.database import get_db
from lashdiary.domain.billing.reconcilables import BookingDeposits
from lashdiary.domain.billing.reconciler import PaymentReconciler
from lashdiary.domain.billing.router import get_payment_reconciler
from lashdiary.domain.scheduling.errors import PersistenceFailure
from lashdiary.domain.scheduling.time_calculator import materialize_slot, utcnow
from lashdiary.main import app
from lashdiary.models import BOOKING_CONFIRMED, BOOKING_PENDING, Booking, Payment
from lashdiary.services.google_calendar_service import get_calendar_gateway
from lashdiary.services.notification_service import get_notifier
from tests.conftest import make_booking, upcoming_weekday


@pytest.fixture
def client(db, calendar, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_calendar_gateway] = lambda: calendar
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


def stk_payload(checkout_id, amount=200000, result_code=0):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20250303091500},
                {"Name": "PhoneNumber", "Value": 254708374149},
            ]
        }
    return {"Body": {"stkCallback": callback}}


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}


class TestAvailabilityEndpoint:
    def test_dates_without_query(self, client):
        response = client.get("/api/calendar/available-slots")
        assert response.status_code == 200
        dates = response.json()["dates"]
        assert dates
        assert {"value", "label"} <= set(dates[0])

    def test_slots_for_date(self, client):
        day = upcoming_weekday()
        response = client.get("/api/calendar/available-slots", params={"date": day.isoformat()})
        assert response.status_code == 200
        assert [s["label"] for s in response.json()["slots"]] == ["9:30 AM", "12:00 PM", "2:30 PM", "4:30 PM"]

    def test_availability_alias(self, client):
        day = upcoming_weekday()
        response = client.get("/api/availability", params={"date": day.isoformat()})
        assert response.status_code == 200
        assert len(response.json()["slots"]) == 4

    def test_invalid_date(self, client):
        response = client.get("/api/calendar/available-slots", params={"date": "2025-02-30"})
        assert response.status_code == 400

    def test_dates_within_requested_range(self, client):
        day = upcoming_weekday()
        response = client.get("/api/availability", params={"start": day.isoformat(), "end": day.isoformat()})
        assert response.status_code == 200
        assert [d["value"] for d in response.json()["dates"]] == [day.isoformat()]

    def test_inverted_range_rejected(self, client):
        day = upcoming_weekday()
        response = client.get(
            "/api/availability",
            params={"start": (day + timedelta(days=1)).isoformat(), "end": day.isoformat()},
        )
        assert response.status_code == 400


class TestReserveEndpoint:
    def _body(self, day, hour=12, minute=0, **overrides):
        body = {
            "name": "Akinyi Otieno",
            "email": "akinyi@example.com",
            "phone": "0722000111",
            "service_id": "classic-lashes",
            "date": day.isoformat(),
            "time_slot": materialize_slot(day, hour, minute).isoformat(),
        }
        body.update(overrides)
        return body

    def test_reserve_then_conflict(self, client, service, db):
        day = upcoming_weekday()
        first = client.post("/api/booking/reserve-slot", json=self._body(day))
        assert first.status_code == 201
        assert first.json()["status"] == BOOKING_PENDING
        assert first.json()["manage_token"]

        second = client.post("/api/booking/reserve-slot", json=self._body(day, email="late@example.com"))
        assert second.status_code == 409
        assert db.query(Booking).count() == 1

    def test_validation_error(self, client, service):
        response = client.post("/api/booking/reserve-slot", json=self._body(upcoming_weekday(), email="nope"))
        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"][-1] == "email"

    def test_malformed_date_is_422(self, client, service):
        response = client.post("/api/booking/reserve-slot", json=self._body(upcoming_weekday(), date="05/03/2025"))
        assert response.status_code == 422

    def test_client_cannot_set_price_or_checkout_id(self, client, service, db):
        body = self._body(upcoming_weekday(), discount=5999, final_price=1, checkout_request_id="ws_CO_forged")
        response = client.post("/api/booking/reserve-slot", json=body)

        assert response.status_code == 201
        assert response.json()["final_price"] == 6000
        assert response.json()["deposit_required"] == 2000
        booking = db.query(Booking).one()
        assert booking.discount == 0
        assert booking.checkout_request_id is None


class TestManageEndpoint:
    @pytest.fixture
    def booking(self, db, service):
        start = materialize_slot(upcoming_weekday(10), 9, 30)
        return make_booking(db, service, start, deposit=2000)

    def test_get_booking_with_policy(self, client, booking):
        response = client.get(f"/api/booking/manage/{booking.manage_token}")
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == booking.id
        assert data["policy"]["can_reschedule"] is True
        assert data["policy"]["can_cancel_policy"] is False
        assert "manage_token" not in data

    def test_unknown_token(self, client):
        assert client.get("/api/booking/manage/does-not-exist").status_code == 404

    def test_reschedule(self, client, booking, notifier):
        day = upcoming_weekday(12)
        new_slot = materialize_slot(day, 14, 30).isoformat()
        response = client.post(
            f"/api/booking/manage/{booking.manage_token}",
            json={"action": "reschedule", "new_date": day.isoformat(), "new_time_slot": new_slot},
        )
        assert response.status_code == 200
        assert response.json()["time_slot"] == new_slot
        assert response.json()["deposit"] == 2000
        assert notifier.kinds() == ["reschedule"]

    def test_reschedule_missing_fields(self, client, booking):
        response = client.post(f"/api/booking/manage/{booking.manage_token}", json={"action": "reschedule"})
        assert response.status_code == 400

    def test_locked_booking_forbidden(self, client, db, service):
        soon = make_booking(db, service, utcnow() + timedelta(hours=12))
        day = upcoming_weekday(12)
        response = client.post(
            f"/api/booking/manage/{soon.manage_token}",
            json={
                "action": "reschedule",
                "new_date": day.isoformat(),
                "new_time_slot": materialize_slot(day, 14, 30).isoformat(),
            },
        )
        assert response.status_code == 403


class TestMpesaCallback:
    @pytest.fixture
    def pending(self, db, service):
        start = materialize_slot(upcoming_weekday(), 12, 0)
        return make_booking(db, service, start, status=BOOKING_PENDING, checkout_request_id="ws_CO_191220191020363925")

    def test_get_reports_active(self, client):
        response = client.get("/api/mpesa/callback")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_successful_payment_applied_once(self, client, pending, db, notifier):
        for _ in range(3):
            response = client.post("/api/mpesa/callback", json=stk_payload(pending.checkout_request_id))
            assert response.status_code == 200
            assert response.json()["ResultCode"] == 0

        db.refresh(pending)
        assert pending.status == BOOKING_CONFIRMED
        assert pending.deposit == 2000
        assert db.query(Payment).count() == 1
        payment = db.query(Payment).one()
        assert payment.provider_receipt_id == "NLJ7RT61SV"
        assert payment.phone_number == "254708374149"
        assert notifier.kinds() == ["receipt"]

    def test_failed_payment_acknowledged(self, client, pending, db):
        response = client.post("/api/mpesa/callback", json=stk_payload(pending.checkout_request_id, result_code=1032))
        assert response.json()["ResultCode"] == 0
        db.refresh(pending)
        assert pending.deposit == 0

    def test_unknown_and_malformed_acknowledged(self, client):
        assert client.post("/api/mpesa/callback", json=stk_payload("ws_CO_unknown")).json()["ResultCode"] == 0
        assert client.post("/api/mpesa/callback", json={"unexpected": True}).json()["ResultCode"] == 0
        response = client.post("/api/mpesa/callback", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.json()["ResultCode"] == 0

    def test_bad_token_acknowledged_without_mutation(self, client, pending, db, monkeypatch):
        monkeypatch.setattr(webhook_security, "MPESA_CALLBACK_TOKEN", "s3cret")

        rejected = client.post("/api/mpesa/callback?token=wrong", json=stk_payload(pending.checkout_request_id))
        assert rejected.json()["ResultCode"] == 0
        db.refresh(pending)
        assert pending.deposit == 0

        accepted = client.post("/api/mpesa/callback?token=s3cret", json=stk_payload(pending.checkout_request_id))
        assert accepted.json()["ResultCode"] == 0
        db.refresh(pending)
        assert pending.deposit == 2000

    def test_persistence_failure_retried_then_acknowledged(self, client, caplog):
        class FailingReconciler:
            calls = 0

            async def apply_callback(self, **kwargs):
                self.calls += 1
                raise PersistenceFailure("database unavailable")

        failing = FailingReconciler()
        app.dependency_overrides[get_payment_reconciler] = lambda: failing

        response = client.post("/api/mpesa/callback", json=stk_payload("ws_CO_any"))

        assert response.json()["ResultCode"] == 0
        assert failing.calls == MPESA_CALLBACK_PERSIST_RETRIES + 1
        assert "reconcile manually" in caplog.text

    def test_database_error_during_duplicate_check_acknowledged(self, client, db, notifier, pending):
        class UnreachableDeposits(BookingDeposits):
            def has_payment(self, record, correlation_id):
                raise OperationalError("SELECT payments", {}, Exception("server closed the connection"))

        app.dependency_overrides[get_payment_reconciler] = lambda: PaymentReconciler(
            db, notifier, reconcilables=[UnreachableDeposits(db)]
        )

        response = client.post("/api/mpesa/callback", json=stk_payload(pending.checkout_request_id))

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0
        db.refresh(pending)
        assert pending.deposit == 0

    def test_unexpected_error_acknowledged(self, client, caplog):
        class BrokenReconciler:
            async def apply_callback(self, **kwargs):
                raise RuntimeError("notifier misconfigured")

        app.dependency_overrides[get_payment_reconciler] = lambda: BrokenReconciler()

        response = client.post("/api/mpesa/callback", json=stk_payload("ws_CO_any"))

        assert response.status_code == 200
        assert response.json()["ResultCode"] == 0
        assert "reconcile manually" in caplog.text
