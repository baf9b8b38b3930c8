"""
Record families that can absorb a provider payment

Each family knows how to find its records by provider correlation id, whether a
payment with that id is already attached, and how a new payment moves the record
forward. The reconciler iterates them without knowing which one matched.
"""

import logging
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ...models import (
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING,
    Booking,
    LabsOrder,
    Payment,
    ShopOrder,
)
from ..scheduling.time_calculator import to_db_datetime

logger = logging.getLogger(__name__)

# Notification names returned by apply_payment, dispatched after commit
NOTIFY_RECEIPT = "receipt"
NOTIFY_WELCOME = "welcome"


class Reconcilable(Protocol):
    record_type: str

    def find_by_correlation_id(self, correlation_id: str) -> list[Any]: ...

    def has_payment(self, record: Any, correlation_id: str) -> bool: ...

    def apply_payment(self, record: Any, payment: Payment, now: datetime) -> list[str]: ...


class _PaymentOwner:
    """Shared lookups for families whose records own Payment rows"""

    record_type = ""
    model: Any = None
    # Payment column pointing back at this family's records
    payment_fk_name = ""

    def __init__(self, db: Session):
        self.db = db

    @property
    def payment_fk(self):
        return getattr(Payment, self.payment_fk_name)

    def find_by_correlation_id(self, correlation_id: str) -> list[Any]:
        paid_ids = select(self.payment_fk).where(Payment.provider_correlation_id == correlation_id)
        return (
            self.db.query(self.model)
            .filter(
                or_(
                    self.model.checkout_request_id == correlation_id,
                    self.model.id.in_(paid_ids),
                )
            )
            .order_by(self.model.created_at, self.model.id)
            .with_for_update()
            .all()
        )

    def has_payment(self, record: Any, correlation_id: str) -> bool:
        return (
            self.db.query(Payment.id)
            .filter(self.payment_fk == record.id, Payment.provider_correlation_id == correlation_id)
            .first()
            is not None
        )


class BookingDeposits(_PaymentOwner):
    record_type = "booking"
    model = Booking
    payment_fk_name = "booking_id"

    def apply_payment(self, record: Booking, payment: Payment, now: datetime) -> list[str]:
        payment.booking_id = record.id
        record.deposit = (record.deposit or 0) + payment.amount
        record.paid_in_full = record.deposit >= record.final_price
        if record.paid_in_full and record.paid_in_full_at is None:
            record.paid_in_full_at = to_db_datetime(now)

        if record.status == BOOKING_CANCELLED:
            # Funds are kept on the record for staff to settle; the slot is not reinstated
            logger.error(
                f"❌ Payment {payment.provider_correlation_id} applied to cancelled booking {record.id} "
                f"({record.cancellation_reason}) - needs manual follow-up"
            )
        elif record.status == BOOKING_PENDING:
            threshold = min(record.deposit_required or 0, record.final_price)
            if record.deposit >= threshold:
                if record.hold_expires_at is not None and record.hold_expires_at <= to_db_datetime(now):
                    # Hold lapsed but nobody has taken the slot yet, so it still owns the slot key
                    logger.warning(f"⚠️ Late deposit for booking {record.id}, hold had expired")
                record.status = BOOKING_CONFIRMED
                record.confirmed_at = to_db_datetime(now)
                record.hold_expires_at = None
                logger.info(f"✅ Booking {record.id} confirmed (deposit KSH {record.deposit:,.0f})")

        if record.final_price and record.deposit > record.final_price:
            logger.error(
                f"❌ Booking {record.id} overpaid: KSH {record.deposit:,.0f} against {record.final_price:,.0f}"
            )
        return [NOTIFY_RECEIPT]


class ShopOrders(_PaymentOwner):
    record_type = "shop_order"
    model = ShopOrder
    payment_fk_name = "shop_order_id"

    def apply_payment(self, record: ShopOrder, payment: Payment, now: datetime) -> list[str]:
        payment.shop_order_id = record.id
        record.amount_paid = (record.amount_paid or 0) + payment.amount
        if record.amount_paid >= record.total:
            record.status = "paid"
            if record.paid_at is None:
                record.paid_at = to_db_datetime(now)
        else:
            record.status = "partially_paid"
        return [NOTIFY_RECEIPT]


class LabsOrders(_PaymentOwner):
    record_type = "labs_order"
    model = LabsOrder
    payment_fk_name = "labs_order_id"

    def _has_provisioned_account(self, record: LabsOrder) -> bool:
        return (
            self.db.query(LabsOrder.id)
            .filter(
                LabsOrder.email == record.email,
                LabsOrder.id != record.id,
                LabsOrder.account_provisioned.is_(True),
            )
            .first()
            is not None
        )

    def apply_payment(self, record: LabsOrder, payment: Payment, now: datetime) -> list[str]:
        payment.labs_order_id = record.id
        record.amount_paid = (record.amount_paid or 0) + payment.amount
        notifications = [NOTIFY_RECEIPT]

        if record.amount_paid < record.total:
            record.status = "processing"
            return notifications

        record.status = "completed"
        if record.completed_at is None:
            record.completed_at = to_db_datetime(now)
        if not record.account_provisioned and not self._has_provisioned_account(record):
            record.account_provisioned = True
            notifications.append(NOTIFY_WELCOME)
            logger.info(f"🆕 Provisioning labs account for {record.email} ({record.tier})")
        return notifications


def default_reconcilables(db: Session) -> list[Reconcilable]:
    """Scan order: shop orders, labs orders, booking deposits"""
    return [ShopOrders(db), LabsOrders(db), BookingDeposits(db)]
