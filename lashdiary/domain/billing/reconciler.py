"""
Payment reconciler - applies one provider callback exactly once

Ledger mutation is exactly-once per correlation id: the unique
payments.provider_correlation_id column is the serialization point, so a
concurrent duplicate callback loses at commit time and reports ALREADY_APPLIED.
Notifications run only after a successful commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Payment
from ...services.notification_service import Notifier
from ..scheduling.errors import PersistenceFailure
from ..scheduling.time_calculator import ensure_aware, to_db_datetime, utcnow
from .reconcilables import NOTIFY_RECEIPT, NOTIFY_WELCOME, Reconcilable, default_reconcilables

logger = logging.getLogger(__name__)


class ReconciliationStatus(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    RECORD_NOT_FOUND = "record_not_found"
    PROVIDER_FAILURE = "provider_failure"
    INTEGRITY_ERROR = "integrity_error"


@dataclass
class ReconciliationOutcome:
    status: ReconciliationStatus
    record_type: Optional[str] = None
    record_id: Optional[str] = None
    message: str = ""


class PaymentReconciler:
    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        reconcilables: Optional[list[Reconcilable]] = None,
    ):
        self.db = db
        self.notifier = notifier
        self.reconcilables = reconcilables if reconcilables is not None else default_reconcilables(db)

    def _find_matches(self, correlation_id: str) -> list[tuple[Reconcilable, Any]]:
        matches = []
        for family in self.reconcilables:
            for record in family.find_by_correlation_id(correlation_id):
                matches.append((family, record))
        return matches

    async def apply_callback(
        self,
        correlation_id: Optional[str],
        amount: Optional[float],
        provider_receipt_id: Optional[str],
        result_code: int,
        transaction_date: Optional[str] = None,
        phone_number: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationOutcome:
        """
        Apply a provider payment notification to the one record it belongs to.

        Never raises for business outcomes; only PersistenceFailure signals that a
        retry may help.
        """
        now = ensure_aware(now or utcnow())

        if result_code != 0:
            logger.info(f"❌ M-Pesa payment failed for {correlation_id} (ResultCode {result_code})")
            return ReconciliationOutcome(ReconciliationStatus.PROVIDER_FAILURE, message=str(result_code))

        if not correlation_id:
            logger.error("❌ Successful M-Pesa callback without CheckoutRequestID")
            return ReconciliationOutcome(ReconciliationStatus.RECORD_NOT_FOUND)

        try:
            matches = self._find_matches(correlation_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to look up records for {correlation_id}: {e}")
            raise PersistenceFailure("Failed to look up payment target") from e

        if not matches:
            self.db.rollback()
            logger.error(
                f"⚠️ No record found for CheckoutRequestID {correlation_id} "
                f"(amount {amount}, receipt {provider_receipt_id}) - reconcile manually"
            )
            return ReconciliationOutcome(ReconciliationStatus.RECORD_NOT_FOUND)

        if len(matches) > 1:
            found = ", ".join(f"{family.record_type}:{record.id}" for family, record in matches)
            logger.critical(
                f"🚨 CheckoutRequestID {correlation_id} matches {len(matches)} records ({found}); "
                f"applying to the first only"
            )

        family, record = matches[0]
        outcome = ReconciliationOutcome(
            ReconciliationStatus.APPLIED, record_type=family.record_type, record_id=record.id
        )

        try:
            already_paid = family.has_payment(record, correlation_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to check existing payments for {correlation_id}: {e}")
            raise PersistenceFailure("Failed to check existing payments") from e

        if already_paid:
            self.db.rollback()
            logger.info(f"ℹ️ Payment already recorded for CheckoutRequestID {correlation_id}")
            outcome.status = ReconciliationStatus.ALREADY_APPLIED
            return outcome

        if amount is None or amount <= 0:
            self.db.rollback()
            logger.error(f"❌ Refusing non-positive amount {amount} for {family.record_type} {record.id}")
            outcome.status = ReconciliationStatus.INTEGRITY_ERROR
            outcome.message = "non-positive amount"
            return outcome

        payment = Payment(
            amount=amount,
            method="mpesa",
            provider_correlation_id=correlation_id,
            provider_receipt_id=provider_receipt_id,
            transaction_date=transaction_date,
            phone_number=phone_number,
            applied_at=to_db_datetime(now),
        )
        notifications = family.apply_payment(record, payment, now)
        self.db.add(payment)

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"ℹ️ Concurrent callback already applied {correlation_id}")
            outcome.status = ReconciliationStatus.ALREADY_APPLIED
            return outcome
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to persist payment {correlation_id}: {e}")
            raise PersistenceFailure("Failed to persist payment") from e

        try:
            self.db.refresh(record)
        except SQLAlchemyError as e:
            # Payment is committed; only the in-memory copy is stale
            logger.warning(f"⚠️ Could not reload {family.record_type} {record.id} after payment: {e}")
        logger.info(
            f"✅ Payment recorded for {family.record_type} {record.id}: KSH {amount:,.2f} "
            f"(receipt {provider_receipt_id})"
        )
        await self._dispatch(notifications, record)
        return outcome

    async def _dispatch(self, notifications: list[str], record: Any) -> None:
        for name in notifications:
            try:
                if name == NOTIFY_RECEIPT:
                    await self.notifier.send_receipt(record)
                elif name == NOTIFY_WELCOME:
                    await self.notifier.send_welcome(record)
            except Exception as e:
                logger.error(f"❌ {name} notification failed for {record.id}: {e}")
