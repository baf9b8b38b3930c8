"""M-Pesa callback router"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...config import MPESA_AMOUNT_DIVISOR, MPESA_CALLBACK_PERSIST_RETRIES
from ...database import get_db
from ...services.notification_service import Notifier, get_notifier
from ...webhook_security import WebhookVerificationError, verify_mpesa_callback
from ..scheduling.errors import PersistenceFailure
from .reconciler import PaymentReconciler
from .schemas import MpesaAcknowledgement, MpesaCallbackEnvelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mpesa", tags=["M-Pesa"])


def get_payment_reconciler(
    db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)
) -> PaymentReconciler:
    """Dependency injection for PaymentReconciler"""
    return PaymentReconciler(db, notifier)


@router.get("/callback")
async def callback_status():
    return {"message": "M-Pesa callback endpoint is active", "status": "ok"}


@router.post("/callback", response_model=MpesaAcknowledgement)
async def mpesa_callback(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
):
    """
    Receive STK push results from Safaricom.

    The provider always gets ResultCode 0; anything else makes it retry delivery
    indefinitely. Problems are logged for manual reconciliation.
    """
    try:
        verify_mpesa_callback(request)
    except WebhookVerificationError as e:
        logger.warning(f"🔒 Ignoring unverified M-Pesa callback: {e}")
        return MpesaAcknowledgement(ResultDesc="Callback received")

    try:
        payload = await request.json()
        callback = MpesaCallbackEnvelope.model_validate(payload).body.stk_callback
    except (ValueError, ValidationError) as e:
        logger.error(f"❌ Malformed M-Pesa callback: {e}")
        return MpesaAcknowledgement(ResultDesc="Callback received")

    logger.info(
        f"📥 M-Pesa callback {callback.checkout_request_id}: "
        f"ResultCode {callback.result_code} {callback.result_desc}"
    )

    attempts = MPESA_CALLBACK_PERSIST_RETRIES + 1
    for attempt in range(1, attempts + 1):
        try:
            outcome = await reconciler.apply_callback(
                correlation_id=callback.checkout_request_id,
                amount=callback.amount(MPESA_AMOUNT_DIVISOR),
                provider_receipt_id=callback.receipt_number,
                result_code=callback.result_code,
                transaction_date=callback.transaction_date,
                phone_number=callback.phone_number,
            )
            logger.info(f"💳 Callback {callback.checkout_request_id} -> {outcome.status.value}")
            break
        except PersistenceFailure as e:
            logger.warning(f"⚠️ Persisting callback failed (attempt {attempt}/{attempts}): {e}")
        except Exception as e:
            logger.critical(
                f"🚨 Unexpected error handling M-Pesa payment {callback.checkout_request_id} "
                f"(receipt {callback.receipt_number}): {e} - reconcile manually",
                exc_info=True,
            )
            break
    else:
        logger.critical(
            f"🚨 Could not persist M-Pesa payment {callback.checkout_request_id} "
            f"(receipt {callback.receipt_number}) after {attempts} attempts - reconcile manually"
        )

    return MpesaAcknowledgement()
