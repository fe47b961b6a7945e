"""
M-Pesa payment endpoints.

Initiation and status queries are owner-scoped; the callback is called by
the provider and is acknowledged once processed, whatever the payment outcome.
"""
import hmac
import logging
import math
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status
from sqlalchemy.orm import Session

from app.core import config
from app.core.auth_dependency import get_current_user_obj, get_db
from app.core.errors import AuthenticationError
from app.core.rate_limit import check_rate_limit
from app.db.models.payment import PaymentIntent
from app.db.models.user import User
from app.schemas.payment import (
    CallbackAck,
    InitiatePaymentData,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    Pagination,
    PaymentHistoryData,
    PaymentHistoryResponse,
    PaymentIntentOut,
    PaymentStatusResponse,
)
from app.services.mpesa_client import MpesaClient
from app.services.payment_reconciler import PaymentReconciler
from app.services.payment_store import PaymentIntentStore, is_abandoned

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


def get_payment_provider() -> MpesaClient:
    """Provider client dependency; overridden in tests."""
    return MpesaClient.from_config()


def to_out(intent: PaymentIntent) -> PaymentIntentOut:
    return PaymentIntentOut.model_validate(intent).model_copy(update={"abandoned": is_abandoned(intent)})


@router.post("/mpesa/initiate", response_model=InitiatePaymentResponse)
def initiate_payment(
    request: Request,
    payload: InitiatePaymentRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    provider: MpesaClient = Depends(get_payment_provider),
):
    """
    Start an M-Pesa STK push for a subscription plan.

    The payer completes the payment on their handset; the result arrives later
    through the callback. Poll GET /api/payments/{id}/status for the outcome.
    """
    check_rate_limit(
        request,
        scope="mpesa_initiate",
        max_requests=config.INITIATE_RATE_LIMIT,
        window_seconds=config.INITIATE_RATE_WINDOW_SECONDS,
    )

    reconciler = PaymentReconciler(db, provider)
    result = reconciler.initiate(user, payload.amount, payload.plan_id, payload.phone_number)

    return InitiatePaymentResponse(
        data=InitiatePaymentData(
            payment_id=result.intent.id,
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            status=result.intent.status,
        )
    )


@router.post("/mpesa/callback", response_model=CallbackAck)
def mpesa_callback(
    payload: Any = Body(...),
    token: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    provider: MpesaClient = Depends(get_payment_provider),
):
    """
    M-Pesa STK result webhook.

    Unknown checkout ids and repeated deliveries are acknowledged without changes.
    """
    if config.MPESA_CALLBACK_TOKEN and not hmac.compare_digest(token or "", config.MPESA_CALLBACK_TOKEN):
        logger.warning("M-Pesa callback rejected: bad or missing token")
        raise AuthenticationError("Invalid callback token")

    reconciler = PaymentReconciler(db, provider)
    outcome = reconciler.handle_provider_callback(payload)
    logger.info(f"M-Pesa callback processed: outcome={outcome.value}")

    return CallbackAck(success=True)


@router.get("/history", response_model=PaymentHistoryResponse)
def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    """Newest-first payment history of the authenticated user."""
    items, total = PaymentIntentStore(db).list_for_owner(user.id, page=page, limit=limit)

    return PaymentHistoryResponse(
        data=PaymentHistoryData(
            payments=[to_out(intent) for intent in items],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=math.ceil(total / limit),
            ),
        )
    )


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
def payment_status(
    payment_id: str,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    intent = PaymentIntentStore(db).get_for_owner(payment_id, user.id)
    return PaymentStatusResponse(data=to_out(intent))


@router.post("/{payment_id}/cancel", response_model=PaymentStatusResponse, status_code=status.HTTP_200_OK)
def cancel_payment(
    payment_id: str,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    provider: MpesaClient = Depends(get_payment_provider),
):
    """Abandon a pending payment. Settled payments are returned unchanged."""
    intent = PaymentReconciler(db, provider).cancel_payment(user, payment_id)
    return PaymentStatusResponse(data=to_out(intent))
