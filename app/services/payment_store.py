"""
Payment intent store.

Durable record of payment attempts and their terminal outcome. Writes only
flush; the caller's unit of work decides when they become durable.

State transitions are conditional updates guarded by the current state, so
when two writers race on the same pending intent exactly one of them sees
``applied=True``.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import PAYMENT_CURRENCY, PAYMENT_PENDING_TIMEOUT_SECONDS
from app.core.errors import ConflictError, NotFoundError
from app.db.base import utcnow
from app.db.models.payment import PaymentIntent, PENDING, COMPLETED, FAILED, CANCELLED

logger = logging.getLogger(__name__)


class Transition(NamedTuple):
    """Result of a state transition attempt."""
    intent: PaymentIntent
    applied: bool  # False when the intent had already left pending


class PaymentIntentStore:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        owner_id: str,
        amount: Decimal,
        plan: str,
        phone_number: str,
        currency: str = PAYMENT_CURRENCY,
    ) -> PaymentIntent:
        """Insert a new pending intent. No external side effect."""
        intent = PaymentIntent(
            user_id=owner_id,
            amount=amount,
            currency=currency,
            plan=plan,
            phone_number=phone_number,
            status=PENDING,
        )
        self.db.add(intent)
        self.db.flush()
        logger.info(f"Payment intent created: payment_id={intent.id}, user_id={owner_id}, plan={plan}, amount={amount}")
        return intent

    def get(self, intent_id: str) -> PaymentIntent:
        intent = self.db.get(PaymentIntent, intent_id)
        if not intent:
            raise NotFoundError("Payment not found")
        return intent

    def get_for_owner(self, intent_id: str, owner_id: str) -> PaymentIntent:
        """Owner-scoped lookup. Another user's intent is reported as not found."""
        intent = self.db.query(PaymentIntent).filter(
            PaymentIntent.id == intent_id,
            PaymentIntent.user_id == owner_id,
        ).first()
        if not intent:
            raise NotFoundError("Payment not found")
        return intent

    def list_for_owner(self, owner_id: str, page: int = 1, limit: int = 20) -> Tuple[List[PaymentIntent], int]:
        """Newest-first page of the owner's intents plus the owner's total count."""
        query = self.db.query(PaymentIntent).filter(PaymentIntent.user_id == owner_id)
        total = query.count()
        items = (
            query.order_by(PaymentIntent.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def find_by_correlation_id(self, correlation_id: str) -> Optional[PaymentIntent]:
        """Map a provider CheckoutRequestID back to its intent (unique index)."""
        if not correlation_id:
            return None
        return self.db.query(PaymentIntent).filter(
            PaymentIntent.correlation_id == correlation_id
        ).first()

    def assign_correlation_id(
        self,
        intent_id: str,
        correlation_id: str,
        merchant_request_id: Optional[str] = None,
    ) -> PaymentIntent:
        """
        One-time write of the provider tracking reference.

        Raises:
            NotFoundError: intent does not exist
            ConflictError: a correlation id was already assigned
        """
        try:
            updated = self.db.query(PaymentIntent).filter(
                PaymentIntent.id == intent_id,
                PaymentIntent.correlation_id.is_(None),
            ).update(
                {
                    PaymentIntent.correlation_id: correlation_id,
                    PaymentIntent.merchant_request_id: merchant_request_id,
                    PaymentIntent.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        except IntegrityError as e:
            # Unique index: the same reference already belongs to another intent
            raise ConflictError(
                f"Correlation id {correlation_id} already assigned to another payment",
                detail={"payment_id": intent_id},
            ) from e

        intent = self.get(intent_id)
        self.db.refresh(intent)
        if updated == 0:
            raise ConflictError(
                f"Payment {intent_id} already has correlation id {intent.correlation_id}",
                detail={"payment_id": intent_id},
            )
        return intent

    def mark_completed(self, intent_id: str, receipt_number: str, paid_at: Optional[datetime]) -> Transition:
        return self._transition(intent_id, COMPLETED, {
            PaymentIntent.receipt_number: receipt_number,
            PaymentIntent.paid_at: paid_at,
            PaymentIntent.failure_reason: None,
        })

    def mark_failed(self, intent_id: str, reason: str) -> Transition:
        return self._transition(intent_id, FAILED, {
            PaymentIntent.failure_reason: reason or "Payment failed",
            PaymentIntent.receipt_number: None,
        })

    def mark_cancelled(self, intent_id: str, reason: str = "Cancelled by user") -> Transition:
        return self._transition(intent_id, CANCELLED, {
            PaymentIntent.failure_reason: reason,
            PaymentIntent.receipt_number: None,
        })

    def _transition(self, intent_id: str, target: str, values: Dict[Any, Any]) -> Transition:
        """
        Move a pending intent to ``target``.

        A non-pending intent is returned unchanged with ``applied=False`` so that
        repeated callback delivery is a no-op rather than an error.
        """
        values = dict(values)
        values[PaymentIntent.status] = target
        values[PaymentIntent.updated_at] = utcnow()

        updated = self.db.query(PaymentIntent).filter(
            PaymentIntent.id == intent_id,
            PaymentIntent.status == PENDING,
        ).update(values, synchronize_session=False)

        intent = self.get(intent_id)
        self.db.refresh(intent)

        if updated:
            logger.info(f"Payment transitioned: payment_id={intent_id}, status={target}")
        else:
            logger.info(f"Payment already terminal: payment_id={intent_id}, status={intent.status}, requested={target}")
        return Transition(intent=intent, applied=bool(updated))


def is_abandoned(intent: PaymentIntent, now: Optional[datetime] = None) -> bool:
    """
    A pending intent older than the provider window will never receive a callback.

    Status projections report it as abandoned; nothing sweeps it.
    """
    if intent.status != PENDING:
        return False
    now = now or utcnow()
    return intent.created_at < now - timedelta(seconds=PAYMENT_PENDING_TIMEOUT_SECONDS)
