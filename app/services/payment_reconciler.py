"""
Payment reconciler.

Drives a payment intent from creation through the M-Pesa STK push to its
terminal state, and activates the funded subscription exactly once.

Flow:
    initiate()                  -> intent pending, correlation id assigned
    handle_provider_callback()  -> completed (+ subscription, flag active) | failed
    cancel_subscription()       -> latest active subscription cancelled, flag inactive
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm import Session

from app.core.config import MPESA_ACCOUNT_PREFIX
from app.core.errors import (
    CallbackParseError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ReconciliationError,
    ValidationError,
)
from app.core.logging_config import mask_phone
from app.core.plans import BILLING_INTERVAL_MONTHS, is_paid_plan
from app.db.base import utcnow
from app.db.models.payment import PaymentIntent, PENDING, COMPLETED
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.db.session import unit_of_work
from app.schemas.payment import StkCallback, StkCallbackEnvelope
from app.services.mpesa_client import MpesaClient
from app.services.payment_store import PaymentIntentStore

logger = logging.getLogger(__name__)

TRANSACTION_DATE_FORMAT = "%Y%m%d%H%M%S"


class CallbackOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"
    # Money collected for an intent already failed or cancelled locally
    UNMATCHED_PAYMENT = "unmatched_payment"


@dataclass
class InitiationResult:
    intent: PaymentIntent
    checkout_request_id: str
    merchant_request_id: Optional[str]


@dataclass
class PaymentDetails:
    """Proof of payment extracted from a successful callback."""
    receipt_number: str
    paid_at: datetime
    phone_number: str
    amount: Optional[Any] = None


def parse_callback(raw: Any) -> StkCallback:
    """
    Validate the provider envelope.

    Raises:
        CallbackParseError: envelope is missing required fields
    """
    if not isinstance(raw, dict):
        raise CallbackParseError("Callback body must be a JSON object")
    try:
        return StkCallbackEnvelope.model_validate(raw).callback
    except SchemaValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise CallbackParseError("Malformed M-Pesa callback", detail=errors) from e


def parse_transaction_date(value: Any) -> datetime:
    try:
        return datetime.strptime(str(value), TRANSACTION_DATE_FORMAT)
    except (TypeError, ValueError) as e:
        raise CallbackParseError(f"Invalid TransactionDate: {value}") from e


def extract_payment_details(callback: StkCallback) -> PaymentDetails:
    """
    Pull receipt, transaction date and phone number out of the metadata items.

    Raises:
        CallbackParseError: a required item is missing
    """
    metadata = callback.callback_metadata
    if metadata is None:
        raise CallbackParseError("Successful callback without CallbackMetadata")

    values = {name: metadata.get(name) for name in ("MpesaReceiptNumber", "TransactionDate", "PhoneNumber")}
    missing = [name for name, value in values.items() if value in (None, "")]
    if missing:
        raise CallbackParseError(f"Callback metadata missing: {', '.join(missing)}")

    return PaymentDetails(
        receipt_number=str(values["MpesaReceiptNumber"]),
        paid_at=parse_transaction_date(values["TransactionDate"]),
        phone_number=str(values["PhoneNumber"]),
        amount=metadata.get("Amount"),
    )


class PaymentReconciler:
    def __init__(self, db: Session, provider: MpesaClient):
        self.db = db
        self.provider = provider
        self.store = PaymentIntentStore(db)

    # ============================================
    # INITIATION
    # ============================================

    def initiate(self, owner: User, amount: Decimal, plan: str, phone_number: str) -> InitiationResult:
        """
        Create a pending intent and ask the provider to push a payment prompt.

        Raises:
            ValidationError: bad plan or amount, nothing written
            ProviderError: provider rejected or unreachable; intent marked failed
            ConflictError: correlation id already assigned (corrupted state)
        """
        if not is_paid_plan(plan):
            raise ValidationError(f"Unknown plan: {plan}")
        plan = plan.lower()
        if amount is None or Decimal(amount) <= 0:
            raise ValidationError("Amount must be positive")

        with unit_of_work(self.db):
            intent = self.store.create(owner.id, Decimal(amount), plan, phone_number)
        intent_id = intent.id

        try:
            result = self.provider.stk_push(
                amount=Decimal(amount),
                phone_number=phone_number,
                account_reference=f"{MPESA_ACCOUNT_PREFIX}-{intent_id}",
                description=f"Elimufiti {plan} subscription",
            )
        except ProviderError as e:
            logger.error(f"Payment initiation failed: payment_id={intent_id}, error={e.message}")
            with unit_of_work(self.db):
                self.store.mark_failed(intent_id, e.message)
            raise

        try:
            with unit_of_work(self.db):
                intent = self.store.assign_correlation_id(
                    intent_id, result.checkout_request_id, result.merchant_request_id
                )
        except ConflictError:
            logger.critical(
                f"Correlation id already assigned: payment_id={intent_id}, "
                f"checkout_request_id={result.checkout_request_id}"
            )
            raise

        logger.info(
            f"Payment initiated: payment_id={intent_id}, user_id={owner.id}, "
            f"checkout_request_id={result.checkout_request_id}, phone={mask_phone(phone_number)}"
        )
        return InitiationResult(
            intent=intent,
            checkout_request_id=result.checkout_request_id,
            merchant_request_id=result.merchant_request_id,
        )

    # ============================================
    # CALLBACK
    # ============================================

    def handle_provider_callback(self, raw: Dict[str, Any]) -> CallbackOutcome:
        """
        Apply a provider result notification.

        Unknown and already-terminal intents are acknowledged without any write,
        so redelivery of the same notification is harmless. A successful payment
        for an intent that already failed or was cancelled is acknowledged too,
        but logged as CRITICAL for manual follow-up.

        Raises:
            CallbackParseError: notification is malformed (provider should retry)
            ReconciliationError: the unit of work failed and was rolled back
        """
        callback = parse_callback(raw)
        checkout_request_id = callback.checkout_request_id

        intent = self.store.find_by_correlation_id(checkout_request_id)
        if intent is None:
            logger.warning(f"Callback for unknown checkout_request_id={checkout_request_id}, ignoring")
            return CallbackOutcome.UNKNOWN

        if intent.status != PENDING:
            if callback.is_success and intent.status != COMPLETED:
                return self._flag_unmatched_payment(intent, extract_payment_details(callback))
            logger.info(
                f"Duplicate callback: payment_id={intent.id}, status={intent.status}, "
                f"checkout_request_id={checkout_request_id}"
            )
            return CallbackOutcome.DUPLICATE

        if callback.is_success:
            details = extract_payment_details(callback)
            return self._complete(intent, details)

        return self._fail(intent, callback)

    def _complete(self, intent: PaymentIntent, details: PaymentDetails) -> CallbackOutcome:
        intent_id = intent.id
        subscription = None
        try:
            with unit_of_work(self.db):
                transition = self.store.mark_completed(intent_id, details.receipt_number, details.paid_at)
                if transition.applied:
                    subscription = self._activate_subscription(transition.intent)
        except Exception as e:
            logger.exception(f"Reconciliation failed, payment left pending: payment_id={intent_id}")
            raise ReconciliationError(
                "Callback processing failed",
                detail={"payment_id": intent_id},
            ) from e

        if not transition.applied:
            if transition.intent.status != COMPLETED:
                return self._flag_unmatched_payment(transition.intent, details)
            logger.info(f"Concurrent callback already settled payment_id={intent_id}")
            return CallbackOutcome.DUPLICATE

        logger.info(
            f"Payment completed: payment_id={intent_id}, receipt={details.receipt_number}, "
            f"subscription_id={subscription.id}, phone={mask_phone(details.phone_number)}"
        )
        return CallbackOutcome.COMPLETED

    def _fail(self, intent: PaymentIntent, callback: StkCallback) -> CallbackOutcome:
        reason = callback.result_desc or f"M-Pesa result code {callback.result_code}"
        try:
            with unit_of_work(self.db):
                transition = self.store.mark_failed(intent.id, reason)
        except Exception as e:
            logger.exception(f"Failed to record payment failure: payment_id={intent.id}")
            raise ReconciliationError("Callback processing failed", detail={"payment_id": intent.id}) from e

        if not transition.applied:
            return CallbackOutcome.DUPLICATE
        logger.info(f"Payment failed: payment_id={intent.id}, code={callback.result_code}, reason={reason}")
        return CallbackOutcome.FAILED

    def _flag_unmatched_payment(self, intent: PaymentIntent, details: PaymentDetails) -> CallbackOutcome:
        """
        The payer was charged but the intent is already failed or cancelled.

        Terminal states never change, so nothing is written; the receipt is
        logged for a refund or manual activation.
        """
        logger.critical(
            f"Payment collected for {intent.status} payment, manual follow-up required: "
            f"payment_id={intent.id}, user_id={intent.user_id}, receipt={details.receipt_number}, "
            f"amount={details.amount if details.amount is not None else intent.amount}, "
            f"paid_at={details.paid_at:%Y-%m-%d %H:%M:%S}, phone={mask_phone(details.phone_number)}"
        )
        return CallbackOutcome.UNMATCHED_PAYMENT

    def _activate_subscription(self, intent: PaymentIntent) -> Subscription:
        """Create the funded subscription and flip the owner's entitlement flag. Caller owns the transaction."""
        user = self.db.get(User, intent.user_id)
        if user is None:
            raise NotFoundError(f"Owner {intent.user_id} of payment {intent.id} not found")

        start = utcnow()
        subscription = Subscription(
            user_id=intent.user_id,
            plan=intent.plan,
            status="active",
            start_date=start,
            end_date=start + relativedelta(months=BILLING_INTERVAL_MONTHS),
            payment_id=intent.id,
        )
        self.db.add(subscription)
        user.subscription_status = "active"
        self.db.flush()
        return subscription

    # ============================================
    # USER CANCELLATION
    # ============================================

    def cancel_payment(self, owner: User, intent_id: str) -> PaymentIntent:
        """Abort the owner's own pending intent. Terminal intents come back unchanged."""
        with unit_of_work(self.db):
            intent = self.store.get_for_owner(intent_id, owner.id)
            transition = self.store.mark_cancelled(intent.id)
        if transition.applied:
            logger.info(f"Payment cancelled by user: payment_id={intent_id}, user_id={owner.id}")
        return transition.intent

    def cancel_subscription(self, owner: User) -> Subscription:
        """
        Cancel the owner's most recently created active subscription.

        Raises:
            NotFoundError: the owner has no active subscription
        """
        with unit_of_work(self.db):
            subscription = self.db.query(Subscription).filter(
                Subscription.user_id == owner.id,
                Subscription.status == "active",
            ).order_by(Subscription.created_at.desc(), Subscription.start_date.desc()).first()

            if not subscription:
                raise NotFoundError("No active subscription found")

            subscription.status = "cancelled"
            user = self.db.get(User, owner.id)
            user.subscription_status = "inactive"

        logger.info(f"Subscription cancelled: subscription_id={subscription.id}, user_id={owner.id}")
        return subscription
