"""
Subscription read side and administrative grants.

Handles the "current subscription" projection and manual subscriptions that
are not funded by an M-Pesa payment.
"""
import logging
from typing import Dict, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.plans import BILLING_INTERVAL_MONTHS, is_paid_plan
from app.db.base import utcnow
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.db.session import unit_of_work

logger = logging.getLogger(__name__)


def get_latest_subscription(db: Session, user_id: str) -> Optional[Subscription]:
    """Most recently created subscription row (any status); the authoritative one."""
    return db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(Subscription.created_at.desc(), Subscription.start_date.desc()).first()


def get_current_subscription(db: Session, user: User) -> Dict:
    """
    Get the user's current subscription for display.

    Falls back to the free plan when the user never subscribed. An active row
    whose end date has passed is reported as expired without being modified.
    """
    subscription = get_latest_subscription(db, user.id)

    if not subscription:
        return {
            "id": None,
            "user_id": user.id,
            "plan": "free",
            "status": user.subscription_status or "inactive",
            "subscription_status": user.subscription_status or "inactive",
        }

    status = subscription.status
    if status == "active" and subscription.end_date and subscription.end_date < utcnow():
        status = "expired"

    return {
        "id": subscription.id,
        "user_id": user.id,
        "plan": subscription.plan,
        "status": status,
        "start_date": subscription.start_date,
        "end_date": subscription.end_date,
        "payment_id": subscription.payment_id,
        "subscription_status": user.subscription_status,
    }


def grant_subscription(db: Session, user_id: str, plan: str, months: int = BILLING_INTERVAL_MONTHS) -> Subscription:
    """
    Administratively grant an active subscription with no funding payment.

    Args:
        db: Database session
        user_id: User receiving the subscription
        plan: Paid plan id (basic, premium, institution)
        months: Length of the grant in calendar months

    Returns:
        The new subscription
    """
    if not is_paid_plan(plan):
        raise ValidationError(f"Unknown plan: {plan}")
    plan = plan.lower()
    if months < 1:
        raise ValidationError("Grant must last at least one month")

    with unit_of_work(db):
        user = db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")

        start = utcnow()
        subscription = Subscription(
            user_id=user.id,
            plan=plan,
            status="active",
            start_date=start,
            end_date=start + relativedelta(months=months),
            payment_id=None,
        )
        db.add(subscription)
        user.subscription_status = "active"

    logger.info(f"Subscription granted: subscription_id={subscription.id}, user_id={user_id}, plan={plan}, months={months}")
    return subscription
