import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core import config
from app.core.auth_dependency import get_current_user_obj, get_db
from app.core.plans import list_plans
from app.db.models.user import User
from app.schemas.subscription import (
    CancelSubscriptionResponse,
    CurrentSubscriptionResponse,
    PlansResponse,
    SubscriptionOut,
)
from app.api.routes.payments import get_payment_provider
from app.services.mpesa_client import MpesaClient
from app.services.payment_reconciler import PaymentReconciler
from app.services.subscription_service import get_current_subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["Subscriptions"])


@router.get("/plans", response_model=PlansResponse)
def get_plans():
    return {"success": True, "data": list_plans(config.PAYMENT_CURRENCY)}


@router.get("/current", response_model=CurrentSubscriptionResponse)
def current_subscription(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
):
    """Most recent subscription of the authenticated user, or the free plan."""
    data = get_current_subscription(db, user)
    return CurrentSubscriptionResponse(data=SubscriptionOut(**data))


@router.post("/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    provider: MpesaClient = Depends(get_payment_provider),
):
    """Cancel the latest active subscription and revoke paid access."""
    PaymentReconciler(db, provider).cancel_subscription(user)
    return CancelSubscriptionResponse()
