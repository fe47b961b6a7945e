"""
Pydantic schemas for subscription endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict


class PlanOut(BaseModel):
    id: str
    name: str
    price: int
    currency: str
    interval: str
    features: List[str]
    limitations: List[str] = []
    popular: bool = False


class PlansResponse(BaseModel):
    success: bool = True
    data: List[PlanOut]


class SubscriptionOut(BaseModel):
    """Current subscription view; id is None when the user never subscribed."""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    user_id: str
    plan: str
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    payment_id: Optional[str] = None
    subscription_status: str


class CurrentSubscriptionResponse(BaseModel):
    success: bool = True
    data: SubscriptionOut


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    message: str = "Subscription cancelled successfully"
