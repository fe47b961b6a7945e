"""
Subscription plan catalogue.

Single source of truth for purchasable plans, their monthly price and features.
"""
from typing import Dict, List, Any, Optional

# Plans that can be bought through M-Pesa
PAID_PLANS: List[str] = [
    "basic",
    "premium",
    "institution",
]

BILLING_INTERVAL_MONTHS = 1

PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free",
        "price": 0,
        "interval": "lifetime",
        "features": [
            "Access to basic resources",
            "Limited downloads (5 per month)",
            "Community support",
            "Basic search filters",
        ],
        "limitations": [
            "No premium resources",
            "Limited download quota",
            "No priority support",
        ],
    },
    "basic": {
        "name": "Basic",
        "price": 500,
        "interval": "month",
        "features": [
            "Access to all basic resources",
            "Unlimited downloads",
            "Email support",
            "Advanced search filters",
            "Resource bookmarking",
        ],
    },
    "premium": {
        "name": "Premium",
        "price": 1200,
        "interval": "month",
        "popular": True,
        "features": [
            "Access to ALL resources",
            "Premium exclusive content",
            "Priority support",
            "Bulk download options",
            "Custom resource requests",
            "Early access to new materials",
        ],
    },
    "institution": {
        "name": "Institution",
        "price": 5000,
        "interval": "month",
        "features": [
            "Everything in Premium",
            "Multi-user access (up to 50 users)",
            "Institution branding",
            "Dedicated account manager",
            "Custom integrations",
            "Training sessions",
            "Analytics dashboard",
        ],
    },
}


def is_paid_plan(plan_id: Optional[str]) -> bool:
    return bool(plan_id) and plan_id.lower() in PAID_PLANS


def get_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    """Get catalogue entry for a plan id, or None if unknown."""
    if not plan_id:
        return None
    return PLANS.get(plan_id.lower())


def list_plans(currency: str) -> List[Dict[str, Any]]:
    """All plans in display order, each tagged with its id and currency."""
    return [
        {"id": plan_id, "currency": currency, "popular": False, "limitations": [], **plan}
        for plan_id, plan in PLANS.items()
    ]
