"""
Script to grant a subscription to a user without an M-Pesa payment.
Run: python -m scripts.grant_subscription user@example.com premium --months 3
"""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.errors import PaymentError
from app.core.plans import PAID_PLANS
from app.db.session import SessionLocal
from app.db.models.user import User
from app.services.subscription_service import grant_subscription
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def grant(email: str, plan: str, months: int) -> bool:
    """Grant ``plan`` for ``months`` to the user with ``email``."""
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email.lower()).first()
        if not user:
            logger.error(f"User {email} not found")
            return False

        logger.info(f"Found existing user: {email} (ID: {user.id})")
        subscription = grant_subscription(db, user.id, plan, months=months)
        logger.info(f"Granted {plan} to {email} until {subscription.end_date:%Y-%m-%d}")
        return True
    except PaymentError as e:
        logger.error(f"Grant failed: {e.message}")
        return False
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Grant a subscription without payment")
    parser.add_argument("email")
    parser.add_argument("plan", choices=PAID_PLANS)
    parser.add_argument("--months", type=int, default=1)
    args = parser.parse_args()

    if grant(args.email, args.plan, args.months):
        print(f"\n[SUCCESS] {args.email} now has an active {args.plan} subscription")
    else:
        print(f"\n[ERROR] Failed to grant subscription to {args.email}")
        sys.exit(1)
