from sqlalchemy import CheckConstraint, Column, String, DateTime, ForeignKey, Index
from app.db.base import Base, new_id, utcnow


class Subscription(Base):
    """
    A paid (or administratively granted) access period for one user.

    Rows are append-only history: a user's most recently created row is the
    authoritative one. Nothing enforces a single active row per user.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    plan = Column(String(50), nullable=False)  # basic | premium | institution
    status = Column(String(50), nullable=False, default="active")  # active | cancelled | expired

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)

    # Funding payment; null for administratively managed subscriptions
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_subscriptions_user_status", "user_id", "status"),
        CheckConstraint("status IN ('active', 'cancelled', 'expired')", name="ck_subscriptions_status"),
    )
