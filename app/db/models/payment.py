from sqlalchemy import CheckConstraint, Column, String, DateTime, ForeignKey, Numeric, Text, Index
from app.db.base import Base, new_id, utcnow


class PaymentIntent(Base):
    """
    A recorded attempt to collect payment through M-Pesa STK push.

    State machine: pending -> completed | failed | cancelled. Terminal states
    never change. Once terminal, exactly one of receipt_number / failure_reason
    is set. correlation_id (the provider CheckoutRequestID) is written once.
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="KSH")
    plan = Column(String(50), nullable=False)
    phone_number = Column(String(20), nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # pending | completed | failed | cancelled

    correlation_id = Column(String(255), unique=True, index=True, nullable=True)  # CheckoutRequestID
    merchant_request_id = Column(String(255), nullable=True)

    receipt_number = Column(String(255), nullable=True)  # MpesaReceiptNumber
    paid_at = Column(DateTime, nullable=True)  # provider TransactionDate
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_payments_user_created", "user_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint("status IN ('pending', 'completed', 'failed', 'cancelled')", name="ck_payments_status"),
    )


PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
