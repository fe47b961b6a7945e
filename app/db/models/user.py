from sqlalchemy import Column, String, DateTime
from app.db.base import Base, new_id, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(String(50), nullable=False, default="student")  # student | staff | admin
    school_name = Column(String(255), nullable=True)

    # Entitlement flag: written only by payment reconciliation and subscription cancellation
    subscription_status = Column(String(50), nullable=False, default="inactive", index=True)  # active | inactive | pending

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login = Column(DateTime, nullable=True)
