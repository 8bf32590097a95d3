"""User model."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User account carrying the credit balance and trial state."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_users_credits_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    credits_balance = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    trial_credits_granted = Column(Boolean, nullable=False, default=False, server_default="0")
    trial_credits_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    signup_ip = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="user")
