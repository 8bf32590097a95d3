"""CreditLedger model for prepaid usage accounting."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = ("trial_grant", "purchase", "usage", "refund", "admin_adjustment", "expiration")
STATUS_RESERVED = "reserved"
STATUS_COMPLETED = "completed"
STATUS_REFUNDED = "refunded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger(Base):
    """Append-only credit ledger entry.

    Entries in ``reserved`` status hold funds already subtracted from the
    balance; settlement moves them to ``completed`` or ``refunded`` once.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
        Index("ix_credit_ledger_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)
    transaction_type = Column(String, nullable=False)
    service_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default=STATUS_COMPLETED)
    description = Column(String, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="credit_entries")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": float(self.amount),
            "balance_after": float(self.balance_after),
            "transaction_type": self.transaction_type,
            "service_type": self.service_type,
            "reference_id": self.reference_id,
            "status": self.status,
            "description": self.description,
            "metadata": self.metadata_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
