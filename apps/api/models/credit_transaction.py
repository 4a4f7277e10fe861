"""CreditTransaction model for the append-only credit ledger."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = (
    "purchase",
    "earned",
    "used",
    "spent",
    "refund",
    "bonus",
    "subscription_upgrade",
    "monthly_allocation",
    "admin_adjustment",
)

DEBIT_TYPES = ("used", "spent")

GRANT_TYPES = (
    "purchase",
    "earned",
    "refund",
    "bonus",
    "subscription_upgrade",
    "monthly_allocation",
    "admin_adjustment",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditTransaction(Base):
    """Immutable credit ledger entry. Positive amounts credit, negative debit."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        # NULL reference ids never collide, so only keyed grants are deduplicated.
        UniqueConstraint("user_id", "reference_id", name="uq_credit_transactions_user_reference"),
        Index("ix_credit_transactions_user_type_created", "user_id", "type", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    balance_after = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    user = relationship("User", back_populates="credit_transactions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "amount": self.amount,
            "description": self.description,
            "reference_id": self.reference_id,
            "balance_after": self.balance_after,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
