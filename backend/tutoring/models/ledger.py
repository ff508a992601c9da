# backend/tutoring/models/ledger.py
"""
Credit ledger models.

Balance holds the current amount per user (one row, created lazily);
LedgerEntry is the append-only log of every mutation with the balance
observed before and after it under the row lock.
"""

from typing import Any

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base


class Balance(Base):
    """Current credit balance of a user."""

    __tablename__ = "balances"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_balances_amount_non_negative"),
        Index("uq_balances_user_id", "user_id", unique=True),
    )

    def __repr__(self) -> str:
        return f"<Balance user={self.user_id} amount={self.amount}>"


class LedgerEntry(Base):
    """Immutable record of a single balance mutation."""

    __tablename__ = "ledger_entries"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    sequence = Column(Integer, nullable=False)  # 1, 2, ... per user, in write order
    delta = Column(Integer, nullable=False)
    operation_type = Column(String(32), nullable=False)
    reason = Column(Text, nullable=True)
    actor_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=True)
    balance_before = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    idempotency_key = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("delta <> 0", name="ck_ledger_entries_delta_non_zero"),
        CheckConstraint(
            "balance_after = balance_before + delta", name="ck_ledger_entries_balance_math"
        ),
        CheckConstraint(
            "operation_type IN ('add', 'deduct', 'booking_debit', 'template_debit', 'refund')",
            name="ck_ledger_entries_operation_type",
        ),
        Index("uq_ledger_entries_idempotency_key", "idempotency_key", unique=True),
        Index("uq_ledger_entries_user_sequence", "user_id", "sequence", unique=True),
        Index("ix_ledger_entries_user_created", "user_id", "created_at"),
        Index("ix_ledger_entries_booking_id", "booking_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "sequence": self.sequence,
            "delta": self.delta,
            "operation_type": self.operation_type,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "booking_id": self.booking_id,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.id}: user={self.user_id} {self.operation_type} "
            f"{self.balance_before}->{self.balance_after}>"
        )
