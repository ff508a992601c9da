# backend/tutoring/repositories/ledger_repository.py
"""
Ledger Repository for the tutoring core.

Owns the Balance row (lazily created, locked before any write) and the
append-only LedgerEntry log. Nothing here decides whether a mutation is
allowed; LedgerService does that between the locked read and the write.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional, Tuple, cast

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import ulid

from ..core.exceptions import NotFoundException, RepositoryException
from ..core.timezone_utils import utc_now
from ..database.session_utils import POSTGRESQL, SQLITE
from ..models.ledger import Balance, LedgerEntry
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class LedgerRepository(BaseRepository[LedgerEntry]):
    """Repository for balances and ledger entries."""

    def __init__(self, db: Session):
        super().__init__(db, LedgerEntry)

    # Balance

    def get_balance_amount(self, user_id: str) -> int:
        """Unlocked read; a missing row is a balance of 0."""
        try:
            amount = self.db.query(Balance.amount).filter(Balance.user_id == user_id).scalar()
            return int(amount or 0)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to read balance for %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to read balance") from exc

    def get_balance_amounts(self, user_ids: List[str]) -> dict[str, int]:
        """Unlocked bulk read; users without a row are reported with 0."""
        if not user_ids:
            return {}
        try:
            rows = (
                self.db.query(Balance.user_id, Balance.amount)
                .filter(Balance.user_id.in_(user_ids))
                .all()
            )
            amounts = {user_id: 0 for user_id in user_ids}
            amounts.update({row.user_id: int(row.amount) for row in rows})
            return amounts
        except SQLAlchemyError as exc:
            self.logger.error("Failed to read balances: %s", str(exc))
            raise RepositoryException("Failed to read balances") from exc

    def ensure_balance_row(self, user_id: str) -> None:
        """Insert a zero balance row unless one exists (safe against concurrent inserts)."""
        now = utc_now()
        values = {
            "id": str(ulid.ULID()),
            "user_id": user_id,
            "amount": 0,
            "created_at": now,
            "updated_at": now,
        }
        try:
            if self.dialect_name == POSTGRESQL:
                stmt = pg_insert(Balance).values(**values).on_conflict_do_nothing(
                    index_elements=["user_id"]
                )
                self.db.execute(stmt)
                return
            if self.dialect_name == SQLITE:
                stmt = sqlite_insert(Balance).values(**values).on_conflict_do_nothing(
                    index_elements=["user_id"]
                )
                self.db.execute(stmt)
                return

            if self.db.query(Balance.id).filter(Balance.user_id == user_id).first() is None:
                try:
                    with self.db.begin_nested():
                        self.db.add(Balance(**values))
                        self.db.flush()
                except IntegrityError:
                    # Another transaction created it first
                    pass
        except SQLAlchemyError as exc:
            self.logger.error("Failed to create balance row for %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to create balance row") from exc

    def get_balance_for_update(self, user_id: str) -> Balance:
        """
        Ensure the balance row exists, then lock it for the rest of the transaction.

        Every balance mutation must start here.
        """
        self.ensure_balance_row(user_id)
        try:
            return cast(
                Balance,
                self.db.query(Balance)
                .filter(Balance.user_id == user_id)
                .with_for_update()
                .populate_existing()
                .one(),
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to lock balance for %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to lock balance") from exc

    def set_balance(self, user_id: str, new_amount: int) -> None:
        """Write a new amount; the caller must hold the lock from get_balance_for_update."""
        try:
            result = self.db.execute(
                update(Balance)
                .where(Balance.user_id == user_id)
                .values(amount=new_amount, updated_at=utc_now())
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to write balance for %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to write balance") from exc
        if result.rowcount == 0:
            raise NotFoundException(
                "Balance not found", code="BALANCE_NOT_FOUND", details={"user_id": user_id}
            )

    # Entries

    def append_entry(
        self,
        *,
        user_id: str,
        delta: int,
        operation_type: str,
        balance_before: int,
        balance_after: int,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Insert an immutable ledger row numbered after the user's previous one.

        The caller must hold the balance lock, which makes the per-user
        sequence gap-free. A reused idempotency key surfaces as IntegrityError.
        """
        return self.create(
            user_id=user_id,
            sequence=self.next_sequence(user_id),
            delta=delta,
            operation_type=operation_type,
            balance_before=balance_before,
            balance_after=balance_after,
            reason=reason,
            actor_id=actor_id,
            booking_id=booking_id,
            idempotency_key=idempotency_key,
        )

    def next_sequence(self, user_id: str) -> int:
        try:
            last = (
                self.db.query(func.max(LedgerEntry.sequence))
                .filter(LedgerEntry.user_id == user_id)
                .scalar()
            )
            return int(last or 0) + 1
        except SQLAlchemyError as exc:
            self.logger.error("Failed to read ledger sequence for %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to read ledger sequence") from exc

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        try:
            return cast(
                Optional[LedgerEntry],
                self.db.query(LedgerEntry)
                .filter(LedgerEntry.idempotency_key == idempotency_key)
                .first(),
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to look up idempotency key: %s", str(exc))
            raise RepositoryException("Failed to look up idempotency key") from exc

    def get_history(
        self,
        *,
        user_id: Optional[str] = None,
        operation_type: Optional[str] = None,
        booking_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int,
        offset: int = 0,
    ) -> Tuple[List[LedgerEntry], int]:
        """Return one page of entries (newest first) and the total match count."""
        try:
            query = self.db.query(LedgerEntry)
            if user_id:
                query = query.filter(LedgerEntry.user_id == user_id)
            if operation_type:
                query = query.filter(LedgerEntry.operation_type == operation_type)
            if booking_id:
                query = query.filter(LedgerEntry.booking_id == booking_id)
            if start_date:
                query = query.filter(LedgerEntry.created_at >= start_date)
            if end_date:
                query = query.filter(LedgerEntry.created_at <= end_date)

            total = query.count()
            entries = (
                query.order_by(
                    LedgerEntry.created_at.desc(),
                    LedgerEntry.sequence.desc(),
                    LedgerEntry.id.desc(),
                )
                .offset(offset)
                .limit(limit)
                .all()
            )
            return cast(List[LedgerEntry], entries), int(total)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load ledger history: %s", str(exc))
            raise RepositoryException("Failed to load ledger history") from exc

    def get_entries_chronological(self, user_id: str) -> List[LedgerEntry]:
        """Entries of one user in the order they were written."""
        try:
            entries = (
                self.db.query(LedgerEntry)
                .filter(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.sequence.asc())
                .all()
            )
            return cast(List[LedgerEntry], entries)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load ledger entries: %s", str(exc))
            raise RepositoryException("Failed to load ledger entries") from exc


__all__ = ["LedgerRepository"]
