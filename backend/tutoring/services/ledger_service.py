# backend/tutoring/services/ledger_service.py
"""
Ledger Service for the tutoring core.

Every balance mutation takes the same path inside one transaction:
lock the balance row, read it, compute the new amount, write it, append a
ledger entry carrying the before/after amounts observed under the lock.
Booking and template orchestration call ``debit``/``credit`` with
``use_transaction=False`` so the mutation joins their transaction.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import LedgerOperationType
from ..core.exceptions import (
    BalanceLimitExceededException,
    ConflictException,
    InsufficientFundsException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.operation_context import OperationContext, check_context
from ..database.errors import is_violation_of
from ..models.ledger import Balance, LedgerEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.ledger import (
    BalanceReconciliation,
    LedgerEntryResponse,
    LedgerHistoryFilter,
    LedgerHistoryPage,
)
from .base import BaseService

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_INDEX = "uq_ledger_entries_idempotency_key"


class LedgerService(BaseService):
    """Credit balances and their append-only ledger."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.ledger_repository = RepositoryFactory.create_ledger_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    # Reads

    @BaseService.measure_operation("get_balance")
    def get_balance(self, user_id: str) -> int:
        """Current balance; a user without a balance row has 0."""
        with self.read_snapshot():
            return self.ledger_repository.get_balance_amount(user_id)

    @BaseService.measure_operation("get_balances")
    def get_balances(self, user_ids: List[str]) -> Dict[str, int]:
        """Unlocked balances for several users (used for previews and pre-validation)."""
        with self.read_snapshot():
            return self.ledger_repository.get_balance_amounts(list(dict.fromkeys(user_ids)))

    # Locked primitives (caller owns the transaction)

    def lock_balance(self, user_id: str) -> Balance:
        """Create the balance row if needed and lock it until the caller's transaction ends."""
        return self.ledger_repository.get_balance_for_update(user_id)

    def set_balance(self, user_id: str, new_amount: int) -> None:
        """Write a balance the caller has locked with ``lock_balance``."""
        if new_amount < 0:
            raise ValidationException(
                "Balance cannot be negative",
                code="NEGATIVE_BALANCE",
                details={"user_id": user_id, "amount": new_amount},
            )
        self.ledger_repository.set_balance(user_id, new_amount)

    def append_entry(self, **fields) -> LedgerEntry:
        """Append a ledger row with before/after amounts observed under the lock."""
        try:
            return self.ledger_repository.append_entry(**fields)
        except IntegrityError as exc:
            if is_violation_of(exc, IDEMPOTENCY_KEY_INDEX):
                raise ConflictException(
                    "Idempotency key already used",
                    code="IDEMPOTENCY_KEY_REUSED",
                    details={"idempotency_key": fields.get("idempotency_key")},
                ) from exc
            raise ServiceException("Ledger entry rejected by the database") from exc

    @BaseService.measure_operation("apply_delta")
    def apply_delta(
        self,
        *,
        user_id: str,
        delta: int,
        operation_type: LedgerOperationType,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        enforce_ceiling: bool = False,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        """
        Lock, read, compute, write and log one balance mutation.

        Only top-ups and administrative refunds pass ``enforce_ceiling``; returning
        credits for a cancelled booking must always succeed.

        Raises:
            InsufficientFundsException: The balance would drop below 0
            BalanceLimitExceededException: The balance would exceed max_balance
                (only with ``enforce_ceiling``)
        """
        if delta == 0:
            raise ValidationException("Ledger delta must not be zero", code="ZERO_DELTA")

        def _apply() -> LedgerEntry:
            balance = self.lock_balance(user_id)
            before = int(balance.amount)
            after = before + delta

            if after < 0:
                raise InsufficientFundsException(
                    [
                        {
                            "user_id": user_id,
                            "balance": before,
                            "required": -delta,
                            "missing": -after,
                        }
                    ]
                )
            if enforce_ceiling and delta > 0 and after > settings.max_balance:
                raise BalanceLimitExceededException(user_id, before, delta, settings.max_balance)

            self.set_balance(user_id, after)
            entry = self.append_entry(
                user_id=user_id,
                delta=delta,
                operation_type=operation_type.value,
                balance_before=before,
                balance_after=after,
                reason=reason,
                actor_id=actor_id,
                booking_id=booking_id,
                idempotency_key=idempotency_key,
            )
            prometheus_metrics.record_ledger_entry(operation_type.value)
            self.log_operation(
                "ledger_apply_delta",
                user_id=user_id,
                delta=delta,
                operation_type=operation_type.value,
                balance_after=after,
            )
            return entry

        if use_transaction:
            with self.transaction(ctx):
                return _apply()
        check_context(ctx, "apply_delta")
        return _apply()

    def debit(
        self,
        *,
        user_id: str,
        amount: int,
        operation_type: LedgerOperationType,
        booking_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        return self.apply_delta(
            user_id=user_id,
            delta=-amount,
            operation_type=operation_type,
            booking_id=booking_id,
            actor_id=actor_id,
            reason=reason,
            ctx=ctx,
            use_transaction=use_transaction,
        )

    def credit(
        self,
        *,
        user_id: str,
        amount: int,
        operation_type: LedgerOperationType,
        booking_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        enforce_ceiling: bool = False,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        return self.apply_delta(
            user_id=user_id,
            delta=amount,
            operation_type=operation_type,
            booking_id=booking_id,
            actor_id=actor_id,
            reason=reason,
            idempotency_key=idempotency_key,
            enforce_ceiling=enforce_ceiling,
            ctx=ctx,
            use_transaction=use_transaction,
        )

    # Administrative operations

    def _validate_amount(self, amount: int) -> None:
        if amount < 1 or amount > settings.max_credit_operation:
            raise ValidationException(
                f"Amount must be between 1 and {settings.max_credit_operation}",
                code="INVALID_AMOUNT",
                details={"amount": amount},
            )

    def _require_user(self, user_id: str) -> None:
        if self.user_repository.get_active(user_id) is None:
            raise NotFoundException(
                "User not found", code="USER_NOT_FOUND", details={"user_id": user_id}
            )

    @BaseService.measure_operation("add_credits")
    def add_credits(
        self,
        user_id: str,
        amount: int,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LedgerEntry:
        """
        Top up a balance.

        With an ``idempotency_key`` (payment webhooks) a repeated call returns
        the entry recorded the first time and changes nothing.
        """
        self._validate_amount(amount)

        with self.transaction(ctx):
            self._require_user(user_id)
            if idempotency_key:
                # Serialize repeats of the same key on the balance lock
                self.lock_balance(user_id)
                existing = self.ledger_repository.get_by_idempotency_key(idempotency_key)
                if existing is not None:
                    if existing.user_id != user_id or existing.delta != amount:
                        raise ConflictException(
                            "Idempotency key already used for a different credit",
                            code="IDEMPOTENCY_KEY_REUSED",
                            details={"idempotency_key": idempotency_key},
                        )
                    self.logger.info(
                        "Duplicate credit ignored",
                        extra={"user_id": user_id, "idempotency_key": idempotency_key},
                    )
                    return existing

            return self.credit(
                user_id=user_id,
                amount=amount,
                operation_type=LedgerOperationType.ADD,
                actor_id=actor_id,
                reason=reason,
                idempotency_key=idempotency_key,
                enforce_ceiling=True,
                ctx=ctx,
                use_transaction=False,
            )

    @BaseService.measure_operation("deduct_credits")
    def deduct_credits(
        self,
        user_id: str,
        amount: int,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LedgerEntry:
        self._validate_amount(amount)
        with self.transaction(ctx):
            self._require_user(user_id)
            return self.debit(
                user_id=user_id,
                amount=amount,
                operation_type=LedgerOperationType.DEDUCT,
                actor_id=actor_id,
                reason=reason,
                ctx=ctx,
                use_transaction=False,
            )

    @BaseService.measure_operation("refund_credits")
    def refund_credits(
        self,
        user_id: str,
        amount: int,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        booking_id: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
    ) -> LedgerEntry:
        self._validate_amount(amount)
        with self.transaction(ctx):
            self._require_user(user_id)
            return self.credit(
                user_id=user_id,
                amount=amount,
                operation_type=LedgerOperationType.REFUND,
                actor_id=actor_id,
                reason=reason,
                booking_id=booking_id,
                enforce_ceiling=True,
                ctx=ctx,
                use_transaction=False,
            )

    # Reporting

    @BaseService.measure_operation("get_history")
    def get_history(self, filters: Optional[LedgerHistoryFilter] = None) -> LedgerHistoryPage:
        """One page of ledger entries, newest first, with the total match count."""
        filters = filters or LedgerHistoryFilter()
        limit = min(
            filters.limit or settings.ledger_history_default_limit,
            settings.ledger_history_max_limit,
        )
        operation_type = (
            LedgerOperationType(filters.operation_type).value if filters.operation_type else None
        )
        with self.read_snapshot():
            entries, total = self.ledger_repository.get_history(
                user_id=filters.user_id,
                operation_type=operation_type,
                booking_id=filters.booking_id,
                start_date=filters.start_date,
                end_date=filters.end_date,
                limit=limit,
                offset=filters.offset,
            )
            return LedgerHistoryPage(
                entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
                total=total,
                limit=limit,
                offset=filters.offset,
            )

    @BaseService.measure_operation("reconcile")
    def reconcile(self, user_id: str) -> BalanceReconciliation:
        """
        Recompute a balance from the ledger and audit every entry.

        An entry is reported as broken when its own arithmetic is wrong or
        when its ``balance_before`` does not continue the previous entry.
        """
        with self.read_snapshot():
            stored = self.ledger_repository.get_balance_amount(user_id)
            entries = self.ledger_repository.get_entries_chronological(user_id)

        computed = 0
        broken: List[str] = []
        for entry in entries:
            if entry.balance_after != entry.balance_before + entry.delta:
                broken.append(entry.id)
            elif entry.balance_before != computed:
                broken.append(entry.id)
            computed += entry.delta

        consistent = stored == computed and not broken
        if not consistent:
            self.logger.error(
                "Ledger mismatch",
                extra={
                    "user_id": user_id,
                    "stored": stored,
                    "computed": computed,
                    "broken_entries": len(broken),
                },
            )
        return BalanceReconciliation(
            user_id=user_id,
            stored=stored,
            computed=computed,
            entry_count=len(entries),
            consistent=consistent,
            broken_entry_ids=broken,
        )
