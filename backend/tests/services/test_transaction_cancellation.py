"""A cancelled or expired OperationContext aborts the use case and rolls it back."""

from __future__ import annotations

import time

import pytest

from tutoring.core.exceptions import OperationCancelledException
from tutoring.core.operation_context import OperationContext
from tutoring.models.booking import Booking
from tutoring.models.lesson import Lesson
from tutoring.services.booking_service import BookingService
from tutoring.services.ledger_service import LedgerService


def test_cancelled_context_is_rejected_up_front(db, student) -> None:
    ctx = OperationContext(name="top-up")
    ctx.cancel()

    with pytest.raises(OperationCancelledException) as exc_info:
        LedgerService(db).add_credits(student.id, 10, ctx=ctx)

    assert exc_info.value.details["reason"] == "cancelled"
    assert LedgerService(db).get_balance(student.id) == 0


def test_expired_deadline(db, student) -> None:
    ctx = OperationContext(deadline_seconds=0.001)
    time.sleep(0.01)

    with pytest.raises(OperationCancelledException) as exc_info:
        LedgerService(db).add_credits(student.id, 10, ctx=ctx)

    assert exc_info.value.details["reason"] == "deadline exceeded"


def test_cancel_before_commit_rolls_back_booking(db, student, fund, make_lesson) -> None:
    fund(student, 5)
    lesson = make_lesson(credits_cost=2)
    ctx = OperationContext(name="booking")
    service = BookingService(db)
    ledger = service.ledger_service
    original_debit = ledger.debit

    def _debit_then_cancel(**kwargs):
        entry = original_debit(**kwargs)
        ctx.cancel()
        return entry

    ledger.debit = _debit_then_cancel

    with pytest.raises(OperationCancelledException):
        service.create_booking(student.id, lesson.id, actor_id=student.id, ctx=ctx)

    db.expire_all()
    assert db.query(Booking).count() == 0
    assert db.get(Lesson, lesson.id).current_seats == 0
    assert LedgerService(db).get_balance(student.id) == 5


def test_live_context_passes(db, student) -> None:
    ctx = OperationContext(deadline_seconds=30, name="generous")

    entry = LedgerService(db).add_credits(student.id, 10, ctx=ctx)

    assert entry.balance_after == 10
    assert ctx.remaining_seconds() > 0
