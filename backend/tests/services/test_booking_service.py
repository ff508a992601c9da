from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from tutoring.core.config import settings
from tutoring.core.enums import BookingStatus, LedgerOperationType
from tutoring.core.exceptions import (
    BookingNotActiveException,
    CancellationWindowClosedException,
    DuplicateBookingException,
    ForbiddenException,
    InsufficientFundsException,
    InvalidStateException,
    LessonFullException,
    LessonInPastException,
    LessonPreviouslyCancelledException,
    NotFoundException,
    ScheduleConflictException,
)
from tutoring.core.timezone_utils import utc_now
from tutoring.models.booking import Booking
from tutoring.models.ledger import LedgerEntry
from tutoring.models.lesson import Lesson
from tutoring.services.booking_service import BookingService
from tutoring.services.ledger_service import LedgerService


def _seats(db, lesson_id: str) -> int:
    db.expire_all()
    return db.get(Lesson, lesson_id).current_seats


class TestCreateBooking:
    def test_books_seat_and_debits(self, db, student, fund, make_lesson) -> None:
        fund(student, 5)
        lesson = make_lesson(credits_cost=2, max_seats=3)

        booking = BookingService(db).create_booking(student.id, lesson.id, actor_id=student.id)

        assert booking.status == BookingStatus.ACTIVE.value
        assert booking.credits_charged == 2
        assert _seats(db, lesson.id) == 1
        assert LedgerService(db).get_balance(student.id) == 3
        debit = (
            db.query(LedgerEntry)
            .filter(LedgerEntry.booking_id == booking.id)
            .one()
        )
        assert debit.operation_type == LedgerOperationType.BOOKING_DEBIT.value
        assert debit.delta == -2

    def test_free_lesson_writes_no_ledger_entry(self, db, student, make_lesson) -> None:
        lesson = make_lesson(credits_cost=0)

        booking = BookingService(db).create_booking(student.id, lesson.id, actor_id=student.id)

        assert booking.credits_charged == 0
        assert db.query(LedgerEntry).filter(LedgerEntry.user_id == student.id).count() == 0

    def test_duplicate_is_rejected(self, db, student, fund, make_lesson) -> None:
        fund(student, 5)
        lesson = make_lesson(max_seats=3)
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)

        with pytest.raises(DuplicateBookingException):
            service.create_booking(student.id, lesson.id, actor_id=student.id)

        assert _seats(db, lesson.id) == 1
        assert LedgerService(db).get_balance(student.id) == 4

    def test_insufficient_funds_leaves_no_trace(self, db, student, make_lesson) -> None:
        lesson = make_lesson(credits_cost=3)

        with pytest.raises(InsufficientFundsException) as exc_info:
            BookingService(db).create_booking(student.id, lesson.id, actor_id=student.id)

        assert exc_info.value.shortfalls[0]["missing"] == 3
        assert _seats(db, lesson.id) == 0
        assert db.query(Booking).count() == 0

    def test_full_lesson(self, db, students, fund, make_lesson) -> None:
        first, second = students[:2]
        fund(first, 1)
        fund(second, 1)
        lesson = make_lesson(max_seats=1)
        service = BookingService(db)
        service.create_booking(first.id, lesson.id, actor_id=first.id)

        with pytest.raises(LessonFullException):
            service.create_booking(second.id, lesson.id, actor_id=second.id)

        assert LedgerService(db).get_balance(second.id) == 1

    def test_student_overlap_across_teachers(
        self, db, student, fund, make_lesson, second_teacher
    ) -> None:
        fund(student, 5)
        morning = make_lesson(day=1, hour=9, hours=2)
        clash = make_lesson(day=1, hour=10, owner=second_teacher)
        service = BookingService(db)
        service.create_booking(student.id, morning.id, actor_id=student.id)

        with pytest.raises(ScheduleConflictException) as exc_info:
            service.create_booking(student.id, clash.id, actor_id=student.id)

        assert exc_info.value.details["scope"] == "student"
        assert exc_info.value.details["conflicting_lesson_id"] == morning.id

    def test_cannot_book_for_someone_else(self, db, students, make_lesson) -> None:
        lesson = make_lesson(credits_cost=0)

        with pytest.raises(ForbiddenException):
            BookingService(db).create_booking(students[0].id, lesson.id, actor_id=students[1].id)

    def test_admin_books_for_student(self, db, admin, student, fund, make_lesson) -> None:
        fund(student, 1)
        lesson = make_lesson()

        booking = BookingService(db).create_booking(student.id, lesson.id, actor_id=admin.id)

        assert booking.student_id == student.id

    def test_unknown_lesson(self, db, student) -> None:
        with pytest.raises(NotFoundException) as exc_info:
            BookingService(db).create_booking(
                student.id, "01HZZZZZZZZZZZZZZZZZZZZZZZ", actor_id=student.id
            )
        assert exc_info.value.code == "LESSON_NOT_FOUND"

    def test_started_lesson_only_for_admins(self, db, admin, student, fund, make_lesson) -> None:
        fund(student, 2)
        lesson = make_lesson(start=utc_now() - timedelta(minutes=30))
        service = BookingService(db)

        with pytest.raises(LessonInPastException):
            service.create_booking(student.id, lesson.id, actor_id=student.id)

        booking = service.create_booking(student.id, lesson.id, actor_id=admin.id)
        assert booking.is_active


class TestCancelBooking:
    def test_refunds_and_frees_seat(self, db, student, fund, make_lesson) -> None:
        fund(student, 5)
        lesson = make_lesson(credits_cost=2)
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)

        booking = service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.cancelled_by_id == student.id
        assert booking.rebooking_blocked is True
        assert _seats(db, lesson.id) == 0
        assert LedgerService(db).get_balance(student.id) == 5
        refund = (
            db.query(LedgerEntry)
            .filter(
                LedgerEntry.booking_id == booking.id,
                LedgerEntry.operation_type == LedgerOperationType.REFUND.value,
            )
            .one()
        )
        assert refund.delta == 2

    def test_refund_uses_amount_charged(self, db, student, fund, make_lesson) -> None:
        fund(student, 10)
        lesson = make_lesson(credits_cost=2)
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)
        db.execute(update(Lesson).where(Lesson.id == lesson.id).values(credits_cost=7))
        db.commit()

        service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        assert LedgerService(db).get_balance(student.id) == 10

    def test_cancel_twice(self, db, student, fund, make_lesson) -> None:
        fund(student, 1)
        lesson = make_lesson()
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)
        service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        with pytest.raises(BookingNotActiveException):
            service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        assert LedgerService(db).get_balance(student.id) == 1

    def test_cancel_without_booking(self, db, student, make_lesson) -> None:
        lesson = make_lesson()

        with pytest.raises(NotFoundException) as exc_info:
            BookingService(db).cancel_booking(student.id, lesson.id, actor_id=student.id)
        assert exc_info.value.code == "BOOKING_NOT_FOUND"

    def test_notice_window_binds_students_only(
        self, db, admin, student, fund, make_lesson
    ) -> None:
        fund(student, 1)
        lesson = make_lesson(start=utc_now() + timedelta(hours=3))
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)

        with pytest.raises(CancellationWindowClosedException):
            service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        booking = service.cancel_booking(student.id, lesson.id, actor_id=admin.id)
        assert booking.rebooking_blocked is False

    @pytest.mark.parametrize("by_admin", [True, False])
    def test_refund_ignores_balance_ceiling(
        self, db, admin, student, fund, make_lesson, monkeypatch, by_admin
    ) -> None:
        monkeypatch.setattr(settings, "max_balance", 20)
        fund(student, 20)
        lesson = make_lesson(credits_cost=3)
        service = BookingService(db)
        service.create_booking(student.id, lesson.id, actor_id=student.id)
        fund(student, 3)

        actor = admin if by_admin else student
        booking = service.cancel_booking(student.id, lesson.id, actor_id=actor.id)

        assert booking.status == BookingStatus.CANCELLED.value
        assert LedgerService(db).get_balance(student.id) == 23
        assert _seats(db, lesson.id) == 0
        assert LedgerService(db).reconcile(student.id).consistent is True


class TestRebooking:
    def test_student_cancel_blocks_self_rebooking(
        self, db, admin, student, fund, make_lesson
    ) -> None:
        fund(student, 3)
        lesson = make_lesson()
        service = BookingService(db)
        original = service.create_booking(student.id, lesson.id, actor_id=student.id)
        service.cancel_booking(student.id, lesson.id, actor_id=student.id)

        with pytest.raises(LessonPreviouslyCancelledException):
            service.create_booking(student.id, lesson.id, actor_id=student.id)
        with pytest.raises(LessonPreviouslyCancelledException):
            service.reactivate_booking(student.id, lesson.id, actor_id=student.id)

        restored = service.create_booking(student.id, lesson.id, actor_id=admin.id)
        assert restored.id == original.id
        assert restored.is_active
        assert _seats(db, lesson.id) == 1
        assert LedgerService(db).get_balance(student.id) == 2

    def test_admin_cancel_allows_self_rebooking(
        self, db, admin, student, fund, make_lesson
    ) -> None:
        fund(student, 3)
        lesson = make_lesson()
        service = BookingService(db)
        original = service.create_booking(student.id, lesson.id, actor_id=student.id)
        service.cancel_booking(student.id, lesson.id, actor_id=admin.id)

        restored = service.reactivate_booking(student.id, lesson.id, actor_id=student.id)

        assert restored.id == original.id
        assert restored.cancelled_at is None
        assert db.query(Booking).count() == 1

    def test_reactivate_missing_or_active(self, db, student, fund, make_lesson) -> None:
        fund(student, 1)
        lesson = make_lesson()
        service = BookingService(db)

        with pytest.raises(NotFoundException):
            service.reactivate_booking(student.id, lesson.id, actor_id=student.id)

        service.create_booking(student.id, lesson.id, actor_id=student.id)
        with pytest.raises(InvalidStateException) as exc_info:
            service.reactivate_booking(student.id, lesson.id, actor_id=student.id)
        assert exc_info.value.code == "BOOKING_ALREADY_ACTIVE"


def test_student_bookings_listing(db, admin, student, fund, make_lesson) -> None:
    fund(student, 5)
    monday = make_lesson(day=0)
    tuesday = make_lesson(day=1)
    service = BookingService(db)
    service.create_booking(student.id, monday.id, actor_id=student.id)
    service.create_booking(student.id, tuesday.id, actor_id=student.id)
    service.cancel_booking(student.id, tuesday.id, actor_id=admin.id)

    active = service.get_student_bookings(student.id)
    everything = service.get_student_bookings(student.id, active_only=False)

    assert [booking.lesson_id for booking in active] == [monday.id]
    assert len(everything) == 2


def test_get_booking_by_pair(db, student, fund, make_lesson) -> None:
    fund(student, 2)
    lesson = make_lesson()
    service = BookingService(db)
    created = service.create_booking(student.id, lesson.id, actor_id=student.id)

    assert service.get_booking(student.id, lesson.id).id == created.id
    with pytest.raises(NotFoundException) as exc_info:
        service.get_booking(student.id, "missing")
    assert exc_info.value.code == "BOOKING_NOT_FOUND"
