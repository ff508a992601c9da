# backend/tutoring/services/booking_service.py
"""
Booking Service for the tutoring core.

Drives the booking lifecycle for a (student, lesson) pair:

    (none) --create--> active --cancel--> cancelled --reactivate--> active

A swap cancels one active booking and activates another for the same
student in a single transaction.

Each transition runs in one transaction and takes its locks in a fixed
order: the booking pair row, then the lesson seat counter (conditional
update), then the student's balance row. A swap locks both lesson rows in
id order first.
"""

from __future__ import annotations

from datetime import timedelta
import logging
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import LedgerOperationType
from ..core.exceptions import (
    BookingNotActiveException,
    CancellationWindowClosedException,
    DomainException,
    DuplicateBookingException,
    ForbiddenException,
    InvalidStateException,
    LessonInPastException,
    LessonPreviouslyCancelledException,
    NotFoundException,
    ScheduleConflictException,
    ServiceException,
    ValidationException,
)
from ..core.operation_context import OperationContext, check_context
from ..core.timezone_utils import as_utc, utc_now
from ..database.errors import is_violation_of
from ..models.booking import BOOKING_UNIQUE_CONSTRAINT, Booking
from ..models.lesson import Lesson
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .capacity_service import CapacityService
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BookingService(BaseService):
    """Create, cancel, reactivate and swap bookings."""

    def __init__(
        self,
        db: Session,
        capacity_service: Optional[CapacityService] = None,
        ledger_service: Optional[LedgerService] = None,
    ):
        super().__init__(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.capacity_service = capacity_service or CapacityService(db)
        self.ledger_service = ledger_service or LedgerService(db)

    def _run_transition(
        self,
        transition: str,
        fn: Callable[[], T],
        ctx: Optional[OperationContext],
        use_transaction: bool,
    ) -> T:
        try:
            if use_transaction:
                with self.transaction(ctx):
                    result = fn()
            else:
                check_context(ctx, transition)
                result = fn()
        except DomainException as exc:
            prometheus_metrics.record_booking_transition(transition, exc.code)
            raise
        prometheus_metrics.record_booking_transition(transition, "ok")
        return result

    # Lookups

    def _require_user(self, user_id: str, label: str) -> User:
        user = self.user_repository.get_active(user_id)
        if user is None:
            raise NotFoundException(
                f"{label.capitalize()} not found",
                code=f"{label.upper()}_NOT_FOUND",
                details={f"{label}_id": user_id},
            )
        return user

    def _require_lesson(self, lesson_id: str) -> Lesson:
        lesson = self.lesson_repository.get_lesson(lesson_id)
        if lesson is None:
            raise NotFoundException(
                "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
            )
        return lesson

    @staticmethod
    def _check_acting_for(actor: User, student_id: str) -> None:
        if not actor.is_admin and actor.id != student_id:
            raise ForbiddenException(
                "You can only manage your own bookings",
                code="BOOKING_FORBIDDEN",
                details={"actor_id": actor.id, "student_id": student_id},
            )

    # Shared activation path

    def _activate(
        self,
        *,
        student_id: str,
        lesson: Lesson,
        actor: User,
        existing: Optional[Booking],
        ledger_operation: LedgerOperationType = LedgerOperationType.BOOKING_DEBIT,
    ) -> Booking:
        """Seat, insert or reactivate, then charge. Caller holds the pair row lock."""
        if not actor.is_admin and as_utc(lesson.start_time) <= utc_now():
            raise LessonInPastException(lesson.id)

        overlap = self.booking_repository.find_student_overlap(
            student_id, lesson.start_time, lesson.end_time, exclude_lesson_id=lesson.id
        )
        if overlap is not None:
            raise ScheduleConflictException(
                "Student already has a lesson at this time",
                scope="student",
                details={"student_id": student_id, "conflicting_lesson_id": overlap.lesson_id},
            )

        self.capacity_service.increment_seats(lesson.id, use_transaction=False)

        cost = int(lesson.credits_cost or 0)
        if existing is None:
            try:
                booking = self.booking_repository.create_booking(
                    student_id=student_id, lesson_id=lesson.id, credits_charged=cost
                )
            except IntegrityError as exc:
                if is_violation_of(exc, BOOKING_UNIQUE_CONSTRAINT):
                    raise DuplicateBookingException(student_id, lesson.id) from exc
                raise ServiceException("Booking rejected by the database") from exc
        else:
            if not self.booking_repository.mark_active(existing.id, credits_charged=cost):
                raise InvalidStateException(
                    "Booking is already active",
                    code="BOOKING_ALREADY_ACTIVE",
                    details={"booking_id": existing.id},
                )
            self.booking_repository.refresh(existing)
            booking = existing

        if cost > 0:
            self.ledger_service.debit(
                user_id=student_id,
                amount=cost,
                operation_type=ledger_operation,
                booking_id=booking.id,
                actor_id=actor.id,
                reason=f"Booking for lesson {lesson.id}",
                use_transaction=False,
            )
        return booking

    # Shared cancellation path

    def _check_notice_window(self, booking: Booking, lesson_id: str) -> None:
        lesson = self.lesson_repository.get_lesson(lesson_id, include_deleted=True)
        notice = timedelta(hours=settings.cancellation_notice_hours)
        if lesson is not None and as_utc(lesson.start_time) - utc_now() < notice:
            raise CancellationWindowClosedException(booking.id, settings.cancellation_notice_hours)

    def _deactivate(
        self,
        booking: Booking,
        *,
        actor: User,
        block_rebooking: bool,
        reason: str,
    ) -> int:
        """Cancel, release the seat and refund the snapshot. Caller holds the pair row lock."""
        if not self.booking_repository.mark_cancelled(
            booking.id, cancelled_by_id=actor.id, block_rebooking=block_rebooking
        ):
            raise BookingNotActiveException(booking.id)

        self.capacity_service.decrement_seats(booking.lesson_id, use_transaction=False)

        refund = int(booking.credits_charged or 0)
        if refund > 0:
            self.ledger_service.credit(
                user_id=booking.student_id,
                amount=refund,
                operation_type=LedgerOperationType.REFUND,
                booking_id=booking.id,
                actor_id=actor.id,
                reason=reason,
                use_transaction=False,
            )
        self.booking_repository.refresh(booking)
        return refund

    def _require_active_pair(self, student_id: str, lesson_id: str) -> Booking:
        booking = self.booking_repository.get_by_pair(student_id, lesson_id, for_update=True)
        if booking is None:
            raise NotFoundException(
                "Booking not found",
                code="BOOKING_NOT_FOUND",
                details={"student_id": student_id, "lesson_id": lesson_id},
            )
        if not booking.is_active:
            raise BookingNotActiveException(booking.id, booking.status)
        return booking

    # Transitions

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        student_id: str,
        lesson_id: str,
        *,
        actor_id: str,
        ledger_operation: LedgerOperationType = LedgerOperationType.BOOKING_DEBIT,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Booking:
        """
        Book a seat for a student.

        A cancelled booking for the same pair is reactivated in place.

        Raises:
            NotFoundException: Student, actor or lesson missing
            DuplicateBookingException: The pair already has an active booking
            LessonFullException: No seat left
            ScheduleConflictException: The student has an overlapping booking
            LessonPreviouslyCancelledException: The student cancelled this lesson before
            InsufficientFundsException: Balance below the lesson cost
        """

        def _create() -> Booking:
            actor = self._require_user(actor_id, "actor")
            self._check_acting_for(actor, student_id)
            self._require_user(student_id, "student")
            lesson = self._require_lesson(lesson_id)

            existing = self.booking_repository.get_by_pair(student_id, lesson_id, for_update=True)
            if existing is not None:
                if existing.is_active:
                    raise DuplicateBookingException(student_id, lesson_id)
                if existing.rebooking_blocked and not actor.is_admin:
                    raise LessonPreviouslyCancelledException(student_id, lesson_id)

            booking = self._activate(
                student_id=student_id,
                lesson=lesson,
                actor=actor,
                existing=existing,
                ledger_operation=ledger_operation,
            )
            self.log_operation(
                "create_booking",
                booking_id=booking.id,
                student_id=student_id,
                lesson_id=lesson_id,
                reactivated=existing is not None,
            )
            return booking

        return self._run_transition("create", _create, ctx, use_transaction)

    @BaseService.measure_operation("reactivate_booking")
    def reactivate_booking(
        self,
        student_id: str,
        lesson_id: str,
        *,
        actor_id: str,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Booking:
        """Move a cancelled booking back to active with the same checks as a create."""

        def _reactivate() -> Booking:
            actor = self._require_user(actor_id, "actor")
            self._check_acting_for(actor, student_id)

            existing = self.booking_repository.get_by_pair(student_id, lesson_id, for_update=True)
            if existing is None:
                raise NotFoundException(
                    "Booking not found",
                    code="BOOKING_NOT_FOUND",
                    details={"student_id": student_id, "lesson_id": lesson_id},
                )
            if existing.is_active:
                raise InvalidStateException(
                    "Booking is already active",
                    code="BOOKING_ALREADY_ACTIVE",
                    details={"booking_id": existing.id},
                )
            if existing.rebooking_blocked and not actor.is_admin:
                raise LessonPreviouslyCancelledException(student_id, lesson_id)

            lesson = self._require_lesson(lesson_id)
            booking = self._activate(
                student_id=student_id, lesson=lesson, actor=actor, existing=existing
            )
            self.log_operation("reactivate_booking", booking_id=booking.id, lesson_id=lesson_id)
            return booking

        return self._run_transition("reactivate", _reactivate, ctx, use_transaction)

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        student_id: str,
        lesson_id: str,
        *,
        actor_id: str,
        reason: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Booking:
        """
        Cancel an active booking, release its seat and refund what it cost.

        Students may only cancel their own bookings outside the notice window;
        doing so blocks them from rebooking the lesson themselves. Admins
        bypass both rules.
        """

        def _cancel() -> Booking:
            actor = self._require_user(actor_id, "actor")
            self._check_acting_for(actor, student_id)

            booking = self._require_active_pair(student_id, lesson_id)
            if not actor.is_admin:
                self._check_notice_window(booking, lesson_id)

            refund = self._deactivate(
                booking,
                actor=actor,
                block_rebooking=not actor.is_admin,
                reason=reason or f"Cancelled booking for lesson {lesson_id}",
            )
            self.log_operation(
                "cancel_booking",
                booking_id=booking.id,
                lesson_id=lesson_id,
                refunded=refund,
            )
            return booking

        return self._run_transition("cancel", _cancel, ctx, use_transaction)

    @BaseService.measure_operation("swap_booking")
    def swap_booking(
        self,
        student_id: str,
        old_lesson_id: str,
        new_lesson_id: str,
        *,
        actor_id: str,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Booking:
        """
        Move a student's active booking from one lesson to another.

        Both lessons are locked in id order before either booking is touched,
        so two students swapping in opposite directions serialize instead of
        deadlocking. The old booking is cancelled and refunded, then the new
        one is charged at the new lesson's price. Any failure leaves both
        bookings, both seat counters and the balance as they were.

        The notice window applies to the old lesson for non-admins, but a
        swap does not block the student from rebooking the old lesson.

        Raises:
            ValidationException: Both lesson ids are the same
            NotFoundException: No booking for the old lesson, or the new lesson is missing
            BookingNotActiveException: The old booking is cancelled
            LessonFullException: No seat left on the new lesson
            InsufficientFundsException: The refund does not cover the new price
        """
        def _swap() -> Booking:
            if old_lesson_id == new_lesson_id:
                raise ValidationException(
                    "Cannot swap a booking onto the same lesson",
                    code="SAME_LESSON",
                    details={"lesson_id": old_lesson_id},
                )
            actor = self._require_user(actor_id, "actor")
            self._check_acting_for(actor, student_id)
            self._require_user(student_id, "student")

            self.lesson_repository.lock_lessons([old_lesson_id, new_lesson_id])
            new_lesson = self._require_lesson(new_lesson_id)

            old_booking = self._require_active_pair(student_id, old_lesson_id)
            if not actor.is_admin:
                self._check_notice_window(old_booking, old_lesson_id)

            existing = self.booking_repository.get_by_pair(
                student_id, new_lesson_id, for_update=True
            )
            if existing is not None:
                if existing.is_active:
                    raise DuplicateBookingException(student_id, new_lesson_id)
                if existing.rebooking_blocked and not actor.is_admin:
                    raise LessonPreviouslyCancelledException(student_id, new_lesson_id)

            refund = self._deactivate(
                old_booking,
                actor=actor,
                block_rebooking=False,
                reason=f"Swapped to lesson {new_lesson_id}",
            )
            booking = self._activate(
                student_id=student_id, lesson=new_lesson, actor=actor, existing=existing
            )
            self.log_operation(
                "swap_booking",
                student_id=student_id,
                old_booking_id=old_booking.id,
                new_booking_id=booking.id,
                refunded=refund,
                charged=booking.credits_charged,
            )
            return booking

        return self._run_transition("swap", _swap, ctx, use_transaction)

    # Reads

    @BaseService.measure_operation("get_booking")
    def get_booking(self, student_id: str, lesson_id: str) -> Booking:
        with self.read_snapshot():
            booking = self.booking_repository.get_by_pair(student_id, lesson_id)
        if booking is None:
            raise NotFoundException(
                "Booking not found",
                code="BOOKING_NOT_FOUND",
                details={"student_id": student_id, "lesson_id": lesson_id},
            )
        return booking

    @BaseService.measure_operation("get_student_bookings")
    def get_student_bookings(self, student_id: str, *, active_only: bool = True) -> List[Booking]:
        with self.read_snapshot():
            return self.booking_repository.get_student_bookings(
                student_id, active_only=active_only
            )
