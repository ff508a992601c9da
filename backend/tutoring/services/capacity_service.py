# backend/tutoring/services/capacity_service.py
"""
Capacity Guard for the tutoring core.

Owns lesson seat counters and the teacher non-overlap rule:
- Seat changes are single conditional UPDATEs; a zero row count is the
  "no seat" signal, no lock is held across the booking flow.
- Overlaps are rejected by the database (exclusion constraint or triggers)
  and translated into ScheduleConflictException here.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ConflictException,
    LessonFullException,
    LessonHasActiveBookingsException,
    NotFoundException,
    ScheduleConflictException,
    ServiceException,
    ValidationException,
)
from ..core.operation_context import OperationContext, check_context
from ..core.timezone_utils import as_utc
from ..database.errors import is_violation_of
from ..models.lesson import LESSON_OVERLAP_CONSTRAINT, Lesson
from ..repositories.factory import RepositoryFactory
from ..schemas.lesson import SeatCountCorrection
from .base import BaseService

logger = logging.getLogger(__name__)


class CapacityService(BaseService):
    """Lesson creation, time changes, capacity and seat counters."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    def _run(self, fn, ctx: Optional[OperationContext], use_transaction: bool, operation: str):
        if use_transaction:
            with self.transaction(ctx):
                return fn()
        check_context(ctx, operation)
        return fn()

    def _schedule_conflict(
        self, exc: IntegrityError, teacher_id: str, start_time: datetime, end_time: datetime
    ) -> Exception:
        if is_violation_of(exc, LESSON_OVERLAP_CONSTRAINT):
            return ScheduleConflictException(
                scope="teacher",
                details={
                    "teacher_id": teacher_id,
                    "start_time": start_time.isoformat(),
                    "end_time": end_time.isoformat(),
                },
            )
        return ServiceException("Lesson rejected by the database")

    @staticmethod
    def _validate_interval(start_time: datetime, end_time: datetime) -> None:
        if end_time <= start_time:
            raise ValidationException(
                "End time must be after start time", code="INVALID_TIME_RANGE"
            )

    # Lessons

    @BaseService.measure_operation("get_lesson")
    def get_lesson(self, lesson_id: str) -> Lesson:
        with self.read_snapshot():
            lesson = self.lesson_repository.get_lesson(lesson_id)
        if lesson is None:
            raise NotFoundException(
                "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
            )
        return lesson

    @BaseService.measure_operation("create_lesson")
    def create_lesson(
        self,
        *,
        teacher_id: str,
        start_time: datetime,
        end_time: datetime,
        max_seats: int = 1,
        credits_cost: int = 1,
        subject: Optional[str] = None,
        color: Optional[str] = None,
        template_application_id: Optional[str] = None,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Lesson:
        """
        Create a lesson.

        Raises:
            ValidationException: Bad interval, capacity, cost or teacher role
            NotFoundException: Teacher does not exist
            ScheduleConflictException: The teacher already has an overlapping lesson
        """
        start_time = as_utc(start_time)
        end_time = as_utc(end_time)
        self._validate_interval(start_time, end_time)
        if max_seats < 1:
            raise ValidationException("A lesson needs at least one seat", code="INVALID_CAPACITY")
        if credits_cost < 0 or credits_cost > settings.template_credits_cost_max:
            raise ValidationException(
                f"Lesson cost must be between 0 and {settings.template_credits_cost_max}",
                code="INVALID_COST",
            )

        def _create() -> Lesson:
            teacher = self.user_repository.get_active(teacher_id)
            if teacher is None:
                raise NotFoundException(
                    "Teacher not found", code="TEACHER_NOT_FOUND", details={"teacher_id": teacher_id}
                )
            if not teacher.can_teach:
                raise ValidationException(
                    "User cannot teach lessons",
                    code="NOT_A_TEACHER",
                    details={"teacher_id": teacher_id},
                )
            try:
                lesson = self.lesson_repository.create_lesson(
                    teacher_id=teacher_id,
                    start_time=start_time,
                    end_time=end_time,
                    max_seats=max_seats,
                    current_seats=0,
                    credits_cost=credits_cost,
                    subject=subject,
                    color=color,
                    template_application_id=template_application_id,
                )
            except IntegrityError as exc:
                raise self._schedule_conflict(exc, teacher_id, start_time, end_time) from exc
            self.log_operation("create_lesson", lesson_id=lesson.id, teacher_id=teacher_id)
            return lesson

        return self._run(_create, ctx, use_transaction, "create_lesson")

    @BaseService.measure_operation("update_lesson_time")
    def update_lesson_time(
        self,
        lesson_id: str,
        start_time: datetime,
        end_time: datetime,
        *,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Lesson:
        start_time = as_utc(start_time)
        end_time = as_utc(end_time)
        self._validate_interval(start_time, end_time)

        def _update() -> Lesson:
            lesson = self.lesson_repository.get_lesson(lesson_id, for_update=True)
            if lesson is None:
                raise NotFoundException(
                    "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
                )
            try:
                updated = self.lesson_repository.update_time(lesson_id, start_time, end_time)
            except IntegrityError as exc:
                raise self._schedule_conflict(
                    exc, lesson.teacher_id, start_time, end_time
                ) from exc
            if not updated:
                raise NotFoundException(
                    "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
                )
            self.lesson_repository.refresh(lesson)
            self.log_operation("update_lesson_time", lesson_id=lesson_id)
            return lesson

        return self._run(_update, ctx, use_transaction, "update_lesson_time")

    @BaseService.measure_operation("update_max_seats")
    def update_max_seats(
        self,
        lesson_id: str,
        max_seats: int,
        *,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> Lesson:
        """Change capacity; refused when more seats are already taken than ``max_seats``."""
        if max_seats < 1:
            raise ValidationException("A lesson needs at least one seat", code="INVALID_CAPACITY")

        def _update() -> Lesson:
            if not self.lesson_repository.update_max_seats(lesson_id, max_seats):
                lesson = self.lesson_repository.get_lesson(lesson_id)
                if lesson is None:
                    raise NotFoundException(
                        "Lesson not found",
                        code="LESSON_NOT_FOUND",
                        details={"lesson_id": lesson_id},
                    )
                raise ConflictException(
                    "More seats are already booked than the new capacity",
                    code="CAPACITY_BELOW_BOOKED",
                    details={
                        "lesson_id": lesson_id,
                        "current_seats": lesson.current_seats,
                        "max_seats": max_seats,
                    },
                )
            lesson = self.lesson_repository.get_lesson(lesson_id, for_update=True)
            return lesson

        return self._run(_update, ctx, use_transaction, "update_max_seats")

    # Seat counter

    def increment_seats(
        self,
        lesson_id: str,
        *,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> None:
        """
        Take one seat.

        Raises:
            LessonFullException: Every seat is taken
            NotFoundException: The lesson does not exist or was deleted
        """

        def _increment() -> None:
            if self.lesson_repository.increment_seats(lesson_id):
                return
            # The write lost; find out why
            if self.lesson_repository.get_lesson(lesson_id) is None:
                raise NotFoundException(
                    "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
                )
            raise LessonFullException(lesson_id)

        self._run(_increment, ctx, use_transaction, "increment_seats")

    def decrement_seats(
        self,
        lesson_id: str,
        *,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> None:
        """Release one seat; NotFoundException when the lesson is absent or has none taken."""

        def _decrement() -> None:
            if not self.lesson_repository.decrement_seats(lesson_id):
                raise NotFoundException(
                    "No taken seat to release",
                    code="SEAT_NOT_FOUND",
                    details={"lesson_id": lesson_id},
                )

        self._run(_decrement, ctx, use_transaction, "decrement_seats")

    # Lifecycle

    @BaseService.measure_operation("soft_delete_lesson")
    def soft_delete_lesson(
        self,
        lesson_id: str,
        *,
        ctx: Optional[OperationContext] = None,
        use_transaction: bool = True,
    ) -> None:
        def _delete() -> None:
            if self.lesson_repository.soft_delete(lesson_id):
                self.log_operation("soft_delete_lesson", lesson_id=lesson_id)
                return
            lesson = self.lesson_repository.get_lesson(lesson_id)
            if lesson is None:
                raise NotFoundException(
                    "Lesson not found", code="LESSON_NOT_FOUND", details={"lesson_id": lesson_id}
                )
            raise LessonHasActiveBookingsException(lesson_id)

        self._run(_delete, ctx, use_transaction, "soft_delete_lesson")

    @BaseService.measure_operation("sync_seat_counts")
    def sync_seat_counts(
        self,
        lesson_ids: Optional[List[str]] = None,
        *,
        ctx: Optional[OperationContext] = None,
    ) -> List[SeatCountCorrection]:
        """
        Repair seat counters from the number of active bookings.

        Only needed after out-of-band writes; returns the lessons that changed.
        """
        corrections: List[SeatCountCorrection] = []

        with self.transaction(ctx):
            if lesson_ids is None:
                lesson_ids = [lesson.id for lesson in self.lesson_repository.find_seat_drift()]
            lessons = self.lesson_repository.lock_lessons(lesson_ids)
            counts = self.lesson_repository.active_booking_counts([lesson.id for lesson in lessons])

            for lesson in lessons:
                actual = counts.get(lesson.id, 0)
                if lesson.current_seats == actual:
                    continue
                if actual > lesson.max_seats:
                    self.logger.error(
                        "Lesson is overbooked, counter left unchanged",
                        extra={
                            "lesson_id": lesson.id,
                            "active_bookings": actual,
                            "max_seats": lesson.max_seats,
                        },
                    )
                    continue
                self.lesson_repository.set_current_seats(lesson.id, actual)
                corrections.append(
                    SeatCountCorrection(
                        lesson_id=lesson.id,
                        previous_seats=lesson.current_seats,
                        current_seats=actual,
                    )
                )

        if corrections:
            self.logger.warning(f"Repaired seat counters for {len(corrections)} lessons")
        return corrections
