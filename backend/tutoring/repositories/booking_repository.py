# backend/tutoring/repositories/booking_repository.py
"""
Booking Repository for the tutoring core.

Status changes are conditional updates: the WHERE clause requires one of the
statuses the target may be reached from (BookingStatus.expected_sources), so
two racing cancels cannot both succeed.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..core.enums import BookingStatus
from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..models.booking import Booking
from ..models.lesson import Lesson
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


def _status_values(target: BookingStatus) -> List[str]:
    return [status.value for status in BookingStatus.expected_sources(target)]


class BookingRepository(BaseRepository[Booking]):
    """Repository for bookings keyed by (student, lesson)."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_by_pair(
        self, student_id: str, lesson_id: str, *, for_update: bool = False
    ) -> Optional[Booking]:
        try:
            query = self._query(for_update=for_update).filter(
                Booking.student_id == student_id,
                Booking.lesson_id == lesson_id,
            )
            if for_update:
                query = query.populate_existing()
            return cast(Optional[Booking], query.first())
        except SQLAlchemyError as exc:
            self.logger.error(
                "Failed to load booking for student %s lesson %s: %s",
                student_id,
                lesson_id,
                str(exc),
            )
            raise RepositoryException("Failed to load booking") from exc

    def create_booking(self, *, student_id: str, lesson_id: str, credits_charged: int) -> Booking:
        """Insert an active booking; a duplicate pair surfaces as IntegrityError."""
        now = utc_now()
        return self.create_guarded(
            student_id=student_id,
            lesson_id=lesson_id,
            status=BookingStatus.ACTIVE.value,
            credits_charged=credits_charged,
            booked_at=now,
            updated_at=now,
        )

    def mark_cancelled(
        self,
        booking_id: str,
        *,
        cancelled_by_id: Optional[str],
        block_rebooking: bool = False,
    ) -> bool:
        """Move an active booking to cancelled. False means it was not active."""
        now = utc_now()
        try:
            result = self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status.in_(_status_values(BookingStatus.CANCELLED)),
                )
                .values(
                    status=BookingStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancelled_by_id=cancelled_by_id,
                    rebooking_blocked=block_rebooking,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to cancel booking %s: %s", booking_id, str(exc))
            raise RepositoryException("Failed to cancel booking") from exc

    def mark_active(self, booking_id: str, *, credits_charged: int) -> bool:
        """Move a cancelled booking back to active. False means it was not cancelled."""
        now = utc_now()
        try:
            result = self.db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status.in_(_status_values(BookingStatus.ACTIVE)),
                )
                .values(
                    status=BookingStatus.ACTIVE.value,
                    credits_charged=credits_charged,
                    booked_at=now,
                    cancelled_at=None,
                    cancelled_by_id=None,
                    rebooking_blocked=False,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to reactivate booking %s: %s", booking_id, str(exc))
            raise RepositoryException("Failed to reactivate booking") from exc

    def get_active_for_lessons(self, lesson_ids: List[str]) -> List[Booking]:
        if not lesson_ids:
            return []
        try:
            bookings = (
                self.db.query(Booking)
                .filter(
                    Booking.lesson_id.in_(lesson_ids),
                    Booking.status == BookingStatus.ACTIVE.value,
                )
                .order_by(Booking.lesson_id, Booking.id)
                .all()
            )
            return cast(List[Booking], bookings)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load active bookings: %s", str(exc))
            raise RepositoryException("Failed to load active bookings") from exc

    def get_student_bookings(
        self, student_id: str, *, active_only: bool = True
    ) -> List[Booking]:
        try:
            query = (
                self.db.query(Booking)
                .options(joinedload(Booking.lesson))
                .filter(Booking.student_id == student_id)
            )
            if active_only:
                query = query.filter(Booking.status == BookingStatus.ACTIVE.value)
            return cast(List[Booking], query.order_by(Booking.booked_at.desc()).all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load bookings for %s: %s", student_id, str(exc))
            raise RepositoryException("Failed to load student bookings") from exc

    def find_student_overlap(
        self,
        student_id: str,
        start_time: datetime,
        end_time: datetime,
        *,
        exclude_lesson_id: Optional[str] = None,
        exclude_application_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """
        An active booking of the student in a live lesson overlapping [start, end).

        ``exclude_application_id`` ignores lessons created by that template
        application (used when previewing its replacement).
        """
        try:
            query = (
                self.db.query(Booking)
                .join(Lesson, Lesson.id == Booking.lesson_id)
                .filter(
                    Booking.student_id == student_id,
                    Booking.status == BookingStatus.ACTIVE.value,
                    Lesson.deleted_at.is_(None),
                    Lesson.start_time < end_time,
                    Lesson.end_time > start_time,
                )
            )
            if exclude_lesson_id:
                query = query.filter(Booking.lesson_id != exclude_lesson_id)
            if exclude_application_id:
                query = query.filter(
                    or_(
                        Lesson.template_application_id.is_(None),
                        Lesson.template_application_id != exclude_application_id,
                    )
                )
            return cast(Optional[Booking], query.first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to check student overlap: %s", str(exc))
            raise RepositoryException("Failed to check student overlap") from exc


__all__ = ["BookingRepository"]
