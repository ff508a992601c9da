# backend/tutoring/repositories/lesson_repository.py
"""
Lesson Repository for the tutoring core.

Seat counters are only ever changed by conditional UPDATE statements whose
WHERE clause carries the capacity bound, so the database decides whether a
seat is available and a lost race shows up as ``rowcount == 0``. Time
changes and inserts go through a SAVEPOINT so the teacher non-overlap
constraint can reject them without poisoning the caller's transaction.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Dict, Iterable, List, Optional, cast

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingStatus
from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..models.booking import Booking
from ..models.lesson import Lesson
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class LessonRepository(BaseRepository[Lesson]):
    """Repository for lessons and their seat counters."""

    def __init__(self, db: Session):
        super().__init__(db, Lesson)

    def get_lesson(
        self, lesson_id: str, *, for_update: bool = False, include_deleted: bool = False
    ) -> Optional[Lesson]:
        try:
            query = self._query(for_update=for_update).filter(Lesson.id == lesson_id)
            if not include_deleted:
                query = query.filter(Lesson.deleted_at.is_(None))
            # Seat counters change through bulk UPDATEs; never serve a stale copy
            return cast(Optional[Lesson], query.populate_existing().first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load lesson %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to load lesson") from exc

    def create_lesson(self, **kwargs) -> Lesson:
        """Insert a lesson; an overlap surfaces as IntegrityError for the caller to map."""
        return self.create_guarded(**kwargs)

    # Seat counter

    def increment_seats(self, lesson_id: str) -> bool:
        """Take one seat if the lesson is live and not full. False means no seat was taken."""
        try:
            result = self.db.execute(
                update(Lesson)
                .where(
                    Lesson.id == lesson_id,
                    Lesson.deleted_at.is_(None),
                    Lesson.current_seats < Lesson.max_seats,
                )
                .values(current_seats=Lesson.current_seats + 1, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to increment seats for %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to increment seats") from exc

    def decrement_seats(self, lesson_id: str) -> bool:
        """Release one seat if any is taken. False means the counter was already 0."""
        try:
            result = self.db.execute(
                update(Lesson)
                .where(Lesson.id == lesson_id, Lesson.current_seats > 0)
                .values(current_seats=Lesson.current_seats - 1, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to decrement seats for %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to decrement seats") from exc

    def update_max_seats(self, lesson_id: str, max_seats: int) -> bool:
        """Change capacity only if the seats already taken still fit."""
        try:
            result = self.db.execute(
                update(Lesson)
                .where(
                    Lesson.id == lesson_id,
                    Lesson.deleted_at.is_(None),
                    Lesson.current_seats <= max_seats,
                )
                .values(max_seats=max_seats, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to update capacity for %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to update capacity") from exc

    def set_current_seats(self, lesson_id: str, current_seats: int) -> None:
        try:
            self.db.execute(
                update(Lesson)
                .where(Lesson.id == lesson_id)
                .values(current_seats=current_seats, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to set seat counter for %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to set seat counter") from exc

    # Time and lifecycle

    def update_time(self, lesson_id: str, start_time: datetime, end_time: datetime) -> bool:
        """
        Move a live lesson inside a SAVEPOINT.

        Raises IntegrityError when the new interval overlaps another lesson of
        the same teacher; returns False when the lesson is gone.
        """
        try:
            with self.db.begin_nested():
                result = self.db.execute(
                    update(Lesson)
                    .where(Lesson.id == lesson_id, Lesson.deleted_at.is_(None))
                    .values(start_time=start_time, end_time=end_time, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
            return bool(result.rowcount == 1)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            self.logger.error("Failed to update lesson time for %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to update lesson time") from exc

    def soft_delete(self, lesson_id: str) -> bool:
        """Mark a lesson deleted unless it is already deleted or still has active bookings."""
        active_booking = exists().where(
            Booking.lesson_id == Lesson.id,
            Booking.status == BookingStatus.ACTIVE.value,
        )
        try:
            result = self.db.execute(
                update(Lesson)
                .where(Lesson.id == lesson_id, Lesson.deleted_at.is_(None), ~active_booking)
                .values(deleted_at=utc_now(), updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to delete lesson %s: %s", lesson_id, str(exc))
            raise RepositoryException("Failed to delete lesson") from exc

    # Queries

    def lock_lessons(self, lesson_ids: Iterable[str]) -> List[Lesson]:
        """Lock lessons in id order so concurrent bulk operations cannot deadlock."""
        ids = sorted(set(lesson_ids))
        if not ids:
            return []
        try:
            lessons = (
                self._query(for_update=True)
                .filter(Lesson.id.in_(ids))
                .order_by(Lesson.id)
                .populate_existing()
                .all()
            )
            return cast(List[Lesson], lessons)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to lock lessons: %s", str(exc))
            raise RepositoryException("Failed to lock lessons") from exc

    def get_by_application(
        self, application_id: str, *, for_update: bool = False, include_deleted: bool = False
    ) -> List[Lesson]:
        try:
            query = self._query(for_update=for_update).filter(
                Lesson.template_application_id == application_id
            )
            if not include_deleted:
                query = query.filter(Lesson.deleted_at.is_(None))
            if for_update:
                query = query.populate_existing()
            return cast(List[Lesson], query.order_by(Lesson.start_time, Lesson.id).all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load lessons of application %s: %s", application_id, str(exc))
            raise RepositoryException("Failed to load application lessons") from exc

    def get_in_range(
        self,
        start: datetime,
        end: datetime,
        *,
        teacher_id: Optional[str] = None,
    ) -> List[Lesson]:
        """Live lessons starting in [start, end)."""
        try:
            query = self.db.query(Lesson).filter(
                Lesson.deleted_at.is_(None),
                Lesson.start_time >= start,
                Lesson.start_time < end,
            )
            if teacher_id:
                query = query.filter(Lesson.teacher_id == teacher_id)
            return cast(List[Lesson], query.order_by(Lesson.start_time, Lesson.id).all())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load lessons in range: %s", str(exc))
            raise RepositoryException("Failed to load lessons") from exc

    def active_booking_counts(self, lesson_ids: Optional[List[str]] = None) -> Dict[str, int]:
        """Number of active bookings per lesson (lessons without bookings are omitted)."""
        try:
            stmt = (
                select(Booking.lesson_id, func.count(Booking.id))
                .where(Booking.status == BookingStatus.ACTIVE.value)
                .group_by(Booking.lesson_id)
            )
            if lesson_ids is not None:
                if not lesson_ids:
                    return {}
                stmt = stmt.where(Booking.lesson_id.in_(lesson_ids))
            return {row[0]: int(row[1]) for row in self.db.execute(stmt).all()}
        except SQLAlchemyError as exc:
            self.logger.error("Failed to count active bookings: %s", str(exc))
            raise RepositoryException("Failed to count active bookings") from exc

    def find_seat_drift(self) -> List[Lesson]:
        """Lessons whose counter disagrees with their number of active bookings."""
        active_count = (
            select(func.count(Booking.id))
            .where(
                and_(
                    Booking.lesson_id == Lesson.id,
                    Booking.status == BookingStatus.ACTIVE.value,
                )
            )
            .correlate(Lesson)
            .scalar_subquery()
        )
        try:
            lessons = self.db.query(Lesson).filter(Lesson.current_seats != active_count).all()
            return cast(List[Lesson], lessons)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to detect seat drift: %s", str(exc))
            raise RepositoryException("Failed to detect seat drift") from exc


__all__ = ["LessonRepository"]
