# backend/tutoring/models/lesson.py
"""
Lesson model.

A lesson is a concrete teacher time slot with a seat counter. The counter is
only changed through conditional UPDATEs (see LessonRepository), and the
teacher non-overlap rule is enforced by the database (see database.schema).
"""

from typing import Any

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
import ulid

from ..core.config import LESSON_CREDITS_COST_LIMIT
from ..core.timezone_utils import utc_now
from ..database import Base

LESSON_OVERLAP_CONSTRAINT = "lessons_no_overlap_per_teacher"


class Lesson(Base):
    """Bookable lesson owned by a teacher."""

    __tablename__ = "lessons"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    teacher_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    max_seats = Column(Integer, nullable=False, default=1)
    current_seats = Column(Integer, nullable=False, default=0)
    credits_cost = Column(Integer, nullable=False, default=1)
    subject = Column(String(255), nullable=True)
    color = Column(String(7), nullable=True)
    template_application_id = Column(
        String(26), ForeignKey("template_applications.id"), nullable=True
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    teacher = relationship("User", foreign_keys=[teacher_id])

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_lessons_time_order"),
        CheckConstraint("max_seats >= 1", name="ck_lessons_max_seats_positive"),
        CheckConstraint(
            "current_seats >= 0 AND current_seats <= max_seats", name="ck_lessons_seat_bounds"
        ),
        CheckConstraint(
            f"credits_cost >= 0 AND credits_cost <= {LESSON_CREDITS_COST_LIMIT}",
            name="ck_lessons_credits_cost_range",
        ),
        Index("ix_lessons_teacher_start", "teacher_id", "start_time"),
        Index("ix_lessons_start_time", "start_time"),
        Index("ix_lessons_template_application_id", "template_application_id"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def free_seats(self) -> int:
        return int(self.max_seats or 0) - int(self.current_seats or 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "teacher_id": self.teacher_id,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "max_seats": self.max_seats,
            "current_seats": self.current_seats,
            "credits_cost": self.credits_cost,
            "subject": self.subject,
            "color": self.color,
            "template_application_id": self.template_application_id,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Lesson {self.id}: teacher={self.teacher_id} "
            f"{self.start_time}-{self.end_time} seats={self.current_seats}/{self.max_seats}>"
        )
