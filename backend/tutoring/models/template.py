# backend/tutoring/models/template.py
"""
Weekly lesson templates and their applications.

A template describes recurring slots (day of week + time of day, UTC) with
assigned students. Applying it to a calendar week materializes lessons and
bookings and records a TemplateApplication. Applications are never
overwritten: re-applying marks the previous record ``replaced`` and rolling
back marks it ``rolled_back``.
"""

from typing import Any

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import TemplateApplicationStatus
from ..core.timezone_utils import utc_now
from ..database import Base

LIVE_APPLICATION_INDEX = "uq_template_applications_live"


class LessonTemplate(Base):
    """Named weekly schedule."""

    __tablename__ = "lesson_templates"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(String(26), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    lessons = relationship(
        "TemplateLesson",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by=lambda: [TemplateLesson.day_of_week, TemplateLesson.start_time],
    )

    def __repr__(self) -> str:
        return f"<LessonTemplate {self.id}: {self.name}>"


class TemplateLesson(Base):
    """One weekly slot of a template."""

    __tablename__ = "template_lessons"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    template_id = Column(String(26), ForeignKey("lesson_templates.id"), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0=Monday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    teacher_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    max_seats = Column(Integer, nullable=False, default=1)
    credits_cost = Column(Integer, nullable=False, default=1)
    subject = Column(String(255), nullable=True)
    color = Column(String(7), nullable=True)

    template = relationship("LessonTemplate", back_populates="lessons")
    students = relationship(
        "TemplateLessonStudent",
        back_populates="template_lesson",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_template_lessons_day"),
        CheckConstraint("end_time > start_time", name="ck_template_lessons_time_order"),
        CheckConstraint("max_seats >= 1", name="ck_template_lessons_max_seats"),
        CheckConstraint(
            "credits_cost >= 0 AND credits_cost <= 100", name="ck_template_lessons_credits_cost"
        ),
        Index("ix_template_lessons_template_id", "template_id"),
    )

    @property
    def student_ids(self) -> list[str]:
        return [entry.student_id for entry in self.students]

    def __repr__(self) -> str:
        return (
            f"<TemplateLesson {self.id}: day={self.day_of_week} "
            f"{self.start_time}-{self.end_time} teacher={self.teacher_id}>"
        )


class TemplateLessonStudent(Base):
    """Student assigned to a template slot."""

    __tablename__ = "template_lesson_students"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    template_lesson_id = Column(String(26), ForeignKey("template_lessons.id"), nullable=False)
    student_id = Column(String(26), ForeignKey("users.id"), nullable=False)

    template_lesson = relationship("TemplateLesson", back_populates="students")

    __table_args__ = (
        UniqueConstraint(
            "template_lesson_id", "student_id", name="uq_template_lesson_students_pair"
        ),
    )


class TemplateApplication(Base):
    """Audit record of one template applied to one calendar week."""

    __tablename__ = "template_applications"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    template_id = Column(String(26), ForeignKey("lesson_templates.id"), nullable=False)
    applied_by = Column(String(26), ForeignKey("users.id"), nullable=False)
    week_start_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default=TemplateApplicationStatus.APPLIED.value)
    applied_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    rolled_back_at = Column(DateTime(timezone=True), nullable=True)
    replaced_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by_id = Column(String(26), ForeignKey("template_applications.id"), nullable=True)

    created_lessons = Column(Integer, nullable=False, default=0)
    created_bookings = Column(Integer, nullable=False, default=0)
    debited_credits = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint(
            "status IN ('applied', 'replaced', 'rolled_back')",
            name="ck_template_applications_status",
        ),
        # At most one live application per template and week
        Index(
            LIVE_APPLICATION_INDEX,
            "template_id",
            "week_start_date",
            unique=True,
            postgresql_where=text("status = 'applied'"),
            sqlite_where=text("status = 'applied'"),
        ),
        Index("ix_template_applications_week", "week_start_date"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "applied_by": self.applied_by,
            "week_start_date": self.week_start_date.isoformat() if self.week_start_date else None,
            "status": self.status,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            "replaced_by_id": self.replaced_by_id,
            "created_lessons": self.created_lessons,
            "created_bookings": self.created_bookings,
            "debited_credits": self.debited_credits,
        }

    def __repr__(self) -> str:
        return (
            f"<TemplateApplication {self.id}: template={self.template_id} "
            f"week={self.week_start_date} status={self.status}>"
        )
