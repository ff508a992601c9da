# backend/tutoring/schemas/template.py
"""
Template schemas.

Request models validate a template definition before it is stored; result
models describe what an apply, rollback or week preview did (or would do).
"""

from datetime import date, time
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from ..core.config import LESSON_CREDITS_COST_LIMIT
from .base import StandardizedModel, StrictRequestModel

TemplateDay = int


class TemplateLessonCreate(StrictRequestModel):
    """One weekly slot with its assigned students (times are UTC)."""

    day_of_week: TemplateDay = Field(..., ge=0, le=6, description="0=Monday")
    start_time: time
    end_time: time
    teacher_id: str
    max_seats: int = Field(default=1, ge=1)
    credits_cost: int = Field(default=1, ge=0, le=LESSON_CREDITS_COST_LIMIT)
    subject: Optional[str] = Field(default=None, max_length=255)
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    student_ids: List[str] = Field(default_factory=list)

    @field_validator("end_time")
    @classmethod
    def validate_time_order(cls, v: time, info) -> time:
        """Ensure end time is after start time."""
        start = info.data.get("start_time") if isinstance(info.data, dict) else None
        if start and v <= start:
            raise ValueError("End time must be after start time")
        return v

    @model_validator(mode="after")
    def _check_students(self) -> "TemplateLessonCreate":
        if len(set(self.student_ids)) != len(self.student_ids):
            raise ValueError("A student can only be assigned to a slot once")
        if len(self.student_ids) > self.max_seats:
            raise ValueError(
                f"{len(self.student_ids)} students assigned to a slot with {self.max_seats} seats"
            )
        return self


class TemplateCreate(StrictRequestModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    lessons: List[TemplateLessonCreate] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _check_teacher_overlaps(self) -> "TemplateCreate":
        """Two slots of the same teacher on the same day must not overlap."""
        by_key: dict[tuple[str, int], list[TemplateLessonCreate]] = {}
        for lesson in self.lessons:
            by_key.setdefault((lesson.teacher_id, lesson.day_of_week), []).append(lesson)
        for (teacher_id, day), slots in by_key.items():
            slots.sort(key=lambda slot: slot.start_time)
            for previous, current in zip(slots, slots[1:]):
                if current.start_time < previous.end_time:
                    raise ValueError(
                        f"Teacher {teacher_id} has overlapping slots on day {day}"
                    )
        return self


class CleanupStats(StandardizedModel):
    """What replacing the previous application of the same template and week undid."""

    cancelled_bookings: int = 0
    refunded_credits: int = 0
    deleted_lessons: int = 0
    replaced_application_id: Optional[str] = None


class SkippedBooking(StandardizedModel):
    """A student left out of an apply because of a schedule conflict elsewhere."""

    student_id: str
    template_lesson_id: str
    reason: str
    conflicting_lesson_id: Optional[str] = None


class ApplyTemplateResult(StandardizedModel):
    application_id: Optional[str] = None
    template_id: str
    week_start_date: date
    dry_run: bool = False
    created_lessons: int = 0
    created_bookings: int = 0
    debited_credits: int = 0
    skipped_bookings: List[SkippedBooking] = Field(default_factory=list)
    cleanup: CleanupStats = Field(default_factory=CleanupStats)


class RollbackResult(StandardizedModel):
    application_id: str
    status: str
    cancelled_bookings: int = 0
    refunded_credits: int = 0
    deleted_lessons: int = 0
    already_rolled_back: bool = False


class WeekStats(StandardizedModel):
    """Blast radius of a week (or of one application inside it)."""

    week_start_date: date
    application_id: Optional[str] = None
    lesson_count: int = 0
    booking_count: int = 0
    credits_moved: int = 0
    distinct_students: int = 0
