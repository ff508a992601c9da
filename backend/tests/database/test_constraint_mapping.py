"""
Real constraint violations are recognised by name, and a rejected guarded
insert leaves the surrounding transaction usable.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from tutoring.core.config import LESSON_CREDITS_COST_LIMIT
from tutoring.core.enums import TemplateApplicationStatus
from tutoring.database.errors import is_violation_of, violated_constraint
from tutoring.models.booking import BOOKING_UNIQUE_CONSTRAINT
from tutoring.models.identity import IDENTITY_EXTERNAL_ID_INDEX, IDENTITY_USER_ID_INDEX
from tutoring.models.lesson import LESSON_OVERLAP_CONSTRAINT
from tutoring.models.template import LIVE_APPLICATION_INDEX
from tutoring.repositories.booking_repository import BookingRepository
from tutoring.repositories.identity_repository import IdentityRepository
from tutoring.repositories.lesson_repository import LessonRepository
from tutoring.repositories.template_repository import (
    TemplateApplicationRepository,
    TemplateRepository,
)


def _lesson(repo, teacher, start, hours=1):
    return repo.create_lesson(
        teacher_id=teacher.id,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        max_seats=2,
        current_seats=0,
        credits_cost=1,
    )


def test_teacher_overlap_is_named(db, teacher, slot_at) -> None:
    repo = LessonRepository(db)
    _lesson(repo, teacher, slot_at(0, 10))

    with pytest.raises(IntegrityError) as exc_info:
        _lesson(repo, teacher, slot_at(0, 10, 30))

    assert violated_constraint(exc_info.value) == LESSON_OVERLAP_CONSTRAINT
    # The savepoint absorbed the failure; the transaction goes on
    _lesson(repo, teacher, slot_at(0, 11))
    db.commit()


def test_overlap_check_ignores_deleted_lessons(db, teacher, slot_at) -> None:
    repo = LessonRepository(db)
    first = _lesson(repo, teacher, slot_at(1, 10))
    assert repo.soft_delete(first.id) is True

    second = _lesson(repo, teacher, slot_at(1, 10))

    assert second.id != first.id
    db.commit()


def test_moving_into_overlap_is_named(db, teacher, slot_at) -> None:
    repo = LessonRepository(db)
    _lesson(repo, teacher, slot_at(2, 10))
    movable = _lesson(repo, teacher, slot_at(2, 12))

    with pytest.raises(IntegrityError) as exc_info:
        repo.update_time(movable.id, slot_at(2, 10, 30), slot_at(2, 11, 30))

    assert violated_constraint(exc_info.value) == LESSON_OVERLAP_CONSTRAINT
    # A deleted lesson is not moved at all
    repo.soft_delete(movable.id)
    assert repo.update_time(movable.id, slot_at(2, 13), slot_at(2, 14)) is False
    db.commit()


def test_duplicate_booking_pair_is_named(db, teacher, student, slot_at) -> None:
    lesson = _lesson(LessonRepository(db), teacher, slot_at(3, 10))
    repo = BookingRepository(db)
    repo.create_booking(student_id=student.id, lesson_id=lesson.id, credits_charged=1)

    with pytest.raises(IntegrityError) as exc_info:
        repo.create_booking(student_id=student.id, lesson_id=lesson.id, credits_charged=1)

    assert is_violation_of(exc_info.value, BOOKING_UNIQUE_CONSTRAINT)
    db.commit()


def test_identity_indexes_are_named(db, students) -> None:
    first, second = students[:2]
    repo = IdentityRepository(db)
    repo.create_link(user_id=first.id, external_id="tg:1")

    with pytest.raises(IntegrityError) as by_external:
        repo.create_link(user_id=second.id, external_id="tg:1")
    with pytest.raises(IntegrityError) as by_user:
        repo.create_link(user_id=first.id, external_id="tg:2")

    assert violated_constraint(by_external.value) == IDENTITY_EXTERNAL_ID_INDEX
    assert violated_constraint(by_user.value) == IDENTITY_USER_ID_INDEX
    db.rollback()


def test_only_one_live_application_per_week(db, admin, teacher, week_start) -> None:
    template = TemplateRepository(db).create_template(
        name="T",
        created_by=admin.id,
        description=None,
        lessons=[],
    )
    repo = TemplateApplicationRepository(db)
    first = repo.create_application(
        template_id=template.id, applied_by=admin.id, week_start_date=week_start
    )

    with pytest.raises(IntegrityError) as exc_info:
        repo.create_application(
            template_id=template.id, applied_by=admin.id, week_start_date=week_start
        )
    assert is_violation_of(exc_info.value, LIVE_APPLICATION_INDEX)

    assert repo.transition(first.id, TemplateApplicationStatus.REPLACED) is True
    replacement = repo.create_application(
        template_id=template.id, applied_by=admin.id, week_start_date=week_start
    )
    assert replacement.status == TemplateApplicationStatus.APPLIED.value
    db.commit()


def test_unrecognised_error_maps_to_none() -> None:
    exc = IntegrityError("INSERT ...", {}, Exception("NOT NULL constraint failed: users.email"))

    assert violated_constraint(exc) is None


def test_lesson_cost_limit_is_enforced_by_the_database(db, teacher, slot_at) -> None:
    repo = LessonRepository(db)

    with pytest.raises(IntegrityError):
        repo.create_lesson(
            teacher_id=teacher.id,
            start_time=slot_at(2, 10),
            end_time=slot_at(2, 11),
            max_seats=1,
            current_seats=0,
            credits_cost=LESSON_CREDITS_COST_LIMIT + 1,
        )

    top = repo.create_lesson(
        teacher_id=teacher.id,
        start_time=slot_at(2, 10),
        end_time=slot_at(2, 11),
        max_seats=1,
        current_seats=0,
        credits_cost=LESSON_CREDITS_COST_LIMIT,
    )
    db.commit()
    assert top.credits_cost == LESSON_CREDITS_COST_LIMIT
