from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from tutoring.core.config import settings
from tutoring.core.exceptions import (
    ConflictException,
    LessonFullException,
    LessonHasActiveBookingsException,
    NotFoundException,
    ScheduleConflictException,
    ValidationException,
)
from tutoring.models.lesson import Lesson
from tutoring.services.booking_service import BookingService
from tutoring.services.capacity_service import CapacityService


class TestCreateLesson:
    def test_creates_with_empty_counter(self, db, teacher, slot_at) -> None:
        lesson = CapacityService(db).create_lesson(
            teacher_id=teacher.id,
            start_time=slot_at(0, 9),
            end_time=slot_at(0, 10),
            max_seats=3,
            credits_cost=2,
            subject="Algebra",
            color="#1A2B3C",
        )

        assert lesson.current_seats == 0
        assert lesson.max_seats == 3
        assert lesson.free_seats == 3
        assert lesson.subject == "Algebra"

    def test_rejects_inverted_interval(self, db, teacher, slot_at) -> None:
        with pytest.raises(ValidationException) as exc_info:
            CapacityService(db).create_lesson(
                teacher_id=teacher.id, start_time=slot_at(0, 10), end_time=slot_at(0, 10)
            )
        assert exc_info.value.code == "INVALID_TIME_RANGE"

    @pytest.mark.parametrize(
        "kwargs, code",
        [
            ({"max_seats": 0}, "INVALID_CAPACITY"),
            ({"credits_cost": -1}, "INVALID_COST"),
            ({"credits_cost": 101}, "INVALID_COST"),
        ],
    )
    def test_rejects_bad_numbers(self, db, teacher, slot_at, kwargs, code) -> None:
        with pytest.raises(ValidationException) as exc_info:
            CapacityService(db).create_lesson(
                teacher_id=teacher.id, start_time=slot_at(0, 10), end_time=slot_at(0, 11), **kwargs
            )
        assert exc_info.value.code == code

    def test_cost_cap_follows_settings(self, db, teacher, slot_at, monkeypatch) -> None:
        monkeypatch.setattr(settings, "template_credits_cost_max", 5)
        service = CapacityService(db)

        with pytest.raises(ValidationException) as exc_info:
            service.create_lesson(
                teacher_id=teacher.id,
                start_time=slot_at(0, 10),
                end_time=slot_at(0, 11),
                credits_cost=6,
            )
        assert exc_info.value.code == "INVALID_COST"

        lesson = service.create_lesson(
            teacher_id=teacher.id,
            start_time=slot_at(0, 10),
            end_time=slot_at(0, 11),
            credits_cost=5,
        )
        assert lesson.credits_cost == 5

    def test_student_cannot_teach(self, db, student, slot_at) -> None:
        with pytest.raises(ValidationException) as exc_info:
            CapacityService(db).create_lesson(
                teacher_id=student.id, start_time=slot_at(0, 10), end_time=slot_at(0, 11)
            )
        assert exc_info.value.code == "NOT_A_TEACHER"

    def test_unknown_teacher(self, db, slot_at) -> None:
        with pytest.raises(NotFoundException):
            CapacityService(db).create_lesson(
                teacher_id="01HZZZZZZZZZZZZZZZZZZZZZZZ",
                start_time=slot_at(0, 10),
                end_time=slot_at(0, 11),
            )


class TestTeacherOverlap:
    def test_overlapping_lesson_is_rejected(self, db, teacher, make_lesson, slot_at) -> None:
        make_lesson(day=1, hour=10)

        with pytest.raises(ScheduleConflictException) as exc_info:
            CapacityService(db).create_lesson(
                teacher_id=teacher.id,
                start_time=slot_at(1, 10, 30),
                end_time=slot_at(1, 11, 30),
            )

        assert exc_info.value.details["scope"] == "teacher"
        assert db.query(Lesson).filter(Lesson.teacher_id == teacher.id).count() == 1

    def test_touching_edges_are_allowed(self, db, make_lesson) -> None:
        first = make_lesson(day=1, hour=10)
        second = make_lesson(day=1, hour=11)

        assert first.end_time == second.start_time

    def test_other_teacher_same_time(self, db, make_lesson, second_teacher) -> None:
        make_lesson(day=2, hour=14)
        other = make_lesson(day=2, hour=14, owner=second_teacher)

        assert other.teacher_id == second_teacher.id

    def test_deleted_lesson_frees_the_slot(self, db, make_lesson) -> None:
        lesson = make_lesson(day=3, hour=9)
        CapacityService(db).soft_delete_lesson(lesson.id)

        replacement = make_lesson(day=3, hour=9)
        assert replacement.id != lesson.id

    def test_moving_into_overlap_is_rejected(self, db, make_lesson, slot_at) -> None:
        make_lesson(day=4, hour=10)
        movable = make_lesson(day=4, hour=12)
        service = CapacityService(db)

        with pytest.raises(ScheduleConflictException):
            service.update_lesson_time(movable.id, slot_at(4, 10, 30), slot_at(4, 11, 30))

        moved = service.update_lesson_time(movable.id, slot_at(4, 11), slot_at(4, 12))
        assert moved.end_time.replace(tzinfo=None) == slot_at(4, 12).replace(tzinfo=None)


class TestSeatCounter:
    def test_increment_until_full(self, db, make_lesson) -> None:
        lesson = make_lesson(max_seats=2)
        service = CapacityService(db)

        service.increment_seats(lesson.id)
        service.increment_seats(lesson.id)
        with pytest.raises(LessonFullException):
            service.increment_seats(lesson.id)

        assert service.get_lesson(lesson.id).current_seats == 2

    def test_decrement_never_goes_negative(self, db, make_lesson) -> None:
        lesson = make_lesson()
        service = CapacityService(db)

        with pytest.raises(NotFoundException) as exc_info:
            service.decrement_seats(lesson.id)

        assert exc_info.value.code == "SEAT_NOT_FOUND"
        assert service.get_lesson(lesson.id).current_seats == 0

    def test_deleted_lesson_takes_no_seats(self, db, make_lesson) -> None:
        lesson = make_lesson()
        service = CapacityService(db)
        service.soft_delete_lesson(lesson.id)

        with pytest.raises(NotFoundException):
            service.increment_seats(lesson.id)
        with pytest.raises(NotFoundException):
            service.get_lesson(lesson.id)

    def test_capacity_cannot_drop_below_booked(self, db, make_lesson) -> None:
        lesson = make_lesson(max_seats=3)
        service = CapacityService(db)
        service.increment_seats(lesson.id)
        service.increment_seats(lesson.id)

        with pytest.raises(ConflictException) as exc_info:
            service.update_max_seats(lesson.id, 1)
        assert exc_info.value.code == "CAPACITY_BELOW_BOOKED"

        assert service.update_max_seats(lesson.id, 2).max_seats == 2


class TestSoftDelete:
    def test_refused_with_active_booking(self, db, make_lesson, admin, student, fund) -> None:
        fund(student, 5)
        lesson = make_lesson()
        BookingService(db).create_booking(student.id, lesson.id, actor_id=student.id)

        with pytest.raises(LessonHasActiveBookingsException):
            CapacityService(db).soft_delete_lesson(lesson.id)

    def test_allowed_after_cancel(self, db, make_lesson, admin, student, fund) -> None:
        fund(student, 5)
        lesson = make_lesson()
        bookings = BookingService(db)
        bookings.create_booking(student.id, lesson.id, actor_id=student.id)
        bookings.cancel_booking(student.id, lesson.id, actor_id=admin.id)

        CapacityService(db).soft_delete_lesson(lesson.id)

        db.expire_all()
        assert db.get(Lesson, lesson.id).deleted_at is not None


class TestSeatRepair:
    def test_drifted_counter_is_repaired(self, db, make_lesson, student, fund) -> None:
        fund(student, 5)
        lesson = make_lesson(max_seats=3)
        BookingService(db).create_booking(student.id, lesson.id, actor_id=student.id)
        db.execute(update(Lesson).where(Lesson.id == lesson.id).values(current_seats=3))
        db.commit()

        corrections = CapacityService(db).sync_seat_counts()

        assert len(corrections) == 1
        assert corrections[0].previous_seats == 3
        assert corrections[0].current_seats == 1
        db.expire_all()
        assert db.get(Lesson, lesson.id).current_seats == 1

    def test_nothing_to_repair(self, db, make_lesson) -> None:
        make_lesson()

        assert CapacityService(db).sync_seat_counts() == []


def test_lesson_length_is_preserved(db, make_lesson) -> None:
    lesson = make_lesson(hours=2)

    assert lesson.end_time - lesson.start_time == timedelta(hours=2)
