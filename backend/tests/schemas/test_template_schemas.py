from datetime import time

from pydantic import ValidationError
import pytest

from tutoring.schemas.template import ApplyTemplateResult, TemplateCreate, TemplateLessonCreate


def _slot(**overrides) -> dict:
    payload = {
        "day_of_week": 0,
        "start_time": time(9, 0),
        "end_time": time(10, 0),
        "teacher_id": "T1",
        "max_seats": 2,
        "credits_cost": 1,
    }
    payload.update(overrides)
    return payload


def test_slot_requires_end_after_start() -> None:
    with pytest.raises(ValidationError) as exc:
        TemplateLessonCreate(**_slot(end_time=time(9, 0)))
    assert "End time must be after start time" in str(exc.value)


def test_slot_rejects_repeated_students() -> None:
    with pytest.raises(ValidationError) as exc:
        TemplateLessonCreate(**_slot(student_ids=["S1", "S1"]))
    assert "only be assigned to a slot once" in str(exc.value)


def test_slot_rejects_more_students_than_seats() -> None:
    with pytest.raises(ValidationError) as exc:
        TemplateLessonCreate(**_slot(max_seats=1, student_ids=["S1", "S2"]))
    assert "2 students assigned to a slot with 1 seats" in str(exc.value)


@pytest.mark.parametrize(
    "overrides",
    [
        {"day_of_week": 7},
        {"max_seats": 0},
        {"credits_cost": 101},
        {"color": "blue"},
        {"unexpected": True},
    ],
)
def test_slot_field_bounds(overrides) -> None:
    with pytest.raises(ValidationError):
        TemplateLessonCreate(**_slot(**overrides))


def test_slot_accepts_hex_color_and_free_lessons() -> None:
    slot = TemplateLessonCreate(**_slot(color="#A0b1C2", credits_cost=0))
    assert slot.color == "#A0b1C2"
    assert slot.student_ids == []


def test_template_rejects_overlapping_slots_for_one_teacher() -> None:
    with pytest.raises(ValidationError) as exc:
        TemplateCreate(
            name="Week",
            lessons=[
                _slot(),
                _slot(start_time=time(9, 30), end_time=time(10, 30)),
            ],
        )
    assert "overlapping slots on day 0" in str(exc.value)


def test_template_allows_back_to_back_and_other_teachers() -> None:
    template = TemplateCreate(
        name="Week",
        lessons=[
            _slot(),
            _slot(start_time=time(10, 0), end_time=time(11, 0)),
            _slot(teacher_id="T2"),
            _slot(day_of_week=1),
        ],
    )
    assert len(template.lessons) == 4


def test_template_needs_a_name_and_slots() -> None:
    with pytest.raises(ValidationError):
        TemplateCreate(name="", lessons=[_slot()])
    with pytest.raises(ValidationError):
        TemplateCreate(name="Week", lessons=[])


def test_apply_result_defaults() -> None:
    result = ApplyTemplateResult(template_id="TPL", week_start_date="2030-01-07")
    assert result.created_lessons == 0
    assert result.skipped_bookings == []
    assert result.cleanup.replaced_application_id is None
