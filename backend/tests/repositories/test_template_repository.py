from datetime import time

from tutoring.core.enums import TemplateApplicationStatus
from tutoring.repositories.factory import RepositoryFactory


def _slot(teacher, day, student_ids, hour=10):
    return {
        "day_of_week": day,
        "start_time": time(hour, 0),
        "end_time": time(hour + 1, 0),
        "teacher_id": teacher.id,
        "max_seats": 2,
        "credits_cost": 1,
        "subject": None,
        "color": "#336699",
        "student_ids": student_ids,
    }


def test_template_round_trip(db, admin, teacher, students):
    repo = RepositoryFactory.create_template_repository(db)
    created = repo.create_template(
        name="Week A",
        created_by=admin.id,
        description="Core timetable",
        lessons=[
            _slot(teacher, 2, [students[2].id]),
            _slot(teacher, 0, [students[0].id, students[1].id]),
        ],
    )
    db.commit()
    db.expire_all()

    loaded = repo.get_with_lessons(created.id)

    assert [slot.day_of_week for slot in loaded.lessons] == [0, 2]
    assert sorted(loaded.lessons[0].student_ids) == sorted([students[0].id, students[1].id])
    assert [template.id for template in repo.list_templates()] == [created.id]


def test_application_status_chain(db, admin, teacher, week_start):
    template = RepositoryFactory.create_template_repository(db).create_template(
        name="Week B", created_by=admin.id, description=None, lessons=[_slot(teacher, 1, [])]
    )
    repo = RepositoryFactory.create_template_application_repository(db)
    first = repo.create_application(
        template_id=template.id, applied_by=admin.id, week_start_date=week_start
    )

    assert repo.get_live(template.id, week_start).id == first.id
    assert repo.transition(first.id, TemplateApplicationStatus.REPLACED) is True
    # Terminal states do not move again
    assert repo.transition(first.id, TemplateApplicationStatus.ROLLED_BACK) is False
    assert repo.transition(first.id, TemplateApplicationStatus.APPLIED) is False
    assert repo.get_live(template.id, week_start) is None

    second = repo.create_application(
        template_id=template.id, applied_by=admin.id, week_start_date=week_start
    )
    repo.set_replaced_by(first.id, second.id)
    repo.set_totals(second.id, created_lessons=1, created_bookings=0, debited_credits=0)
    db.commit()
    db.expire_all()

    history = repo.list_for_week(week_start)
    assert [item.id for item in history] == [first.id, second.id]
    assert history[0].replaced_by_id == second.id
    assert history[1].created_lessons == 1
