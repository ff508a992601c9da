from datetime import datetime, timezone

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from tutoring.core.enums import RoleName
from tutoring.database import engine
from tutoring.models.user import User
from tutoring.repositories.factory import RepositoryFactory


def test_lookups_through_a_concrete_repository(db, make_user) -> None:
    teacher = make_user(RoleName.TEACHER, "Tess")
    gone = make_user(RoleName.STUDENT)
    db.execute(
        update(User)
        .where(User.id == gone.id)
        .values(deleted_at=datetime(2030, 1, 1, tzinfo=timezone.utc))
    )
    db.commit()
    db.expire_all()
    repo = RepositoryFactory.create_user_repository(db)

    assert repo.get_by_id(teacher.id).full_name == "Tess"
    assert repo.get_by_id("missing") is None
    assert repo.get_by_id(teacher.id, for_update=True).id == teacher.id
    assert repo.get_active(gone.id) is None
    assert set(repo.get_many([teacher.id, gone.id, teacher.id])) == {teacher.id}
    assert repo.dialect_name == engine.dialect.name


def test_create_guarded_keeps_the_transaction_usable(db, student) -> None:
    repo = RepositoryFactory.create_user_repository(db)

    with pytest.raises(IntegrityError):
        repo.create_guarded(email=student.email, full_name="Copy", role=RoleName.STUDENT.value)

    created = repo.create(email="fresh@example.com", full_name="Fresh", role=RoleName.STUDENT.value)
    db.commit()

    assert repo.get_by_id(created.id) is not None
