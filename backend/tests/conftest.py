# backend/tests/conftest.py
"""
Pytest configuration with PRODUCTION DATABASE PROTECTION.

The database URL is pointed at a throw-away SQLite file (or at
TEST_DATABASE_URL when set) BEFORE any tutoring module is imported, because
the engine is built from settings at import time. Every test gets a fresh
set of tables: rows are wiped after each test.
"""

import os
import tempfile

# CRITICAL: Configure the database BEFORE any tutoring imports!
_TEST_DB_DIR = tempfile.mkdtemp(prefix="tutoring-tests-")
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL") or (
    f"sqlite:///{os.path.join(_TEST_DB_DIR, 'tutoring_test.db')}"
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["ENVIRONMENT"] = "test"

from datetime import date, datetime, time, timedelta, timezone
import itertools
from typing import Callable, Iterator, Optional

import pytest
from sqlalchemy.orm import Session

from tutoring.core.config import settings
from tutoring.core.enums import RoleName
from tutoring.database import Base, SessionLocal, engine
from tutoring.database.schema import drop_db, init_db
from tutoring.models.lesson import Lesson
from tutoring.models.user import User
from tutoring.services.capacity_service import CapacityService
from tutoring.services.ledger_service import LedgerService

# ============================================================================
# PRODUCTION DATABASE PROTECTION
# ============================================================================


def _validate_test_database_url(database_url: str) -> None:
    """
    Validate that we're not using a production database for tests.

    Raises:
        RuntimeError: If the database URL appears to be a production database
    """
    if not database_url:
        raise RuntimeError("No database URL configured for tests!")

    if settings.is_production_database(database_url):
        raise RuntimeError(
            "\n\n" + "=" * 60 + "\n"
            "CRITICAL ERROR: ATTEMPTING TO RUN TESTS ON PRODUCTION DATABASE!\n"
            + "=" * 60 + "\n"
            "Tests WIPE THE DATABASE after each test.\n"
            "Set TEST_DATABASE_URL to a local test database instead.\n"
        )


_validate_test_database_url(TEST_DATABASE_URL)


# ============================================================================
# Schema and sessions
# ============================================================================


def _wipe_tables() -> None:
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="session", autouse=True)
def _schema() -> Iterator[None]:
    drop_db(engine)
    init_db(engine)
    yield
    drop_db(engine)
    engine.dispose()


@pytest.fixture
def db() -> Iterator[Session]:
    """Session for the test body; tables are wiped afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        _wipe_tables()


@pytest.fixture
def session_factory():
    """Factory for per-thread sessions in concurrency tests."""
    return SessionLocal


# ============================================================================
# Users and money
# ============================================================================


@pytest.fixture
def make_user(db: Session) -> Callable[..., User]:
    counter = itertools.count(1)

    def _make(role: RoleName = RoleName.STUDENT, name: Optional[str] = None) -> User:
        n = next(counter)
        user = User(
            email=f"{role.value}-{n}-{os.urandom(4).hex()}@example.com",
            full_name=name or f"{role.value.title()} {n}",
            role=role.value,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def admin(make_user) -> User:
    return make_user(RoleName.ADMIN, "Ada Admin")


@pytest.fixture
def teacher(make_user) -> User:
    return make_user(RoleName.TEACHER, "Tess Teacher")


@pytest.fixture
def second_teacher(make_user) -> User:
    return make_user(RoleName.TEACHER, "Theo Teacher")


@pytest.fixture
def student(make_user) -> User:
    return make_user(RoleName.STUDENT, "Sam Student")


@pytest.fixture
def students(make_user) -> list[User]:
    return [make_user(RoleName.STUDENT) for _ in range(8)]


@pytest.fixture
def fund(db: Session, admin: User) -> Callable[[User, int], None]:
    """Top up a balance through the ledger so reconciliation stays exact."""

    def _fund(user: User, amount: int) -> None:
        service = LedgerService(db)
        remaining = amount
        while remaining > 0:
            chunk = min(remaining, settings.max_credit_operation)
            service.add_credits(user.id, chunk, actor_id=admin.id, reason="test funding")
            remaining -= chunk

    return _fund


# ============================================================================
# Time and lessons
# ============================================================================


def future_week_start(weeks_ahead: int = 2) -> date:
    """Monday ``weeks_ahead`` weeks from now (UTC)."""
    today = datetime.now(timezone.utc).date()
    this_monday = today - timedelta(days=today.weekday())
    return this_monday + timedelta(weeks=weeks_ahead)


def at(week_start: date, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(week_start + timedelta(days=day), time(hour, minute), tzinfo=timezone.utc)


@pytest.fixture
def week_start() -> date:
    return future_week_start()


@pytest.fixture
def make_lesson(db: Session, teacher: User, week_start: date) -> Callable[..., Lesson]:
    """Create a lesson through the capacity guard (defaults: Monday 10:00-11:00, 1 seat, 1 credit)."""

    def _make(
        *,
        day: int = 0,
        hour: int = 10,
        hours: int = 1,
        max_seats: int = 1,
        credits_cost: int = 1,
        owner: Optional[User] = None,
        start: Optional[datetime] = None,
    ) -> Lesson:
        start_time = start or at(week_start, day, hour)
        return CapacityService(db).create_lesson(
            teacher_id=(owner or teacher).id,
            start_time=start_time,
            end_time=start_time + timedelta(hours=hours),
            max_seats=max_seats,
            credits_cost=credits_cost,
        )

    return _make


@pytest.fixture
def slot_at(week_start: date) -> Callable[..., datetime]:
    """UTC datetime for (day, hour[, minute]) in the test week."""

    def _at(day: int, hour: int, minute: int = 0) -> datetime:
        return at(week_start, day, hour, minute)

    return _at
