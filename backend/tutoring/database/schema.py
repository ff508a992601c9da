"""
Schema creation, including the dialect-specific lesson exclusion guarantee.

PostgreSQL gets a GiST exclusion constraint over (teacher_id, [start, end));
SQLite gets BEFORE INSERT/UPDATE triggers that abort with the same name.
Either way the violation surfaces as an IntegrityError naming
``lessons_no_overlap_per_teacher``.
"""

from __future__ import annotations

import logging

from sqlalchemy import DDL, event
from sqlalchemy.engine import Engine

from tutoring.database import Base
from tutoring.models import Lesson
from tutoring.models.lesson import LESSON_OVERLAP_CONSTRAINT

logger = logging.getLogger(__name__)

_PG_BTREE_GIST = DDL("CREATE EXTENSION IF NOT EXISTS btree_gist")

_PG_LESSON_EXCLUSION = DDL(
    f"""
    ALTER TABLE lessons
      ADD CONSTRAINT {LESSON_OVERLAP_CONSTRAINT}
      EXCLUDE USING gist (
        teacher_id WITH =,
        tstzrange(start_time, end_time, '[)') WITH &&
      )
      WHERE (deleted_at IS NULL)
    """
)

_SQLITE_OVERLAP_PREDICATE = """
    SELECT RAISE(ABORT, '{name}')
    WHERE EXISTS (
        SELECT 1 FROM lessons AS other
        WHERE other.teacher_id = NEW.teacher_id
          AND other.deleted_at IS NULL
          AND other.id <> NEW.id
          AND other.start_time < NEW.end_time
          AND NEW.start_time < other.end_time
    );
""".format(name=LESSON_OVERLAP_CONSTRAINT)

_SQLITE_LESSON_INSERT_TRIGGER = DDL(
    f"""
    CREATE TRIGGER {LESSON_OVERLAP_CONSTRAINT}_insert
    BEFORE INSERT ON lessons
    WHEN NEW.deleted_at IS NULL
    BEGIN
    {_SQLITE_OVERLAP_PREDICATE}
    END
    """
)

_SQLITE_LESSON_UPDATE_TRIGGER = DDL(
    f"""
    CREATE TRIGGER {LESSON_OVERLAP_CONSTRAINT}_update
    BEFORE UPDATE OF teacher_id, start_time, end_time, deleted_at ON lessons
    WHEN NEW.deleted_at IS NULL
    BEGIN
    {_SQLITE_OVERLAP_PREDICATE}
    END
    """
)

event.listen(Base.metadata, "before_create", _PG_BTREE_GIST.execute_if(dialect="postgresql"))
event.listen(Lesson.__table__, "after_create", _PG_LESSON_EXCLUSION.execute_if(dialect="postgresql"))
event.listen(Lesson.__table__, "after_create", _SQLITE_LESSON_INSERT_TRIGGER.execute_if(dialect="sqlite"))
event.listen(Lesson.__table__, "after_create", _SQLITE_LESSON_UPDATE_TRIGGER.execute_if(dialect="sqlite"))


def init_db(bind: Engine) -> None:
    """Create all tables, constraints and triggers (idempotent for existing tables)."""
    Base.metadata.create_all(bind=bind)
    logger.info("Database schema ready", extra={"dialect": bind.dialect.name})


def drop_db(bind: Engine) -> None:
    """Drop every table owned by the core."""
    Base.metadata.drop_all(bind=bind)
