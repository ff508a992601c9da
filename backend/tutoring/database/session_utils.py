"""
Dialect lookup for code that must branch between PostgreSQL and SQLite.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

POSTGRESQL = "postgresql"
SQLITE = "sqlite"


def dialect_of(session: Session) -> str:
    """Dialect name of the engine the session is bound to."""
    return str(session.get_bind().dialect.name)


def is_postgres(session: Session) -> bool:
    return dialect_of(session) == POSTGRESQL
