"""
Identify which named constraint an IntegrityError violated.

PostgreSQL reports the constraint name through ``diag``; SQLite only reports
the columns of a UNIQUE violation, or the message raised by a trigger, so
unique constraints are registered here with their columns.
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from tutoring.models.booking import BOOKING_UNIQUE_CONSTRAINT
from tutoring.models.identity import IDENTITY_EXTERNAL_ID_INDEX, IDENTITY_USER_ID_INDEX
from tutoring.models.lesson import LESSON_OVERLAP_CONSTRAINT
from tutoring.models.template import LIVE_APPLICATION_INDEX

_SQLITE_UNIQUE_PREFIX = "UNIQUE constraint failed: "

UNIQUE_CONSTRAINT_COLUMNS: Dict[str, Tuple[str, ...]] = {
    BOOKING_UNIQUE_CONSTRAINT: ("bookings.student_id", "bookings.lesson_id"),
    IDENTITY_EXTERNAL_ID_INDEX: ("external_identity_links.external_id",),
    IDENTITY_USER_ID_INDEX: ("external_identity_links.user_id",),
    LIVE_APPLICATION_INDEX: (
        "template_applications.template_id",
        "template_applications.week_start_date",
    ),
    "uq_balances_user_id": ("balances.user_id",),
    "uq_ledger_entries_idempotency_key": ("ledger_entries.idempotency_key",),
}

_MESSAGE_CONSTRAINTS = (LESSON_OVERLAP_CONSTRAINT,)


def violated_constraint(exc: IntegrityError) -> Optional[str]:
    """Return the name of the violated constraint, or None when it cannot be told."""
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    if diag is not None:
        name = getattr(diag, "constraint_name", None)
        if name:
            return str(name)

    text = str(orig if orig is not None else exc)
    for name in _MESSAGE_CONSTRAINTS:
        if name in text:
            return name

    for line in text.splitlines():
        if line.startswith(_SQLITE_UNIQUE_PREFIX):
            columns = tuple(part.strip() for part in line[len(_SQLITE_UNIQUE_PREFIX):].split(","))
            for name, expected in UNIQUE_CONSTRAINT_COLUMNS.items():
                if columns == expected:
                    return name

    for name in UNIQUE_CONSTRAINT_COLUMNS:
        if name in text:
            return name
    return None


def is_violation_of(exc: IntegrityError, constraint_name: str) -> bool:
    return violated_constraint(exc) == constraint_name
