# backend/tutoring/core/enums.py
"""
Core enums for the tutoring core.

Lifecycle enums carry their own transition table. Repositories use
``expected_sources()`` to build the status predicate of every conditional
update, so an UPDATE can only move a row along an allowed edge.
"""

from enum import Enum
from typing import Dict, FrozenSet, Tuple


class RoleName(str, Enum):
    """Roles known to the core. Admins may override booking policies."""

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class BookingStatus(str, Enum):
    """Booking lifecycle statuses. Neither state is terminal."""

    ACTIVE = "active"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "BookingStatus") -> bool:
        return target in _BOOKING_TRANSITIONS[self]

    @classmethod
    def expected_sources(cls, target: "BookingStatus") -> Tuple["BookingStatus", ...]:
        return tuple(src for src, targets in _BOOKING_TRANSITIONS.items() if target in targets)


_BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.ACTIVE: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset({BookingStatus.ACTIVE}),
}


class TemplateApplicationStatus(str, Enum):
    """
    Status chain of a bulk template application.

    APPLIED is the only live state; REPLACED and ROLLED_BACK keep the audit
    trail of earlier applications for the same template and week.
    """

    APPLIED = "applied"
    REPLACED = "replaced"
    ROLLED_BACK = "rolled_back"

    def can_transition_to(self, target: "TemplateApplicationStatus") -> bool:
        return target in _APPLICATION_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _APPLICATION_TRANSITIONS[self]

    @classmethod
    def expected_sources(
        cls, target: "TemplateApplicationStatus"
    ) -> Tuple["TemplateApplicationStatus", ...]:
        return tuple(
            src for src, targets in _APPLICATION_TRANSITIONS.items() if target in targets
        )


_APPLICATION_TRANSITIONS: Dict[TemplateApplicationStatus, FrozenSet[TemplateApplicationStatus]] = {
    TemplateApplicationStatus.APPLIED: frozenset(
        {TemplateApplicationStatus.REPLACED, TemplateApplicationStatus.ROLLED_BACK}
    ),
    TemplateApplicationStatus.REPLACED: frozenset(),
    TemplateApplicationStatus.ROLLED_BACK: frozenset(),
}


class LedgerOperationType(str, Enum):
    """Kinds of balance mutations recorded in the ledger."""

    ADD = "add"  # administrative or payment top-up
    DEDUCT = "deduct"  # administrative debit
    BOOKING_DEBIT = "booking_debit"
    TEMPLATE_DEBIT = "template_debit"
    REFUND = "refund"
