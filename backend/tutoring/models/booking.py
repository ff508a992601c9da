# backend/tutoring/models/booking.py
"""
Booking model.

One row per (student, lesson) pair. The row cycles between ``active`` and
``cancelled``; the uniqueness constraint on the pair is what keeps two
concurrent creates from both succeeding.
"""

from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import ulid

from ..core.enums import BookingStatus
from ..core.timezone_utils import utc_now
from ..database import Base

BOOKING_UNIQUE_CONSTRAINT = "uq_bookings_student_lesson"


class Booking(Base):
    """A student's seat in a lesson."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    student_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    lesson_id = Column(String(26), ForeignKey("lessons.id"), nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.ACTIVE.value)

    # Amount debited when the booking last became active; refunded on cancel
    credits_charged = Column(Integer, nullable=False, default=0)

    booked_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    rebooking_blocked = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    lesson = relationship("Lesson", foreign_keys=[lesson_id])

    __table_args__ = (
        UniqueConstraint("student_id", "lesson_id", name=BOOKING_UNIQUE_CONSTRAINT),
        CheckConstraint("status IN ('active', 'cancelled')", name="ck_bookings_status"),
        CheckConstraint("credits_charged >= 0", name="ck_bookings_credits_charged"),
        Index("ix_bookings_lesson_status", "lesson_id", "status"),
        Index("ix_bookings_student_status", "student_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == BookingStatus.ACTIVE.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "lesson_id": self.lesson_id,
            "status": self.status,
            "credits_charged": self.credits_charged,
            "booked_at": self.booked_at.isoformat() if self.booked_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancelled_by_id": self.cancelled_by_id,
            "rebooking_blocked": self.rebooking_blocked,
        }

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: student={self.student_id} "
            f"lesson={self.lesson_id} status={self.status}>"
        )
