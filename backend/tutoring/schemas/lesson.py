"""Capacity guard result schemas."""

from .base import StandardizedModel


class SeatCountCorrection(StandardizedModel):
    """A lesson whose seat counter was repaired from its active bookings."""

    lesson_id: str
    previous_seats: int
    current_seats: int
