"""Caller-supplied cancellation and deadline signal for core operations."""

from __future__ import annotations

import threading
import time
from typing import Optional

from .exceptions import OperationCancelledException


class OperationContext:
    """
    Cancellation token with an optional deadline.

    Services check it when a transaction opens, between orchestration steps
    and right before commit. A tripped context makes the enclosing
    transaction roll back.
    """

    def __init__(self, deadline_seconds: Optional[float] = None, *, name: str = ""):
        self.name = name
        self._event = threading.Event()
        self._deadline: Optional[float] = (
            time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        )

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def remaining_seconds(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self, operation: Optional[str] = None) -> None:
        if self.cancelled:
            raise OperationCancelledException("cancelled", operation=operation)
        if self.expired:
            raise OperationCancelledException("deadline exceeded", operation=operation)

    def __repr__(self) -> str:
        return (
            f"<OperationContext {self.name or 'anonymous'}: "
            f"cancelled={self.cancelled} remaining={self.remaining_seconds()}>"
        )


def check_context(ctx: Optional[OperationContext], operation: Optional[str] = None) -> None:
    """Check ``ctx`` when one was supplied."""
    if ctx is not None:
        ctx.check(operation)
