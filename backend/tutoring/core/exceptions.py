# backend/tutoring/core/exceptions.py
"""
Domain-specific exceptions for the tutoring core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
Storage-level failures are translated into one of these kinds at the
repository/service boundary, so callers never inspect raw database errors.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException using the class status code."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when input validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested entity does not exist."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when a write conflicts with existing data (capacity, overlap, uniqueness)."""

    status_code = status.HTTP_409_CONFLICT


class InvalidStateException(DomainException):
    """Raised when a transition is attempted from the wrong state."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ForbiddenException(DomainException):
    """Raised when the actor lacks permission for an action."""

    status_code = status.HTTP_403_FORBIDDEN


class ServiceException(DomainException):
    """Raised when a service operation fails unexpectedly (storage failure, bug)."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class OperationCancelledException(DomainException):
    """Raised when the caller cancelled the operation or its deadline passed."""

    status_code = status.HTTP_408_REQUEST_TIMEOUT

    def __init__(self, reason: str = "cancelled", *, operation: Optional[str] = None):
        super().__init__(
            message=f"Operation aborted: {reason}",
            code="OPERATION_CANCELLED",
            details={"reason": reason, "operation": operation},
        )


# Ledger


class InsufficientFundsException(BusinessRuleException):
    """
    Raised when one or more users lack the credits an operation needs.

    Bulk operations report every shortfall at once through ``shortfalls``.
    """

    def __init__(self, shortfalls: List[Dict[str, Any]], message: Optional[str] = None):
        self.shortfalls = shortfalls
        if message is None:
            if len(shortfalls) == 1:
                item = shortfalls[0]
                message = (
                    f"Insufficient credits: balance {item['balance']}, "
                    f"required {item['required']}"
                )
            else:
                message = f"Insufficient credits for {len(shortfalls)} users"
        super().__init__(
            message=message,
            code="INSUFFICIENT_FUNDS",
            details={"shortfalls": shortfalls},
        )


class BalanceLimitExceededException(BusinessRuleException):
    """Raised when a credit would push a balance above the configured ceiling."""

    def __init__(self, user_id: str, balance: int, delta: int, max_balance: int):
        super().__init__(
            message=f"Balance would exceed the maximum of {max_balance} credits",
            code="BALANCE_LIMIT_EXCEEDED",
            details={
                "user_id": user_id,
                "balance": balance,
                "delta": delta,
                "max_balance": max_balance,
            },
        )


# Capacity guard


class LessonFullException(ConflictException):
    """Raised when a lesson has no free seats left."""

    def __init__(self, lesson_id: str):
        super().__init__(
            message="Lesson is full",
            code="LESSON_FULL",
            details={"lesson_id": lesson_id},
        )


class ScheduleConflictException(ConflictException):
    """Raised when a time interval overlaps an existing lesson or booking."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        scope: str = "teacher",
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = {"scope": scope}
        payload.update(details or {})
        super().__init__(
            message=message or "This time slot conflicts with an existing lesson",
            code="SCHEDULE_CONFLICT",
            details=payload,
        )


class LessonHasActiveBookingsException(InvalidStateException):
    """Raised when deleting a lesson that still has active bookings."""

    def __init__(self, lesson_id: str):
        super().__init__(
            message="Lesson has active bookings and cannot be deleted",
            code="LESSON_HAS_ACTIVE_BOOKINGS",
            details={"lesson_id": lesson_id},
        )


# Booking lifecycle


class DuplicateBookingException(ConflictException):
    """Raised when the student already holds an active booking for the lesson."""

    def __init__(self, student_id: str, lesson_id: str):
        super().__init__(
            message="Student already has an active booking for this lesson",
            code="DUPLICATE_BOOKING",
            details={"student_id": student_id, "lesson_id": lesson_id},
        )


class BookingNotActiveException(InvalidStateException):
    """Raised when cancelling a booking that is not active."""

    def __init__(self, booking_id: str, current_status: Optional[str] = None):
        super().__init__(
            message="Booking is not active",
            code="BOOKING_NOT_ACTIVE",
            details={"booking_id": booking_id, "status": current_status},
        )


class LessonPreviouslyCancelledException(BusinessRuleException):
    """Raised when a student tries to rebook a lesson they cancelled themselves."""

    def __init__(self, student_id: str, lesson_id: str):
        super().__init__(
            message="You cancelled this lesson earlier; ask an administrator to rebook it",
            code="LESSON_PREVIOUSLY_CANCELLED",
            details={"student_id": student_id, "lesson_id": lesson_id},
        )


class LessonInPastException(BusinessRuleException):
    """Raised when a non-admin books a lesson that has already started."""

    def __init__(self, lesson_id: str):
        super().__init__(
            message="Cannot book a lesson that has already started",
            code="LESSON_IN_PAST",
            details={"lesson_id": lesson_id},
        )


class CancellationWindowClosedException(BusinessRuleException):
    """Raised when a student cancels too close to the lesson start."""

    def __init__(self, booking_id: str, notice_hours: int):
        super().__init__(
            message=f"Bookings cannot be cancelled within {notice_hours} hours of the start",
            code="CANCELLATION_WINDOW_CLOSED",
            details={"booking_id": booking_id, "notice_hours": notice_hours},
        )


# Templates


class ApplicationStateException(InvalidStateException):
    """Raised when a template application cannot make the requested transition."""

    def __init__(self, application_id: str, current_status: str, target_status: str):
        super().__init__(
            message=(
                f"Template application {application_id} cannot move "
                f"from {current_status} to {target_status}"
            ),
            code="APPLICATION_INVALID_STATE",
            details={
                "application_id": application_id,
                "status": current_status,
                "target_status": target_status,
            },
        )


# Identity linker


class IdentityAlreadyLinkedException(ConflictException):
    """Raised when an external identity is already claimed by another user."""

    def __init__(self, external_id: str):
        super().__init__(
            message="This external account is already linked to another user",
            code="IDENTITY_ALREADY_LINKED",
            details={"external_id": external_id},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations that have no domain meaning.
    """
