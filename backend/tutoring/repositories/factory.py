# backend/tutoring/repositories/factory.py
"""
Repository Factory for the tutoring core.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .identity_repository import IdentityRepository
    from .ledger_repository import LedgerRepository
    from .lesson_repository import LessonRepository
    from .template_repository import TemplateApplicationRepository, TemplateRepository
    from .user_repository import UserRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_user_repository(db: Session) -> "UserRepository":
        from .user_repository import UserRepository

        return UserRepository(db)

    @staticmethod
    def create_ledger_repository(db: Session) -> "LedgerRepository":
        """Create repository for balances and ledger entries."""
        from .ledger_repository import LedgerRepository

        return LedgerRepository(db)

    @staticmethod
    def create_lesson_repository(db: Session) -> "LessonRepository":
        """Create repository for lessons and seat counters."""
        from .lesson_repository import LessonRepository

        return LessonRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_template_repository(db: Session) -> "TemplateRepository":
        from .template_repository import TemplateRepository

        return TemplateRepository(db)

    @staticmethod
    def create_template_application_repository(db: Session) -> "TemplateApplicationRepository":
        from .template_repository import TemplateApplicationRepository

        return TemplateApplicationRepository(db)

    @staticmethod
    def create_identity_repository(db: Session) -> "IdentityRepository":
        """Create repository for external identity links."""
        from .identity_repository import IdentityRepository

        return IdentityRepository(db)
