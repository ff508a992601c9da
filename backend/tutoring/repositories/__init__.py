# backend/tutoring/repositories/__init__.py
"""
Repository Pattern Implementation for the tutoring core.

This package provides the repository layer for data access,
separating business logic from database queries.

Key Components:
- BaseRepository: Foundation for all repositories with generic CRUD operations
- IRepository: Interface defining required methods for all repositories
- RepositoryFactory: Factory for creating repository instances
- LedgerRepository: Balances (locked read-modify-write) and ledger entries
- LessonRepository: Lessons and conditional seat counter updates
- BookingRepository: Bookings keyed by (student, lesson)
- TemplateRepository / TemplateApplicationRepository: Templates and their applications
- IdentityRepository: External identity links

Usage:
    from tutoring.repositories import RepositoryFactory

    # In a service:
    repository = RepositoryFactory.create_lesson_repository(db)
    taken = repository.increment_seats(lesson_id)

Repositories never commit; the owning service does.
"""

from .base_repository import BaseRepository, IRepository
from .booking_repository import BookingRepository
from .factory import RepositoryFactory
from .identity_repository import IdentityRepository
from .ledger_repository import LedgerRepository
from .lesson_repository import LessonRepository
from .template_repository import TemplateApplicationRepository, TemplateRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "IRepository",
    "IdentityRepository",
    "LedgerRepository",
    "LessonRepository",
    "RepositoryFactory",
    "TemplateApplicationRepository",
    "TemplateRepository",
    "UserRepository",
]
