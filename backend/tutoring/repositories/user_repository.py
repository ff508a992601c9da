# backend/tutoring/repositories/user_repository.py
"""User lookups used for actor/role checks."""

import logging
from typing import Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.user import User
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    """Repository for platform users."""

    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_active(self, user_id: str) -> Optional[User]:
        """Return the user unless it does not exist or was deleted."""
        user = self.get_by_id(user_id)
        if user is None or user.deleted_at is not None:
            return None
        return user

    def get_many(self, user_ids: Iterable[str]) -> Dict[str, User]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        try:
            users = (
                self.db.query(User)
                .filter(User.id.in_(ids), User.deleted_at.is_(None))
                .all()
            )
            return {user.id: user for user in users}
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load users: %s", str(exc))
            raise RepositoryException("Failed to load users") from exc


__all__ = ["UserRepository"]
