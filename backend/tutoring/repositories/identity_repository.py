# backend/tutoring/repositories/identity_repository.py
"""Repository for external identity links."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, cast

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..models.identity import ExternalIdentityLink
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class IdentityRepository(BaseRepository[ExternalIdentityLink]):
    """Data access for user <-> external account links."""

    def __init__(self, db: Session):
        super().__init__(db, ExternalIdentityLink)

    def get_by_external_id(
        self, external_id: str, *, for_update: bool = False
    ) -> Optional[ExternalIdentityLink]:
        try:
            query = self._query(for_update=for_update).filter(
                ExternalIdentityLink.external_id == external_id
            )
            if for_update:
                query = query.populate_existing()
            return cast(Optional[ExternalIdentityLink], query.first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load link for external id: %s", str(exc))
            raise RepositoryException("Failed to load identity link") from exc

    def get_by_user_id(
        self, user_id: str, *, for_update: bool = False
    ) -> Optional[ExternalIdentityLink]:
        try:
            query = self._query(for_update=for_update).filter(
                ExternalIdentityLink.user_id == user_id
            )
            if for_update:
                query = query.populate_existing()
            return cast(Optional[ExternalIdentityLink], query.first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load link for user %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to load identity link") from exc

    def create_link(
        self, *, user_id: str, external_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ExternalIdentityLink:
        """Insert a link; either uniqueness violation surfaces as IntegrityError."""
        return self.create_guarded(
            user_id=user_id,
            external_id=external_id,
            link_metadata=dict(metadata or {}),
        )

    def update_link(
        self,
        link: ExternalIdentityLink,
        *,
        external_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ExternalIdentityLink:
        """Re-point an existing link inside a SAVEPOINT (IntegrityError on conflicts)."""
        with self.db.begin_nested():
            link.external_id = external_id
            if metadata is not None:
                link.link_metadata = dict(metadata)
            link.updated_at = utc_now()
            self.db.flush()
        return link

    def delete_for_user(self, user_id: str) -> bool:
        try:
            result = self.db.execute(
                delete(ExternalIdentityLink)
                .where(ExternalIdentityLink.user_id == user_id)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to unlink user %s: %s", user_id, str(exc))
            raise RepositoryException("Failed to remove identity link") from exc


__all__ = ["IdentityRepository"]
