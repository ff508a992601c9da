# backend/tutoring/services/identity_service.py
"""
Identity Linker for the tutoring core.

Binds an external account id (e.g. a messaging handle) to exactly one user.
Both candidate rows are locked before the outcome is decided: first the row
keyed by the external id, then the row keyed by the user. An insert that
still loses a uniqueness race is resolved by re-reading the winner, so the
caller always gets a domain answer instead of a constraint error.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    ConflictException,
    DomainException,
    IdentityAlreadyLinkedException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.operation_context import OperationContext
from ..database.errors import violated_constraint
from ..models.identity import (
    IDENTITY_EXTERNAL_ID_INDEX,
    IDENTITY_USER_ID_INDEX,
    ExternalIdentityLink,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)


class IdentityService(BaseService):
    """Link, unlink and look up external identities."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.identity_repository = RepositoryFactory.create_identity_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    def _resolve_lost_race(
        self, exc: IntegrityError, user_id: str, external_id: str
    ) -> ExternalIdentityLink:
        """Decide the outcome after a concurrent transaction inserted first."""
        constraint = violated_constraint(exc)
        if constraint == IDENTITY_EXTERNAL_ID_INDEX:
            winner = self.identity_repository.get_by_external_id(external_id, for_update=True)
            if winner is not None and winner.user_id == user_id:
                return winner
            raise IdentityAlreadyLinkedException(external_id) from exc
        if constraint == IDENTITY_USER_ID_INDEX:
            current = self.identity_repository.get_by_user_id(user_id, for_update=True)
            if current is not None and current.external_id == external_id:
                return current
            raise ConflictException(
                "User was linked to another account concurrently",
                code="IDENTITY_LINK_CONFLICT",
                details={"user_id": user_id},
            ) from exc
        raise ServiceException("Identity link rejected by the database") from exc

    @BaseService.measure_operation("link_atomic")
    def link_atomic(
        self,
        user_id: str,
        external_id: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        ctx: Optional[OperationContext] = None,
    ) -> ExternalIdentityLink:
        """
        Claim ``external_id`` for ``user_id``.

        Re-linking the same pair is idempotent (metadata is refreshed when
        given); a user that already has a link is moved to the new external id.

        Raises:
            NotFoundException: The user does not exist
            IdentityAlreadyLinkedException: Another user holds the external id
        """
        external_id = (external_id or "").strip()
        if not external_id:
            raise ValidationException("External id is required", code="EXTERNAL_ID_REQUIRED")

        outcome = "linked"
        try:
            with self.transaction(ctx):
                if self.user_repository.get_active(user_id) is None:
                    raise NotFoundException(
                        "User not found", code="USER_NOT_FOUND", details={"user_id": user_id}
                    )

                by_external = self.identity_repository.get_by_external_id(
                    external_id, for_update=True
                )
                if by_external is not None and by_external.user_id != user_id:
                    raise IdentityAlreadyLinkedException(external_id)
                by_user = self.identity_repository.get_by_user_id(user_id, for_update=True)

                if by_external is not None:
                    outcome = "unchanged"
                    link = by_external
                    if metadata is not None:
                        link = self.identity_repository.update_link(
                            by_external, external_id=external_id, metadata=metadata
                        )
                        outcome = "updated"
                elif by_user is not None:
                    outcome = "relinked"
                    try:
                        link = self.identity_repository.update_link(
                            by_user, external_id=external_id, metadata=metadata
                        )
                    except IntegrityError as exc:
                        link = self._resolve_lost_race(exc, user_id, external_id)
                else:
                    try:
                        link = self.identity_repository.create_link(
                            user_id=user_id, external_id=external_id, metadata=metadata
                        )
                    except IntegrityError as exc:
                        outcome = "race_resolved"
                        link = self._resolve_lost_race(exc, user_id, external_id)
        except DomainException as exc:
            prometheus_metrics.record_identity_link(exc.code)
            raise

        prometheus_metrics.record_identity_link(outcome)
        self.log_operation("link_identity", user_id=user_id, outcome=outcome)
        return link

    @BaseService.measure_operation("unlink")
    def unlink(self, user_id: str, *, ctx: Optional[OperationContext] = None) -> None:
        with self.transaction(ctx):
            if not self.identity_repository.delete_for_user(user_id):
                raise NotFoundException(
                    "No linked account", code="IDENTITY_NOT_FOUND", details={"user_id": user_id}
                )
        self.log_operation("unlink_identity", user_id=user_id)

    @BaseService.measure_operation("get_by_external_id")
    def get_by_external_id(self, external_id: str) -> ExternalIdentityLink:
        with self.read_snapshot():
            link = self.identity_repository.get_by_external_id(external_id)
        if link is None:
            raise NotFoundException(
                "No user linked to this account",
                code="IDENTITY_NOT_FOUND",
                details={"external_id": external_id},
            )
        return link

    @BaseService.measure_operation("get_by_user")
    def get_by_user(self, user_id: str) -> ExternalIdentityLink:
        with self.read_snapshot():
            link = self.identity_repository.get_by_user_id(user_id)
        if link is None:
            raise NotFoundException(
                "No linked account", code="IDENTITY_NOT_FOUND", details={"user_id": user_id}
            )
        return link
