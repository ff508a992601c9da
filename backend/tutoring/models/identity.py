# backend/tutoring/models/identity.py
"""
External identity link (e.g. a messaging account bound to a platform user).

Both sides are unique: a user has at most one link and an external id maps
to at most one user.
"""

from typing import Any

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base

IDENTITY_EXTERNAL_ID_INDEX = "uq_external_identity_links_external_id"
IDENTITY_USER_ID_INDEX = "uq_external_identity_links_user_id"


class ExternalIdentityLink(Base):
    """Binding between a platform user and an external account id."""

    __tablename__ = "external_identity_links"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    external_id = Column(String(255), nullable=False)
    # "metadata" is reserved on declarative classes
    link_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(IDENTITY_EXTERNAL_ID_INDEX, "external_id", unique=True),
        Index(IDENTITY_USER_ID_INDEX, "user_id", unique=True),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "external_id": self.external_id,
            "metadata": dict(self.link_metadata or {}),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<ExternalIdentityLink user={self.user_id} external_id={self.external_id}>"
