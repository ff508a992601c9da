# backend/tutoring/models/user.py
"""
User model for the tutoring core.

Students, teachers and administrators share one table and are told apart by
``role``. Authentication lives outside the core; it only needs identity and
role to decide policy overrides.
"""

import logging

from sqlalchemy import CheckConstraint, Column, DateTime, String
import ulid

from ..core.enums import RoleName
from ..core.timezone_utils import utc_now
from ..database import Base

logger = logging.getLogger(__name__)


class User(Base):
    """Platform account (student, teacher or admin)."""

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=RoleName.STUDENT.value)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("role IN ('student', 'teacher', 'admin')", name="ck_users_role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == RoleName.ADMIN.value

    @property
    def can_teach(self) -> bool:
        return self.role in (RoleName.TEACHER.value, RoleName.ADMIN.value)

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email} role={self.role}>"
