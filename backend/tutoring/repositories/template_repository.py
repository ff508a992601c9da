# backend/tutoring/repositories/template_repository.py
"""
Template Repository for the tutoring core.

Handles weekly templates (with their slots and assigned students) and the
TemplateApplication records produced by applying a template to a week.
"""

from __future__ import annotations

from datetime import date
import logging
from typing import Any, Dict, List, Optional, cast

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..core.enums import TemplateApplicationStatus
from ..core.exceptions import RepositoryException
from ..models.template import (
    LessonTemplate,
    TemplateApplication,
    TemplateLesson,
    TemplateLessonStudent,
)
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class TemplateRepository(BaseRepository[LessonTemplate]):
    """Repository for lesson templates."""

    def __init__(self, db: Session):
        super().__init__(db, LessonTemplate)

    def create_template(
        self,
        *,
        name: str,
        created_by: str,
        description: Optional[str],
        lessons: List[Dict[str, Any]],
    ) -> LessonTemplate:
        """
        Create a template with its slots.

        Each lesson dict carries the TemplateLesson columns plus ``student_ids``.
        """
        try:
            template = LessonTemplate(name=name, description=description, created_by=created_by)
            for lesson_data in lessons:
                data = dict(lesson_data)
                student_ids = data.pop("student_ids", [])
                slot = TemplateLesson(**data)
                slot.students = [
                    TemplateLessonStudent(student_id=student_id) for student_id in student_ids
                ]
                template.lessons.append(slot)
            self.db.add(template)
            self.db.flush()
            return template
        except SQLAlchemyError as exc:
            self.logger.error("Failed to create template %s: %s", name, str(exc))
            raise RepositoryException("Failed to create template") from exc

    def get_with_lessons(self, template_id: str) -> Optional[LessonTemplate]:
        try:
            template = (
                self.db.query(LessonTemplate)
                .options(
                    selectinload(LessonTemplate.lessons).selectinload(TemplateLesson.students)
                )
                .filter(LessonTemplate.id == template_id, LessonTemplate.deleted_at.is_(None))
                .first()
            )
            return cast(Optional[LessonTemplate], template)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load template %s: %s", template_id, str(exc))
            raise RepositoryException("Failed to load template") from exc

    def list_templates(self) -> List[LessonTemplate]:
        try:
            templates = (
                self.db.query(LessonTemplate)
                .filter(LessonTemplate.deleted_at.is_(None))
                .order_by(LessonTemplate.created_at.desc())
                .all()
            )
            return cast(List[LessonTemplate], templates)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to list templates: %s", str(exc))
            raise RepositoryException("Failed to list templates") from exc


class TemplateApplicationRepository(BaseRepository[TemplateApplication]):
    """Repository for template application records."""

    def __init__(self, db: Session):
        super().__init__(db, TemplateApplication)

    def get_live(
        self, template_id: str, week_start_date: date, *, for_update: bool = False
    ) -> Optional[TemplateApplication]:
        """The applied (live) record for a template and week, if any."""
        try:
            query = self._query(for_update=for_update).filter(
                TemplateApplication.template_id == template_id,
                TemplateApplication.week_start_date == week_start_date,
                TemplateApplication.status == TemplateApplicationStatus.APPLIED.value,
            )
            if for_update:
                query = query.populate_existing()
            return cast(Optional[TemplateApplication], query.first())
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load live application: %s", str(exc))
            raise RepositoryException("Failed to load live application") from exc

    def create_application(self, **kwargs: Any) -> TemplateApplication:
        """Insert a live application; a second live record surfaces as IntegrityError."""
        return self.create_guarded(status=TemplateApplicationStatus.APPLIED.value, **kwargs)

    def transition(
        self,
        application_id: str,
        target: TemplateApplicationStatus,
        **values: Any,
    ) -> bool:
        """Move an application to ``target`` only from an allowed source status."""
        sources = [status.value for status in TemplateApplicationStatus.expected_sources(target)]
        if not sources:
            return False
        try:
            result = self.db.execute(
                update(TemplateApplication)
                .where(
                    TemplateApplication.id == application_id,
                    TemplateApplication.status.in_(sources),
                )
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount == 1)
        except SQLAlchemyError as exc:
            self.logger.error(
                "Failed to move application %s to %s: %s", application_id, target.value, str(exc)
            )
            raise RepositoryException("Failed to update application status") from exc

    def set_replaced_by(self, application_id: str, replaced_by_id: str) -> None:
        """Link a replaced record to the application that superseded it."""
        try:
            self.db.execute(
                update(TemplateApplication)
                .where(TemplateApplication.id == application_id)
                .values(replaced_by_id=replaced_by_id)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to link replaced application %s: %s", application_id, str(exc))
            raise RepositoryException("Failed to link replaced application") from exc

    def set_totals(
        self,
        application_id: str,
        *,
        created_lessons: int,
        created_bookings: int,
        debited_credits: int,
    ) -> None:
        try:
            self.db.execute(
                update(TemplateApplication)
                .where(TemplateApplication.id == application_id)
                .values(
                    created_lessons=created_lessons,
                    created_bookings=created_bookings,
                    debited_credits=debited_credits,
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to record totals for %s: %s", application_id, str(exc))
            raise RepositoryException("Failed to record application totals") from exc

    def list_for_week(self, week_start_date: date) -> List[TemplateApplication]:
        try:
            applications = (
                self.db.query(TemplateApplication)
                .filter(TemplateApplication.week_start_date == week_start_date)
                .order_by(TemplateApplication.applied_at, TemplateApplication.id)
                .all()
            )
            return cast(List[TemplateApplication], applications)
        except SQLAlchemyError as exc:
            self.logger.error("Failed to list applications: %s", str(exc))
            raise RepositoryException("Failed to list applications") from exc


__all__ = ["TemplateApplicationRepository", "TemplateRepository"]
