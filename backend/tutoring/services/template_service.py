# backend/tutoring/services/template_service.py
"""
Template Application Engine for the tutoring core.

Applies a weekly template to a calendar week, producing lessons, bookings
and credit debits in one transaction, and reverses such an application later.

Apply runs in two phases:
1. Pre-validation outside the transaction: plan every (slot x student)
   assignment, read balances unlocked and report every shortfall at once.
2. One transaction: replace the previous live application of the same
   template and week (cancel + refund its bookings, delete its lessons),
   record the new application, then create lessons and bookings through
   the Capacity Guard, Booking Lifecycle and Ledger.

Applications are never overwritten. They move applied -> replaced or
applied -> rolled_back, which keeps the audit trail of every bulk change.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.enums import LedgerOperationType, RoleName, TemplateApplicationStatus
from ..core.exceptions import (
    ApplicationStateException,
    ConflictException,
    DomainException,
    ForbiddenException,
    InsufficientFundsException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.operation_context import OperationContext, check_context
from ..core.timezone_utils import slot_datetime, utc_now, week_bounds
from ..database.errors import is_violation_of
from ..models.template import (
    LIVE_APPLICATION_INDEX,
    LessonTemplate,
    TemplateApplication,
    TemplateLesson,
)
from ..models.user import User
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.template import (
    ApplyTemplateResult,
    CleanupStats,
    RollbackResult,
    SkippedBooking,
    TemplateCreate,
    WeekStats,
)
from .base import BaseService
from .booking_service import BookingService
from .capacity_service import CapacityService
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)

# Conditional lesson deletion retries when bookings slip in while cleaning up
MAX_CLEANUP_PASSES = 3


@dataclass
class PlannedSlot:
    """A template slot placed in a concrete week."""

    template_lesson: TemplateLesson
    start_time: datetime
    end_time: datetime
    student_ids: List[str] = field(default_factory=list)
    skipped: List[SkippedBooking] = field(default_factory=list)


class TemplateService(BaseService):
    """Template management plus apply, rollback and week preview."""

    def __init__(
        self,
        db: Session,
        booking_service: Optional[BookingService] = None,
        capacity_service: Optional[CapacityService] = None,
        ledger_service: Optional[LedgerService] = None,
    ):
        super().__init__(db)
        self.capacity_service = capacity_service or CapacityService(db)
        self.ledger_service = ledger_service or LedgerService(db)
        self.booking_service = booking_service or BookingService(
            db, capacity_service=self.capacity_service, ledger_service=self.ledger_service
        )

        self.template_repository = RepositoryFactory.create_template_repository(db)
        self.application_repository = RepositoryFactory.create_template_application_repository(db)
        self.lesson_repository = RepositoryFactory.create_lesson_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.ledger_repository = RepositoryFactory.create_ledger_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    # Helpers

    def _require_admin(self, actor_id: str) -> User:
        actor = self.user_repository.get_active(actor_id)
        if actor is None:
            raise NotFoundException(
                "Actor not found", code="ACTOR_NOT_FOUND", details={"actor_id": actor_id}
            )
        if not actor.is_admin:
            raise ForbiddenException(
                "Only administrators can manage templates",
                code="TEMPLATE_FORBIDDEN",
                details={"actor_id": actor_id},
            )
        return actor

    @staticmethod
    def _validate_week_start(week_start: date) -> None:
        if isinstance(week_start, datetime) or not isinstance(week_start, date):
            raise ValidationException("week_start must be a date", code="INVALID_WEEK_START")
        if week_start.weekday() != 0:
            raise ValidationException(
                "week_start must be a Monday",
                code="INVALID_WEEK_START",
                details={"week_start": week_start.isoformat()},
            )

    def _require_template(self, template_id: str) -> LessonTemplate:
        template = self.template_repository.get_with_lessons(template_id)
        if template is None:
            raise NotFoundException(
                "Template not found",
                code="TEMPLATE_NOT_FOUND",
                details={"template_id": template_id},
            )
        return template

    # Template management

    @BaseService.measure_operation("create_template")
    def create_template(
        self,
        data: TemplateCreate,
        *,
        created_by: str,
        ctx: Optional[OperationContext] = None,
    ) -> LessonTemplate:
        """
        Store a weekly template.

        Teachers must be able to teach and assigned students must be students.
        """
        with self.transaction(ctx):
            self._require_admin(created_by)

            teacher_ids = {lesson.teacher_id for lesson in data.lessons}
            student_ids = {sid for lesson in data.lessons for sid in lesson.student_ids}
            users = self.user_repository.get_many(teacher_ids | student_ids)

            missing = sorted((teacher_ids | student_ids) - set(users))
            if missing:
                raise NotFoundException(
                    "Some users do not exist",
                    code="USERS_NOT_FOUND",
                    details={"user_ids": missing},
                )
            not_teaching = sorted(tid for tid in teacher_ids if not users[tid].can_teach)
            if not_teaching:
                raise ValidationException(
                    "Some assigned teachers cannot teach",
                    code="NOT_A_TEACHER",
                    details={"user_ids": not_teaching},
                )
            not_students = sorted(
                sid for sid in student_ids if users[sid].role != RoleName.STUDENT.value
            )
            if not_students:
                raise ValidationException(
                    "Only students can be assigned to template slots",
                    code="NOT_A_STUDENT",
                    details={"user_ids": not_students},
                )
            too_expensive = [
                index
                for index, lesson in enumerate(data.lessons)
                if lesson.credits_cost > settings.template_credits_cost_max
            ]
            if too_expensive:
                raise ValidationException(
                    f"Slot cost cannot exceed {settings.template_credits_cost_max} credits",
                    code="INVALID_COST",
                    details={"slots": too_expensive},
                )

            template = self.template_repository.create_template(
                name=data.name,
                created_by=created_by,
                description=data.description,
                lessons=[lesson.model_dump() for lesson in data.lessons],
            )
            self.log_operation(
                "create_template", template_id=template.id, slots=len(data.lessons)
            )
        return template

    @BaseService.measure_operation("get_template")
    def get_template(self, template_id: str) -> LessonTemplate:
        with self.read_snapshot():
            return self._require_template(template_id)

    @BaseService.measure_operation("list_templates")
    def list_templates(self) -> List[LessonTemplate]:
        with self.read_snapshot():
            return self.template_repository.list_templates()

    @BaseService.measure_operation("get_application")
    def get_application(self, application_id: str) -> TemplateApplication:
        with self.read_snapshot():
            application = self.application_repository.get_by_id(application_id)
        if application is None:
            raise NotFoundException(
                "Template application not found",
                code="APPLICATION_NOT_FOUND",
                details={"application_id": application_id},
            )
        return application

    @BaseService.measure_operation("list_applications")
    def list_applications(self, week_start: date) -> List[TemplateApplication]:
        """Every application recorded for a week, oldest first (the replace/rollback trail)."""
        self._validate_week_start(week_start)
        with self.read_snapshot():
            return self.application_repository.list_for_week(week_start)

    # Planning

    def _plan_week(
        self,
        template: LessonTemplate,
        week_start: date,
        *,
        replaced_application_id: Optional[str],
    ) -> List[PlannedSlot]:
        """
        Place every slot in the week and decide which students can be booked.

        A student is skipped when they already hold an active booking that
        overlaps the slot (outside the application being replaced) or when
        an earlier slot of this template already books them at that time.
        """
        planned: List[PlannedSlot] = []
        booked_intervals: Dict[str, List[Tuple[datetime, datetime]]] = defaultdict(list)

        for template_lesson in template.lessons:
            slot = PlannedSlot(
                template_lesson=template_lesson,
                start_time=slot_datetime(week_start, template_lesson.day_of_week, template_lesson.start_time),
                end_time=slot_datetime(week_start, template_lesson.day_of_week, template_lesson.end_time),
            )
            for student_id in template_lesson.student_ids:
                overlap = self.booking_repository.find_student_overlap(
                    student_id,
                    slot.start_time,
                    slot.end_time,
                    exclude_application_id=replaced_application_id,
                )
                planned_clash = any(
                    start < slot.end_time and slot.start_time < end
                    for start, end in booked_intervals[student_id]
                )
                if overlap is not None or planned_clash:
                    slot.skipped.append(
                        SkippedBooking(
                            student_id=student_id,
                            template_lesson_id=template_lesson.id,
                            reason="schedule_conflict",
                            conflicting_lesson_id=overlap.lesson_id if overlap else None,
                        )
                    )
                    continue
                slot.student_ids.append(student_id)
                booked_intervals[student_id].append((slot.start_time, slot.end_time))
            planned.append(slot)
        return planned

    def _projected_refunds(self, application_id: Optional[str]) -> Tuple[Dict[str, int], CleanupStats]:
        """Credits each student would get back if ``application_id`` were undone."""
        refunds: Dict[str, int] = defaultdict(int)
        stats = CleanupStats(replaced_application_id=application_id)
        if application_id is None:
            return refunds, stats

        lessons = self.lesson_repository.get_by_application(application_id)
        bookings = self.booking_repository.get_active_for_lessons([lesson.id for lesson in lessons])
        for booking in bookings:
            refunds[booking.student_id] += int(booking.credits_charged or 0)
        stats.cancelled_bookings = len(bookings)
        stats.refunded_credits = sum(refunds.values())
        stats.deleted_lessons = len(lessons)
        return refunds, stats

    def _find_shortfalls(
        self, planned: List[PlannedSlot], refunds: Dict[str, int]
    ) -> List[Dict[str, int | str]]:
        required: Dict[str, int] = defaultdict(int)
        for slot in planned:
            cost = int(slot.template_lesson.credits_cost or 0)
            for student_id in slot.student_ids:
                required[student_id] += cost

        charged = [student_id for student_id, amount in required.items() if amount > 0]
        balances = self.ledger_repository.get_balance_amounts(charged)

        shortfalls: List[Dict[str, int | str]] = []
        for student_id in sorted(charged):
            available = balances.get(student_id, 0) + refunds.get(student_id, 0)
            if available < required[student_id]:
                shortfalls.append(
                    {
                        "user_id": student_id,
                        "balance": balances.get(student_id, 0),
                        "refund": refunds.get(student_id, 0),
                        "required": required[student_id],
                        "missing": required[student_id] - available,
                    }
                )
        return shortfalls

    # Apply

    @BaseService.measure_operation("apply_template")
    def apply_template(
        self,
        template_id: str,
        week_start: date,
        *,
        actor_id: str,
        dry_run: bool = False,
        ctx: Optional[OperationContext] = None,
    ) -> ApplyTemplateResult:
        """
        Apply a template to the week starting on ``week_start`` (a Monday).

        Raises:
            InsufficientFundsException: One entry per student who cannot pay
            ScheduleConflictException: A slot overlaps an existing lesson of its teacher
            ConflictException: Another apply for the same template and week won the race
        """
        self._validate_week_start(week_start)
        try:
            result = self._apply_template(template_id, week_start, actor_id, dry_run, ctx)
        except DomainException as exc:
            prometheus_metrics.record_template_application("apply", exc.code)
            raise
        prometheus_metrics.record_template_application("dry_run" if dry_run else "apply", "ok")
        return result

    def _apply_template(
        self,
        template_id: str,
        week_start: date,
        actor_id: str,
        dry_run: bool,
        ctx: Optional[OperationContext],
    ) -> ApplyTemplateResult:
        # Phase 1: unlocked pre-validation
        with self.read_snapshot():
            check_context(ctx, "apply_template_prevalidate")
            self._require_admin(actor_id)
            template = self._require_template(template_id)
            prior = self.application_repository.get_live(template_id, week_start)
            prior_id = prior.id if prior else None
            refunds, projected_cleanup = self._projected_refunds(prior_id)
            planned = self._plan_week(template, week_start, replaced_application_id=prior_id)
            shortfalls = self._find_shortfalls(planned, refunds)

        if shortfalls:
            self.logger.info(
                "Template apply rejected for insufficient credits",
                extra={"template_id": template_id, "shortfalls": len(shortfalls)},
            )
            raise InsufficientFundsException(shortfalls)

        if dry_run:
            return ApplyTemplateResult(
                template_id=template_id,
                week_start_date=week_start,
                dry_run=True,
                created_lessons=len(planned),
                created_bookings=sum(len(slot.student_ids) for slot in planned),
                debited_credits=sum(
                    int(slot.template_lesson.credits_cost or 0) * len(slot.student_ids)
                    for slot in planned
                ),
                skipped_bookings=[skip for slot in planned for skip in slot.skipped],
                cleanup=projected_cleanup,
            )

        # Phase 2: one transaction
        with self.transaction(ctx):
            application_id = str(ulid.ULID())
            cleanup = CleanupStats()

            prior = self.application_repository.get_live(template_id, week_start, for_update=True)
            if prior is not None:
                cleanup = self._undo_application(prior.id, actor_id, ctx)
                cleanup.replaced_application_id = prior.id
                if not self.application_repository.transition(
                    prior.id, TemplateApplicationStatus.REPLACED, replaced_at=utc_now()
                ):
                    raise ApplicationStateException(
                        prior.id, prior.status, TemplateApplicationStatus.REPLACED.value
                    )

            try:
                self.application_repository.create_application(
                    id=application_id,
                    template_id=template_id,
                    applied_by=actor_id,
                    week_start_date=week_start,
                    applied_at=utc_now(),
                )
            except IntegrityError as exc:
                if is_violation_of(exc, LIVE_APPLICATION_INDEX):
                    raise ConflictException(
                        "Template is already applied to this week",
                        code="APPLICATION_CONFLICT",
                        details={"template_id": template_id, "week_start": week_start.isoformat()},
                    ) from exc
                raise ServiceException("Template application rejected by the database") from exc

            if prior is not None:
                self.application_repository.set_replaced_by(prior.id, application_id)

            # Re-plan under the transaction: the cleanup above may have freed students
            planned = self._plan_week(template, week_start, replaced_application_id=None)

            created_lessons = 0
            created_bookings = 0
            debited_credits = 0
            for slot in planned:
                check_context(ctx, "apply_template_slot")
                template_lesson = slot.template_lesson
                lesson = self.capacity_service.create_lesson(
                    teacher_id=template_lesson.teacher_id,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    max_seats=template_lesson.max_seats,
                    credits_cost=template_lesson.credits_cost,
                    subject=template_lesson.subject,
                    color=template_lesson.color,
                    template_application_id=application_id,
                    use_transaction=False,
                )
                created_lessons += 1

                for student_id in slot.student_ids:
                    booking = self.booking_service.create_booking(
                        student_id,
                        lesson.id,
                        actor_id=actor_id,
                        ledger_operation=LedgerOperationType.TEMPLATE_DEBIT,
                        use_transaction=False,
                    )
                    created_bookings += 1
                    debited_credits += int(booking.credits_charged or 0)

            self.application_repository.set_totals(
                application_id,
                created_lessons=created_lessons,
                created_bookings=created_bookings,
                debited_credits=debited_credits,
            )

        self.log_operation(
            "apply_template",
            template_id=template_id,
            application_id=application_id,
            week_start=week_start.isoformat(),
            created_lessons=created_lessons,
            created_bookings=created_bookings,
            debited_credits=debited_credits,
        )
        return ApplyTemplateResult(
            application_id=application_id,
            template_id=template_id,
            week_start_date=week_start,
            created_lessons=created_lessons,
            created_bookings=created_bookings,
            debited_credits=debited_credits,
            skipped_bookings=[skip for slot in planned for skip in slot.skipped],
            cleanup=cleanup,
        )

    # Rollback / replace

    def _undo_application(
        self, application_id: str, actor_id: str, ctx: Optional[OperationContext]
    ) -> CleanupStats:
        """
        Cancel (with refund) every active booking of the application's lessons,
        then delete the lessons. Runs inside the caller's transaction.

        Each cancel locks booking -> lesson -> balance. Lessons are deleted
        conditionally afterwards; a lesson that picked up a booking meanwhile
        is cleaned again on the next pass.
        """
        stats = CleanupStats()
        pending = [lesson.id for lesson in self.lesson_repository.get_by_application(application_id)]

        for _ in range(MAX_CLEANUP_PASSES):
            for booking in self.booking_repository.get_active_for_lessons(pending):
                check_context(ctx, "undo_application")
                refund = int(booking.credits_charged or 0)
                self.booking_service.cancel_booking(
                    booking.student_id,
                    booking.lesson_id,
                    actor_id=actor_id,
                    reason=f"Template application {application_id} undone",
                    use_transaction=False,
                )
                stats.cancelled_bookings += 1
                stats.refunded_credits += refund

            remaining = []
            for lesson_id in pending:
                if self.lesson_repository.soft_delete(lesson_id):
                    stats.deleted_lessons += 1
                elif self.lesson_repository.get_lesson(lesson_id) is not None:
                    remaining.append(lesson_id)
            pending = remaining
            if not pending:
                return stats

        raise ConflictException(
            "Lessons kept receiving bookings while being removed",
            code="CLEANUP_CONFLICT",
            details={"application_id": application_id, "lesson_ids": pending},
        )

    @BaseService.measure_operation("rollback_application")
    def rollback_application(
        self,
        application_id: str,
        *,
        actor_id: str,
        ctx: Optional[OperationContext] = None,
    ) -> RollbackResult:
        """
        Undo an applied template: cancel and refund its bookings, delete its
        lessons, mark it rolled_back.

        Rolling back an already rolled back application changes nothing.
        """
        try:
            with self.transaction(ctx):
                self._require_admin(actor_id)
                application = self.application_repository.get_by_id(application_id, for_update=True)
                if application is None:
                    raise NotFoundException(
                        "Template application not found",
                        code="APPLICATION_NOT_FOUND",
                        details={"application_id": application_id},
                    )

                status = TemplateApplicationStatus(application.status)
                if status == TemplateApplicationStatus.ROLLED_BACK:
                    result = RollbackResult(
                        application_id=application_id,
                        status=status.value,
                        already_rolled_back=True,
                    )
                else:
                    if not status.can_transition_to(TemplateApplicationStatus.ROLLED_BACK):
                        raise ApplicationStateException(
                            application_id, status.value, TemplateApplicationStatus.ROLLED_BACK.value
                        )
                    stats = self._undo_application(application_id, actor_id, ctx)
                    if not self.application_repository.transition(
                        application_id,
                        TemplateApplicationStatus.ROLLED_BACK,
                        rolled_back_at=utc_now(),
                    ):
                        raise ApplicationStateException(
                            application_id, status.value, TemplateApplicationStatus.ROLLED_BACK.value
                        )
                    result = RollbackResult(
                        application_id=application_id,
                        status=TemplateApplicationStatus.ROLLED_BACK.value,
                        cancelled_bookings=stats.cancelled_bookings,
                        refunded_credits=stats.refunded_credits,
                        deleted_lessons=stats.deleted_lessons,
                    )
        except DomainException as exc:
            prometheus_metrics.record_template_application("rollback", exc.code)
            raise

        prometheus_metrics.record_template_application(
            "rollback", "noop" if result.already_rolled_back else "ok"
        )
        self.log_operation(
            "rollback_application",
            application_id=application_id,
            already_rolled_back=result.already_rolled_back,
            cancelled_bookings=result.cancelled_bookings,
        )
        return result

    # Preview

    @BaseService.measure_operation("get_week_stats")
    def get_week_stats(
        self, week_start: date, *, application_id: Optional[str] = None
    ) -> WeekStats:
        """Lessons, active bookings, credits charged and students touched in a week."""
        self._validate_week_start(week_start)
        with self.read_snapshot():
            if application_id:
                lessons = self.lesson_repository.get_by_application(application_id)
            else:
                start, end = week_bounds(week_start)
                lessons = self.lesson_repository.get_in_range(start, end)
            bookings = self.booking_repository.get_active_for_lessons(
                [lesson.id for lesson in lessons]
            )

        return WeekStats(
            week_start_date=week_start,
            application_id=application_id,
            lesson_count=len(lessons),
            booking_count=len(bookings),
            credits_moved=sum(int(booking.credits_charged or 0) for booking in bookings),
            distinct_students=len({booking.student_id for booking in bookings}),
        )
