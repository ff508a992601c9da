"""
Database models for the tutoring core.

The models are organized by component:
- Users (students, teachers, admins)
- Ledger: Balance and LedgerEntry
- Capacity guard: Lesson
- Booking lifecycle: Booking
- Template engine: LessonTemplate, TemplateLesson, TemplateLessonStudent, TemplateApplication
- Identity linker: ExternalIdentityLink
"""

from .booking import Booking
from .identity import ExternalIdentityLink
from .ledger import Balance, LedgerEntry
from .lesson import Lesson
from .template import LessonTemplate, TemplateApplication, TemplateLesson, TemplateLessonStudent
from .user import User

__all__ = [
    "Balance",
    "Booking",
    "ExternalIdentityLink",
    "LedgerEntry",
    "Lesson",
    "LessonTemplate",
    "TemplateApplication",
    "TemplateLesson",
    "TemplateLessonStudent",
    "User",
]
