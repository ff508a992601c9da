"""
Pydantic schemas for the tutoring core.

Request models validate caller input; result models are what the services
return for bulk and reporting operations.
"""

from .base import StandardizedModel, StrictRequestModel
from .ledger import (
    BalanceReconciliation,
    LedgerEntryResponse,
    LedgerHistoryFilter,
    LedgerHistoryPage,
)
from .lesson import SeatCountCorrection
from .template import (
    ApplyTemplateResult,
    CleanupStats,
    RollbackResult,
    SkippedBooking,
    TemplateCreate,
    TemplateLessonCreate,
    WeekStats,
)

__all__ = [
    "ApplyTemplateResult",
    "BalanceReconciliation",
    "CleanupStats",
    "LedgerEntryResponse",
    "LedgerHistoryFilter",
    "LedgerHistoryPage",
    "RollbackResult",
    "SeatCountCorrection",
    "SkippedBooking",
    "StandardizedModel",
    "StrictRequestModel",
    "TemplateCreate",
    "TemplateLessonCreate",
    "WeekStats",
]
