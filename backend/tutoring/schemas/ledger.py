# backend/tutoring/schemas/ledger.py
"""Ledger request and result schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import ConfigDict, Field, model_validator

from ..core.enums import LedgerOperationType
from .base import StandardizedModel, StrictRequestModel


class LedgerHistoryFilter(StrictRequestModel):
    """
    Filters for a page of ledger history.

    ``limit`` defaults to the configured page size and is clamped to the
    configured maximum by LedgerService; zero or negative values are rejected.
    """

    user_id: Optional[str] = None
    operation_type: Optional[LedgerOperationType] = None
    booking_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, gt=0)
    offset: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_date_range(self) -> "LedgerHistoryFilter":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class LedgerEntryResponse(StandardizedModel):
    id: str
    user_id: str
    delta: int
    operation_type: str
    reason: Optional[str] = None
    actor_id: Optional[str] = None
    booking_id: Optional[str] = None
    balance_before: int
    balance_after: int
    idempotency_key: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryPage(StandardizedModel):
    entries: List[LedgerEntryResponse]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


class BalanceReconciliation(StandardizedModel):
    """Stored balance compared with the fold of the user's ledger."""

    user_id: str
    stored: int
    computed: int
    entry_count: int
    consistent: bool
    broken_entry_ids: List[str] = Field(default_factory=list)
