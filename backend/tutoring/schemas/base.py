"""Schema baselines shared by request and result models."""

from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Base model for results handed back to callers."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)


class StrictRequestModel(BaseModel):
    """Request DTO base that always forbids unexpected fields."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)
