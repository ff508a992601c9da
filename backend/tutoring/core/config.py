# backend/tutoring/core/config.py
import logging
import os
from typing import List, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite:///./tutoring.db"

# Upper bound baked into the lessons CHECK constraint
LESSON_CREDITS_COST_LIMIT = 100


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = "development"
    database_url: str = Field(
        default=DEFAULT_SQLITE_URL,
        description="SQLAlchemy URL; PostgreSQL in production, SQLite for local runs and tests",
    )

    # Connection pool
    db_pool_size: int = Field(default=5, ge=1)
    db_max_overflow: int = Field(default=10, ge=0)
    db_pool_timeout: int = Field(default=10, ge=1, description="Seconds to wait for a connection")
    db_statement_timeout_ms: int = Field(default=15000, ge=0)
    sqlite_busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long a SQLite writer waits for the database lock before failing",
    )

    # Ledger
    max_balance: int = Field(default=10000, ge=1)
    max_credit_operation: int = Field(default=100, ge=1)
    ledger_history_default_limit: int = Field(default=50, ge=1)
    ledger_history_max_limit: int = Field(default=500, ge=1)

    # Booking policy
    cancellation_notice_hours: int = Field(default=24, ge=0)

    # Templates
    template_credits_cost_max: int = Field(
        default=LESSON_CREDITS_COST_LIMIT, ge=0, le=LESSON_CREDITS_COST_LIMIT
    )

    # Observability
    slow_operation_threshold_seconds: float = Field(default=1.0, gt=0)
    log_level: str = "INFO"

    production_database_indicators: List[str] = [
        "supabase.co",
        "rds.amazonaws.com",
        "render.com",
    ]

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        normalized = str(value or "INFO").strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {value}")
        return normalized

    @model_validator(mode="after")
    def _check_history_limits(self) -> "Settings":
        if self.ledger_history_default_limit > self.ledger_history_max_limit:
            raise ValueError(
                "ledger_history_default_limit cannot exceed ledger_history_max_limit"
            )
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def is_production_database(self, url: str | None = None) -> bool:
        """Check if a database URL appears to be a production database."""
        check_url = url or self.database_url or ""
        return any(
            indicator in check_url.lower() for indicator in self.production_database_indicators
        )


settings = Settings()
logger.debug(
    "[CONFIG] environment=%s sqlite=%s",
    settings.environment,
    settings.is_sqlite,
)
