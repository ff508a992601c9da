# backend/tutoring/services/base.py
"""
Base Service Pattern for the tutoring core.

Provides common functionality for all service classes including:
- Transaction management (one transaction per orchestrated use case)
- Cancellation/deadline checks around the transaction
- Logging
- Performance monitoring
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, cast

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    OperationCancelledException,
    RepositoryException,
    ServiceException,
)
from ..core.operation_context import OperationContext, check_context
from ..database.session_utils import is_postgres
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class BaseService:
    """
    Base class for all service layer components.

    Services never commit halfway: a public operation opens one transaction
    with ``transaction()`` and passes ``use_transaction=False`` to the
    component operations it composes, so they run inside the caller's
    transaction.
    """

    # Class-level metrics storage
    _class_metrics: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def __init__(self, db: Session):
        """
        Initialize base service.

        Args:
            db: Database session
        """
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self, ctx: Optional[OperationContext] = None) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction(ctx):
                # Do multiple operations
                self.db.add(entity)
                # Note: commit is handled automatically

        The context is checked on entry and again right before commit; a
        cancelled or expired context rolls everything back.
        """
        try:
            check_context(ctx, "transaction_begin")
            self._apply_deadline(ctx)
            yield self.db
            check_context(ctx, "transaction_commit")
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            if ctx is not None and (ctx.cancelled or ctx.expired):
                raise OperationCancelledException(
                    "deadline exceeded" if ctx.expired else "cancelled"
                ) from e
            raise ServiceException(f"Database operation failed: {str(e)}") from e
        except RepositoryException as e:
            self.logger.error(f"Repository failure in transaction: {str(e)}")
            self.db.rollback()
            raise ServiceException(str(e)) from e
        except Exception as e:
            self.logger.info(f"Transaction rolled back: {type(e).__name__}: {e}")
            self.db.rollback()
            raise

    @contextmanager
    def read_snapshot(self) -> Iterator[Session]:
        """
        Run read-only queries in a short transaction that is closed afterwards.

        Keeps idle sessions from holding a transaction (and, on SQLite, the
        database lock) between calls.
        """
        try:
            yield self.db
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise ServiceException(f"Database read failed: {str(e)}") from e
        except Exception:
            self.db.rollback()
            raise

    def _apply_deadline(self, ctx: Optional[OperationContext]) -> None:
        """Push the caller's remaining time to PostgreSQL as statement and lock timeouts."""
        if ctx is None or not is_postgres(self.db):
            return
        remaining = ctx.remaining_seconds()
        if remaining is None:
            return
        timeout_ms = max(1, int(remaining * 1000))
        self.db.execute(text(f"SET LOCAL statement_timeout = '{timeout_ms}ms'"))
        self.db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("create_booking")
            def create_booking(self, data):
                # Method implementation

        Args:
            operation_name: Name of the operation for metrics

        Returns:
            Decorator function
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                success = False
                error_type = None

                try:
                    result = func(self, *args, **kwargs)
                    success = True
                    return result
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    elapsed = time.time() - start_time

                    if hasattr(self, "_record_metric"):
                        self._record_metric(operation_name, elapsed, success)

                    # Only log if it's actually slow
                    if elapsed > settings.slow_operation_threshold_seconds and hasattr(
                        self, "logger"
                    ):
                        self.logger.warning(
                            f"Slow operation detected: {operation_name} took {elapsed:.2f}s"
                        )

                    prometheus_metrics.record_service_operation(
                        service=self.__class__.__name__,
                        operation=operation_name,
                        duration=elapsed,
                        status="success" if success else "error",
                        error_type=error_type,
                    )

            wrapper._operation_name = operation_name  # type: ignore[attr-defined]
            return cast(F, wrapper)

        return decorator

    def log_operation(self, operation: str, **context: Any) -> None:
        """
        Log an operation with context.

        Args:
            operation: Operation name
            **context: Additional context to log
        """
        self.logger.info(f"Operation: {operation}", extra={"operation": operation, **context})

    def _record_metric(self, operation: str, elapsed: float, success: bool) -> None:
        """
        Record in-process performance metrics.

        Args:
            operation: Operation name
            elapsed: Time taken in seconds
            success: Whether operation succeeded
        """
        class_name = self.__class__.__name__
        metrics = BaseService._class_metrics.setdefault(class_name, {})

        if operation not in metrics:
            metrics[operation] = {
                "count": 0,
                "total_time": 0.0,
                "success_count": 0,
                "failure_count": 0,
                "min_time": float("inf"),
                "max_time": 0.0,
            }

        metric_data = metrics[operation]
        metric_data["count"] += 1
        metric_data["total_time"] += elapsed
        metric_data["min_time"] = min(metric_data["min_time"], elapsed)
        metric_data["max_time"] = max(metric_data["max_time"], elapsed)

        if success:
            metric_data["success_count"] += 1
        else:
            metric_data["failure_count"] += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Return in-process metrics for this service class with averages filled in."""
        metrics = BaseService._class_metrics.get(self.__class__.__name__, {})
        result: Dict[str, Dict[str, Any]] = {}
        for operation, data in metrics.items():
            count = data["count"] or 1
            result[operation] = {
                **data,
                "avg_time": data["total_time"] / count,
                "success_rate": data["success_count"] / count,
            }
        return result
