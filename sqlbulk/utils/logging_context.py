"""Context-aware logging for bulk operations.

Wraps the global :class:`StructuredLogger` with per-commit context (target table,
operation id) so every log line emitted during one commit can be correlated.
"""

import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from sqlbulk.utils import logging as logging_module
from sqlbulk.utils.logging import StructuredLogger


class OperationType(str, Enum):
    """Steps of a bulk commit that are timed and logged."""

    RESOLVE = "resolve"
    BUILD_BUFFER = "build_buffer"
    BULK_COPY = "bulk_copy"
    STAGING = "staging"
    MERGE = "merge"
    INDEX_MAINTENANCE = "index_maintenance"
    WRITE_BACK = "write_back"


@dataclass
class OperationMetrics:
    """Timing and row counts for a single operation."""

    start_time: Optional[float] = None
    end_time: Optional[float] = None
    rows_in: Optional[int] = None
    rows_out: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return (self.end_time - self.start_time) * 1000

    @property
    def row_delta(self) -> Optional[int]:
        if self.rows_in is None or self.rows_out is None:
            return None
        return self.rows_out - self.rows_in

    def to_dict(self) -> Dict[str, Any]:
        """Return only the populated metrics."""
        result: Dict[str, Any] = {}
        if self.elapsed_ms is not None:
            result["elapsed_ms"] = round(self.elapsed_ms, 2)
        if self.rows_in is not None:
            result["rows_in"] = self.rows_in
        if self.rows_out is not None:
            result["rows_out"] = self.rows_out
        if self.row_delta is not None:
            result["row_delta"] = self.row_delta
        result.update(self.extra)
        return result


class LoggingContext:
    """Structured logger bound to the context of one bulk operation."""

    def __init__(
        self,
        logger: Optional[StructuredLogger] = None,
        table: Optional[str] = None,
        operation_id: Optional[str] = None,
    ):
        self._logger = logger
        self.table = table
        self.operation_id = operation_id

    @property
    def logger(self) -> StructuredLogger:
        return self._logger or logging_module.logger

    def _base_context(self) -> Dict[str, Any]:
        ctx: Dict[str, Any] = {}
        if self.table:
            ctx["table"] = self.table
        if self.operation_id:
            ctx["operation_id"] = self.operation_id
        return ctx

    def with_context(self, **kwargs) -> "LoggingContext":
        """Return a new context with the given fields replaced."""
        return LoggingContext(
            logger=kwargs.get("logger", self._logger),
            table=kwargs.get("table", self.table),
            operation_id=kwargs.get("operation_id", self.operation_id),
        )

    def info(self, message: str, **kwargs):
        self.logger.info(message, **{**self._base_context(), **kwargs})

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **{**self._base_context(), **kwargs})

    def error(self, message: str, **kwargs):
        self.logger.error(message, **{**self._base_context(), **kwargs})

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **{**self._base_context(), **kwargs})

    def log_operation_start(self, op_type: OperationType, description: str) -> OperationMetrics:
        self.debug(f"Starting {op_type.value}: {description}")
        return OperationMetrics(start_time=time.perf_counter())

    def log_operation_end(
        self, op_type: OperationType, description: str, metrics: OperationMetrics
    ) -> None:
        metrics.end_time = time.perf_counter()
        self.debug(f"Completed {op_type.value}: {description}", **metrics.to_dict())

    @contextmanager
    def operation(self, op_type: OperationType, description: str) -> Iterator[OperationMetrics]:
        """Time a block of work and log its start, completion or failure."""
        metrics = self.log_operation_start(op_type, description)
        try:
            yield metrics
        except BaseException as e:
            metrics.end_time = time.perf_counter()
            self.error(
                f"Failed {op_type.value}: {description}",
                error_type=type(e).__name__,
                error_message=str(e),
                **metrics.to_dict(),
            )
            raise
        self.log_operation_end(op_type, description, metrics)

    def log_sql(self, description: str, sql: str) -> None:
        self.debug(description, sql=" ".join(sql.split()))

    def log_connection(self, connection_type: str, connection_name: str, action: str, **kwargs):
        self.debug(
            f"Connection {action}: {connection_name}",
            connection_type=connection_type,
            **kwargs,
        )


_global_context: Optional[LoggingContext] = None


def get_logging_context() -> LoggingContext:
    """Return the process-wide logging context, creating it on first use."""
    global _global_context
    if _global_context is None:
        _global_context = LoggingContext()
    return _global_context


def set_logging_context(ctx: LoggingContext) -> None:
    global _global_context
    _global_context = ctx


def create_logging_context(
    table: Optional[str] = None,
    operation_id: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
) -> LoggingContext:
    """Create a context for one operation. A short operation id is generated if omitted."""
    return LoggingContext(
        logger=logger,
        table=table,
        operation_id=operation_id or uuid.uuid4().hex[:8],
    )
