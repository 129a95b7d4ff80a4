"""
Exceptions for the legacy data migration engine.

This module defines every exception raised by the migration engine,
organized by the stage that raises it, together with the error
classification and retry machinery used to decide how each failure is
handled.

Exception Hierarchy:
    MigrationError (base)
    +-- OrchestrationError
    |   +-- DependencyCycleError
    |   +-- UnknownDependencyError
    +-- MigrationStateError
    +-- RecordTransformError
    +-- StoreError
    +-- BatchWriteError
    |   +-- BatchTimeoutError
    +-- EntityMigrationError
    |   +-- FailureThresholdExceededError
    +-- PipelineTimeoutError
    +-- MigrationCancelledError
    +-- MigrationAbortedError
    +-- RollbackError
        +-- InvalidRollbackStrategyError
        +-- BackupIntegrityError
        +-- RollbackVerificationError

Error Classification System:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: Rich metadata for each error type
    - ErrorHandler: Automatic retry for transient errors

Propagation policy:
    Per-record (RecordTransformError) and per-batch (BatchWriteError)
    failures are absorbed by the batch processor into counters. Everything
    else reaches the orchestrator, which records it in the final report.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

if TYPE_CHECKING:
    from migrationsuite.models import MigrationReport, RollbackReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.

    Attributes:
        CRITICAL: Failure that halts the pipeline or a rollback.
            Examples: Rollback failure, dependency cycle.
        ERROR: Significant failure that stops an entity or stage.
            Examples: Entity failure threshold exceeded, store failure.
        WARNING: Issue that is absorbed by the pipeline.
            Examples: Batch write retried, record failed to transform.
        INFO: Informational condition, not a failure.
            Examples: Migration cancelled by operator.
    """

    CRITICAL = "critical"
    """Failure that halts the pipeline or a rollback."""

    ERROR = "error"
    """Significant failure that stops an entity or stage."""

    WARNING = "warning"
    """Issue that is absorbed by the pipeline."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """
        Check if this severity level should trigger an alert.

        Returns:
            True for CRITICAL and ERROR levels.
        """
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The pipeline isolates the failure and continues.
            Examples: A single record fails to transform.

        TRANSIENT: Temporary error that may resolve on retry.
            Examples: Lost connection while writing a batch.

        FATAL: Unrecoverable error; the run or rollback must stop.
            Examples: Dependency cycle, rollback verification failure.
    """

    RECOVERABLE = "recoverable"
    """The pipeline isolates the failure and continues."""

    TRANSIENT = "transient"
    """Temporary error that may resolve on retry."""

    FATAL = "fatal"
    """Unrecoverable error; the run or rollback must stop."""

    @property
    def should_retry(self) -> bool:
        """
        Check if automatic retry is appropriate for this category.

        Returns:
            True only for TRANSIENT errors.
        """
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """
        Check if the run should be aborted.

        Returns:
            True only for FATAL errors.
        """
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    Implements exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the initial one).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff (default 2.0).
        jitter_factor: Random jitter factor (0.0 to 1.0, default 0.1).

    Example:
        >>> config = RetryConfig(max_attempts=4, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # 800ms plus jitter
    """

    max_attempts: int = 3
    """Maximum number of attempts (including the initial one)."""

    base_delay_ms: float = 100.0
    """Base delay between retries in milliseconds."""

    max_delay_ms: float = 30000.0
    """Maximum delay between retries in milliseconds."""

    exponential_base: float = 2.0
    """Base for exponential backoff."""

    jitter_factor: float = 0.1
    """Random jitter factor (0.0 to 1.0)."""

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next attempt.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)

        if self.jitter_factor > 0:
            jitter = delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
            delay = delay + jitter

        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


# Default retry configurations
BATCH_RETRY_CONFIG = RetryConfig(
    max_attempts=4,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
)

STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=250.0,
    max_delay_ms=10000.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigrationError(Exception):
    """
    Base exception for all migration-related errors.

    All exceptions raised by the migration engine inherit from this class,
    allowing callers to catch all migration errors with a single handler.

    Attributes:
        message: Human-readable error description.
        session_id: The migration session involved, if applicable.
        entity: The entity being processed, if applicable.
        suggested_action: Suggested action for recovery.
        classification: Rich error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs and the migration report",
    )

    def __init__(
        self,
        message: str,
        *,
        session_id: UUID | None = None,
        entity: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.session_id = session_id
        self.entity = entity
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.entity:
            parts.append(f"entity={self.entity}")
        if self.session_id:
            parts.append(f"session_id={self.session_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification to provide
        specific classification metadata for their error type.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        """Get the severity level of this error."""
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        """Get the recoverability classification of this error."""
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        """Get the unique error code for this exception (e.g. "BATCH_WRITE_FAILED")."""
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        """Get the retry configuration for this error, if applicable."""
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "session_id": str(self.session_id) if self.session_id else None,
            "entity": self.entity,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class OrchestrationError(MigrationError):
    """
    Raised when the migration configuration is unusable.

    Configuration errors are detected before any I/O takes place, so no
    rollback is ever needed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ORCHESTRATION_ERROR",
        category="configuration",
        suggested_action="Fix the entity configuration and start a new session",
    )


class DependencyCycleError(OrchestrationError):
    """
    Raised when entity dependencies form a cycle.

    Attributes:
        cycle: Entity names participating in the cycle.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DEPENDENCY_CYCLE",
        category="configuration",
        suggested_action="Remove the circular dependency between entities",
    )

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected between entities: {', '.join(self.cycle)}")


class UnknownDependencyError(OrchestrationError):
    """
    Raised when an entity depends on an entity that is not configured.

    Attributes:
        dependency: The missing dependency name.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_DEPENDENCY",
        category="configuration",
        suggested_action="Include every dependency of the selected entities in the session",
    )

    def __init__(self, entity: str, dependency: str) -> None:
        self.dependency = dependency
        super().__init__(
            f"Entity {entity} depends on {dependency}, which is not part of the session",
            entity=entity,
        )


class MigrationStateError(MigrationError):
    """
    Raised when a state transition or counter invariant would be violated.

    Attributes:
        current_state: The state before the rejected change.
        attempted: Description of the rejected change.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_STATE_ERROR",
        category="state",
        suggested_action="The session state is inconsistent; inspect the report before resuming",
    )

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        current_state: str | None = None,
        attempted: str | None = None,
    ) -> None:
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(message, entity=entity)


class RecordTransformError(MigrationError):
    """
    Raised when a single legacy row cannot be mapped to a target record.

    Isolated by the batch processor: the row is counted as failed and the
    rest of the batch is written.

    Attributes:
        record_key: Natural key (or id) of the offending row, if known.
        reason: Why the row could not be transformed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="RECORD_TRANSFORM_FAILED",
        category="transform",
        suggested_action="Fix the legacy row and re-run the entity",
    )

    def __init__(self, reason: str, *, record_key: Any = None, entity: str | None = None) -> None:
        self.record_key = record_key
        self.reason = reason
        super().__init__(f"Cannot transform record {record_key!r}: {reason}", entity=entity)


class StoreError(MigrationError):
    """
    Raised by store adapters when the underlying database call fails.

    Attributes:
        operation: The store operation that failed.
        table: The table involved, if any.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_ERROR",
        category="connectivity",
        suggested_action="Check database connectivity and credentials",
        retry_config=STORE_RETRY_CONFIG,
    )

    def __init__(self, operation: str, error: str, *, table: str | None = None) -> None:
        self.operation = operation
        self.table = table
        self.original_error = error
        target = f" on {table}" if table else ""
        super().__init__(f"Store operation {operation}{target} failed: {error}")


class BatchWriteError(MigrationError):
    """
    Raised when a bulk insert of one batch fails.

    Transient: the batch processor retries it with backoff before marking
    the batch's rows as failed.

    Attributes:
        batch_number: The batch that failed.
        offset: Cursor offset of the batch.
        original_error: The underlying error message.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="BATCH_WRITE_FAILED",
        category="batch",
        suggested_action="Check target constraints and connectivity",
        retry_config=BATCH_RETRY_CONFIG,
    )

    def __init__(self, entity: str, batch_number: int, offset: int, error: str) -> None:
        self.batch_number = batch_number
        self.offset = offset
        self.original_error = error
        super().__init__(
            f"Batch {batch_number} at offset {offset} failed: {error}",
            entity=entity,
        )


class BatchTimeoutError(BatchWriteError):
    """Raised when a batch write exceeds the per-batch timeout."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="BATCH_TIMEOUT",
        category="batch",
        suggested_action="Reduce batch_size or increase batch_timeout_seconds",
        retry_config=BATCH_RETRY_CONFIG,
    )

    def __init__(self, entity: str, batch_number: int, offset: int, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(entity, batch_number, offset, f"timed out after {timeout_seconds:.1f}s")


class EntityMigrationError(MigrationError):
    """
    Raised when an entity has to be aborted.

    Attributes:
        migrated: Records migrated before the abort.
        failed: Records counted as failed, including unprocessed ones.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ENTITY_MIGRATION_FAILED",
        category="entity",
        suggested_action="Inspect the failed batches, fix the data and re-run",
    )

    def __init__(
        self,
        message: str,
        *,
        entity: str,
        session_id: UUID | None = None,
        migrated: int = 0,
        failed: int = 0,
    ) -> None:
        self.migrated = migrated
        self.failed = failed
        super().__init__(message, entity=entity, session_id=session_id)


class FailureThresholdExceededError(EntityMigrationError):
    """
    Raised when an entity's failure rate exceeds the configured threshold.

    Attributes:
        failure_rate: Observed failure rate.
        threshold: Configured maximum failure rate.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="FAILURE_THRESHOLD_EXCEEDED",
        category="entity",
        suggested_action="Investigate data quality for the entity before re-running",
    )

    def __init__(
        self,
        *,
        entity: str,
        failure_rate: float,
        threshold: float,
        session_id: UUID | None = None,
        migrated: int = 0,
        failed: int = 0,
    ) -> None:
        self.failure_rate = failure_rate
        self.threshold = threshold
        super().__init__(
            f"Failure rate {failure_rate:.2%} exceeds threshold {threshold:.2%}",
            entity=entity,
            session_id=session_id,
            migrated=migrated,
            failed=failed,
        )


class PipelineTimeoutError(MigrationError):
    """Raised when the whole pipeline exceeds its overall timeout."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PIPELINE_TIMEOUT",
        category="timeout",
        suggested_action="Increase pipeline_timeout_seconds or migrate in smaller sessions",
    )

    def __init__(self, timeout_seconds: float, *, session_id: UUID | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Migration exceeded pipeline timeout of {timeout_seconds:.0f}s",
            session_id=session_id,
        )


class MigrationCancelledError(MigrationError):
    """Raised when an operator cancels a running session."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_CANCELLED",
        category="operator",
        suggested_action="Re-execute the session to resume from the last applied batch",
    )


class MigrationAbortedError(MigrationError):
    """
    Raised when a run stops after writes have begun.

    The original error is chained as ``__cause__``. The final report
    (including the rollback outcome, if any) is attached.

    Attributes:
        report: The final MigrationReport.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ABORTED",
        category="orchestration",
        suggested_action="Review the attached report and rollback outcome",
    )

    def __init__(self, message: str, *, report: MigrationReport) -> None:
        self.report = report
        super().__init__(message, session_id=report.session_id)


class RollbackError(MigrationError):
    """
    Raised when a rollback fails.

    A failed rollback is always fatal and is never retried automatically.

    Attributes:
        report: The failed RollbackReport, when one could be produced.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_FAILED",
        category="rollback",
        suggested_action=(
            "Rollback did not complete. Stop all writers to the target and "
            "restore manually from the backup."
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        session_id: UUID | None = None,
        report: RollbackReport | None = None,
    ) -> None:
        self.report = report
        super().__init__(message, session_id=session_id)


class InvalidRollbackStrategyError(RollbackError):
    """Raised when the requested rollback strategy cannot run with the given inputs."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_ROLLBACK_STRATEGY",
        category="configuration",
        suggested_action="Choose a strategy compatible with the available backup and time window",
    )


class BackupIntegrityError(RollbackError):
    """
    Raised when the backup cannot be trusted for a restore.

    Attributes:
        tables: Tables missing or unreadable in the backup.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKUP_INTEGRITY_FAILED",
        category="rollback",
        suggested_action="Verify the backup store before attempting a snapshot rollback",
    )

    def __init__(self, tables: Sequence[str], *, session_id: UUID | None = None) -> None:
        self.tables = list(tables)
        super().__init__(
            f"Backup is missing or cannot read tables: {', '.join(self.tables)}",
            session_id=session_id,
        )


class RollbackVerificationError(RollbackError):
    """
    Raised when a rollback finished but its result does not verify.

    Attributes:
        table: The table that failed verification, if a single one.
        expected: Expected row count.
        actual: Observed row count.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_VERIFICATION_FAILED",
        category="rollback",
        suggested_action="Compare the target with the backup and restore manually",
    )

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        expected: int | None = None,
        actual: int | None = None,
        session_id: UUID | None = None,
    ) -> None:
        self.table = table
        self.expected = expected
        self.actual = actual
        super().__init__(message, session_id=session_id)


class ErrorHandler:
    """
    Error handler with automatic retry for transient errors.

    Provides a unified interface for handling migration errors with:
    - Automatic retry for transient errors with exponential backoff
    - Structured logging with error classification
    - Alert hooks for critical/error severity

    Usage:
        >>> handler = ErrorHandler()
        >>>
        >>> result = await handler.execute_with_retry(
        ...     lambda: writer.insert_batch("customers", records),
        ...     operation_name="customers.batch_write",
        ...     retry_config=RetryConfig(max_attempts=4),
        ... )

    Attributes:
        alert_callback: Callback for alerting on errors.
        metrics_callback: Callback for recording error metrics.
    """

    def __init__(
        self,
        alert_callback: Callable[[MigrationError], None] | None = None,
        metrics_callback: Callable[[MigrationError, bool], None] | None = None,
    ) -> None:
        """
        Initialize the error handler.

        Args:
            alert_callback: Callback invoked when errors with alerting severity occur.
            metrics_callback: Callback for recording error metrics (error, retried).
        """
        self.alert_callback = alert_callback
        self.metrics_callback = metrics_callback

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging and metrics.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            MigrationError: If all retries are exhausted or the error is not transient.
        """
        attempt = 0

        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

            except MigrationError as e:
                self._handle_error(e, operation_name)

                if not e.recoverability.should_retry:
                    logger.error(
                        "Non-retryable error in '%s': %s (code=%s)",
                        operation_name,
                        e.message,
                        e.error_code,
                    )
                    raise

                config = retry_config or e.retry_config or BATCH_RETRY_CONFIG

                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s': %s",
                        config.max_attempts,
                        operation_name,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                delay_s = delay_ms / 1000.0

                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_s,
                )

                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await asyncio.sleep(delay_s)
                attempt += 1

    def _handle_error(self, error: MigrationError, operation_name: str) -> None:
        """Handle an error by logging and potentially alerting."""
        classification = error.classification

        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, severity=%s, recoverable=%s]",
            operation_name,
            error.message,
            classification.error_code,
            classification.severity.value,
            classification.recoverability.value,
        )

        if classification.severity.should_alert and self.alert_callback:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed")

        if self.metrics_callback:
            try:
                self.metrics_callback(error, classification.recoverability.should_retry)
            except Exception:
                logger.exception("Metrics callback failed")


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For MigrationError subclasses, returns their specific classification.
    For other exceptions, returns a generic fatal classification.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationError):
        return exc.classification

    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs and the migration report.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "BATCH_RETRY_CONFIG",
    "STORE_RETRY_CONFIG",
    "MigrationError",
    "OrchestrationError",
    "DependencyCycleError",
    "UnknownDependencyError",
    "MigrationStateError",
    "RecordTransformError",
    "StoreError",
    "BatchWriteError",
    "BatchTimeoutError",
    "EntityMigrationError",
    "FailureThresholdExceededError",
    "PipelineTimeoutError",
    "MigrationCancelledError",
    "MigrationAbortedError",
    "RollbackError",
    "InvalidRollbackStrategyError",
    "BackupIntegrityError",
    "RollbackVerificationError",
    "ErrorHandler",
    "classify_exception",
]
