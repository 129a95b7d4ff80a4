"""
Data models for the legacy data migration engine.

This module defines the core data structures used throughout the migration
engine: session and per-entity state, batch results, validation findings,
rollback checkpoints and reports, and the final migration report.

Models in this module:

Enums:
    - EntityStatus: Lifecycle of one entity within a session
    - MigrationPhase: Lifecycle of a whole session
    - Severity: Severity of a validation finding or alert
    - FindingKind: Category of a validation finding
    - ValidationGate: Which gate produced a finding
    - RollbackTrigger: Why a rollback was started
    - RollbackStrategyKind: How a rollback undoes changes
    - RollbackStatus: Outcome of a rollback
    - OverallStatus: Outcome of a migration run

Configuration:
    - MigrationConfig: Configuration for a migration session

Core Models:
    - MigrationSession: One end-to-end run
    - EntityMigrationState: Progress of one entity
    - MigrationStats: Aggregate counters
    - BatchResult / RecordFailure: Outcome of one page
    - ValidationFinding: Typed validation result
    - ErrorRecord: Captured error for the report
    - TimeWindow, RollbackCheckpoint, TableRollbackResult, RollbackStats,
      RollbackReport: Rollback bookkeeping
    - SessionStatus: Real-time session status snapshot
    - MigrationReport: Final report of a session
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID, uuid4

from migrationsuite.exceptions import MigrationStateError, classify_exception

REPORT_FORMAT_VERSION = "1.0"
"""Version stamped on every serialized report."""


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class EntityStatus(Enum):
    """
    Lifecycle of one entity within a migration session.

    Valid transitions:
        - PENDING -> IN_PROGRESS: All dependencies completed, processing starts
        - IN_PROGRESS -> COMPLETED: Every source row processed
        - IN_PROGRESS -> FAILED: Entity aborted
        - FAILED -> PENDING: Entity reset for a fresh attempt
    """

    PENDING = "pending"
    """Not started yet."""

    IN_PROGRESS = "in_progress"
    """Batches are being processed."""

    COMPLETED = "completed"
    """All source rows were processed."""

    FAILED = "failed"
    """The entity was aborted."""

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a terminal status for the current run.

        Returns:
            True for COMPLETED and FAILED.
        """
        return self in (EntityStatus.COMPLETED, EntityStatus.FAILED)

    def can_transition_to(self, target: EntityStatus) -> bool:
        """
        Check if transition to target status is valid.

        Args:
            target: The status to transition to.

        Returns:
            True if the transition is valid.
        """
        valid_transitions: dict[EntityStatus, tuple[EntityStatus, ...]] = {
            EntityStatus.PENDING: (EntityStatus.IN_PROGRESS,),
            EntityStatus.IN_PROGRESS: (EntityStatus.COMPLETED, EntityStatus.FAILED),
            EntityStatus.FAILED: (EntityStatus.PENDING,),
            EntityStatus.COMPLETED: (),
        }
        return target in valid_transitions[self]


class MigrationPhase(Enum):
    """
    Lifecycle phases of a migration session.

    State machine transitions:
        PENDING -> PRE_VALIDATION -> MIGRATING -> POST_VALIDATION -> COMPLETED
                        |               |               |
                        v               v               v
                      FAILED      ROLLING_BACK <--------+
                                        |
                                        v
                                      FAILED

        PRE_VALIDATION / MIGRATING -> CANCELLED (operator stop)
        CANCELLED -> PRE_VALIDATION (session resumed)
    """

    PENDING = "pending"
    PRE_VALIDATION = "pre_validation"
    MIGRATING = "migrating"
    POST_VALIDATION = "post_validation"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a terminal (final) phase.

        Returns:
            True for COMPLETED and FAILED.
        """
        return self in (MigrationPhase.COMPLETED, MigrationPhase.FAILED)

    @property
    def is_active(self) -> bool:
        """
        Check if the session is actively working.

        Returns:
            True while validating, migrating or rolling back.
        """
        return self in (
            MigrationPhase.PRE_VALIDATION,
            MigrationPhase.MIGRATING,
            MigrationPhase.POST_VALIDATION,
            MigrationPhase.ROLLING_BACK,
        )

    def can_transition_to(self, target: MigrationPhase) -> bool:
        """
        Check if transition to target phase is valid.

        Args:
            target: The target phase to transition to.

        Returns:
            True if the transition is valid.
        """
        if self.is_terminal:
            return False

        valid_transitions: dict[MigrationPhase, tuple[MigrationPhase, ...]] = {
            MigrationPhase.PENDING: (
                MigrationPhase.PRE_VALIDATION,
                MigrationPhase.FAILED,
                MigrationPhase.CANCELLED,
            ),
            MigrationPhase.PRE_VALIDATION: (
                MigrationPhase.MIGRATING,
                MigrationPhase.FAILED,
                MigrationPhase.CANCELLED,
            ),
            MigrationPhase.MIGRATING: (
                MigrationPhase.POST_VALIDATION,
                MigrationPhase.ROLLING_BACK,
                MigrationPhase.FAILED,
                MigrationPhase.CANCELLED,
            ),
            MigrationPhase.POST_VALIDATION: (
                MigrationPhase.COMPLETED,
                MigrationPhase.ROLLING_BACK,
                MigrationPhase.FAILED,
            ),
            MigrationPhase.ROLLING_BACK: (MigrationPhase.FAILED,),
            MigrationPhase.CANCELLED: (MigrationPhase.PRE_VALIDATION, MigrationPhase.FAILED),
        }
        return target in valid_transitions.get(self, ())


class Severity(Enum):
    """Severity of a validation finding or a monitor alert."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank for ordering (critical highest)."""
        return {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}[self]


class FindingKind(Enum):
    """Category of a validation finding."""

    DUPLICATE_KEY = "DUPLICATE_KEY"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    ORPHANED_REFERENCE = "ORPHANED_REFERENCE"
    RECORD_COUNT_MISMATCH = "RECORD_COUNT_MISMATCH"
    INVALID_DATA = "INVALID_DATA"
    MISSING_TABLE = "MISSING_TABLE"
    MISSING_COLUMN = "MISSING_COLUMN"
    UNREACHABLE_STORE = "UNREACHABLE_STORE"
    BACKUP_STALE = "BACKUP_STALE"
    BACKUP_INTEGRITY = "BACKUP_INTEGRITY"
    CONNECTION_TERMINATION = "CONNECTION_TERMINATION"


class ValidationGate(Enum):
    """Validation checkpoint that produced a finding."""

    PRE_MIGRATION = "pre_migration"
    POST_MIGRATION = "post_migration"
    ROLLBACK = "rollback"


class RollbackTrigger(Enum):
    """Reason a rollback was started."""

    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    DATA_CORRUPTION = "DATA_CORRUPTION"
    TIMEOUT = "TIMEOUT"
    MANUAL = "MANUAL"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"


class RollbackStrategyKind(Enum):
    """
    The four interchangeable rollback strategies.

    Attributes:
        SNAPSHOT: Full restore of every affected table from the backup.
        SELECTIVE: Restore only problematic tables from the backup.
        INCREMENTAL: Delete rows written since the session started.
        PARTIAL: Delete rows written inside an explicit time window.
    """

    SNAPSHOT = "snapshot"
    SELECTIVE = "selective"
    INCREMENTAL = "incremental"
    PARTIAL = "partial"

    @property
    def requires_backup(self) -> bool:
        """Check if the strategy copies rows back from a backup store."""
        return self in (RollbackStrategyKind.SNAPSHOT, RollbackStrategyKind.SELECTIVE)

    @classmethod
    def for_trigger(cls, trigger: RollbackTrigger) -> RollbackStrategyKind:
        """
        Select the default strategy for a trigger.

        Args:
            trigger: Why the rollback is happening.

        Returns:
            The strategy mapped to the trigger.
        """
        return _TRIGGER_STRATEGIES[trigger]


_TRIGGER_STRATEGIES: dict[RollbackTrigger, RollbackStrategyKind] = {
    RollbackTrigger.DATA_CORRUPTION: RollbackStrategyKind.SNAPSHOT,
    RollbackTrigger.SYSTEM_ERROR: RollbackStrategyKind.SNAPSHOT,
    RollbackTrigger.VALIDATION_FAILURE: RollbackStrategyKind.SELECTIVE,
    RollbackTrigger.BUSINESS_RULE_VIOLATION: RollbackStrategyKind.SELECTIVE,
    RollbackTrigger.TIMEOUT: RollbackStrategyKind.INCREMENTAL,
    RollbackTrigger.MANUAL: RollbackStrategyKind.SNAPSHOT,
}


class RollbackStatus(Enum):
    """Outcome of a rollback."""

    COMPLETED = "completed"
    FAILED = "failed"


class OverallStatus(Enum):
    """Computed outcome of a migration run."""

    SUCCESS = "SUCCESS"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Configuration for a migration session.

    This class is immutable (frozen) to prevent accidental modification
    during a run.

    Attributes:
        batch_size: Rows per page and per bulk insert (default 1000).
        max_retries: Retries for a failed batch write (default 3).
        retry_base_delay_ms: Base backoff delay between retries (default 500).
        retry_max_delay_ms: Maximum backoff delay (default 30000).
        batch_timeout_seconds: Timeout of one batch write (default 300).
        pipeline_timeout_seconds: Overall timeout of the migration phase,
            None for no limit.
        validation_sample_size: Target rows sampled per entity (default 100).
        progress_report_interval: Records between progress ticks (default 5000).
        dry_run: Skip writes while still advancing counters.
        rollback_enabled: Roll back automatically on critical failures.
        backup_enabled: A backup store is available for restoring strategies.
        fail_fast: Abort an entity on the first batch that exhausts retries.
        max_failure_rate: Entity failure rate that aborts the entity (default 0.05).
        stop_on_entity_failure: Stop further entities once one fails.
        idempotent_writes: Insert-or-ignore by natural key.
        rollback_strategy: Strategy override; None derives it from the trigger.

    Example:
        >>> config = MigrationConfig(batch_size=500, dry_run=True)
        >>> config.batch_size
        500
    """

    batch_size: int = 1000
    max_retries: int = 3
    retry_base_delay_ms: float = 500.0
    retry_max_delay_ms: float = 30000.0
    batch_timeout_seconds: float = 300.0
    pipeline_timeout_seconds: float | None = None
    validation_sample_size: int = 100
    progress_report_interval: int = 5000
    dry_run: bool = False
    rollback_enabled: bool = True
    backup_enabled: bool = True
    fail_fast: bool = False
    max_failure_rate: float = 0.05
    stop_on_entity_failure: bool = True
    idempotent_writes: bool = True
    rollback_strategy: RollbackStrategyKind | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")

        if self.retry_base_delay_ms < 0:
            raise ValueError(f"retry_base_delay_ms must be >= 0, got {self.retry_base_delay_ms}")

        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError(
                f"retry_max_delay_ms ({self.retry_max_delay_ms}) must be >= "
                f"retry_base_delay_ms ({self.retry_base_delay_ms})"
            )

        if self.batch_timeout_seconds <= 0:
            raise ValueError(
                f"batch_timeout_seconds must be > 0, got {self.batch_timeout_seconds}"
            )

        if self.pipeline_timeout_seconds is not None and self.pipeline_timeout_seconds <= 0:
            raise ValueError(
                f"pipeline_timeout_seconds must be > 0, got {self.pipeline_timeout_seconds}"
            )

        if self.validation_sample_size < 1:
            raise ValueError(
                f"validation_sample_size must be >= 1, got {self.validation_sample_size}"
            )

        if self.progress_report_interval < 1:
            raise ValueError(
                f"progress_report_interval must be >= 1, got {self.progress_report_interval}"
            )

        if not 0.0 <= self.max_failure_rate <= 1.0:
            raise ValueError(
                f"max_failure_rate must be between 0.0 and 1.0, got {self.max_failure_rate}"
            )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "retry_max_delay_ms": self.retry_max_delay_ms,
            "batch_timeout_seconds": self.batch_timeout_seconds,
            "pipeline_timeout_seconds": self.pipeline_timeout_seconds,
            "validation_sample_size": self.validation_sample_size,
            "progress_report_interval": self.progress_report_interval,
            "dry_run": self.dry_run,
            "rollback_enabled": self.rollback_enabled,
            "backup_enabled": self.backup_enabled,
            "fail_fast": self.fail_fast,
            "max_failure_rate": self.max_failure_rate,
            "stop_on_entity_failure": self.stop_on_entity_failure,
            "idempotent_writes": self.idempotent_writes,
            "rollback_strategy": self.rollback_strategy.value if self.rollback_strategy else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        """
        Create from dictionary.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MigrationConfig instance.
        """
        strategy = data.get("rollback_strategy")
        return cls(
            batch_size=data.get("batch_size", 1000),
            max_retries=data.get("max_retries", 3),
            retry_base_delay_ms=data.get("retry_base_delay_ms", 500.0),
            retry_max_delay_ms=data.get("retry_max_delay_ms", 30000.0),
            batch_timeout_seconds=data.get("batch_timeout_seconds", 300.0),
            pipeline_timeout_seconds=data.get("pipeline_timeout_seconds"),
            validation_sample_size=data.get("validation_sample_size", 100),
            progress_report_interval=data.get("progress_report_interval", 5000),
            dry_run=data.get("dry_run", False),
            rollback_enabled=data.get("rollback_enabled", True),
            backup_enabled=data.get("backup_enabled", True),
            fail_fast=data.get("fail_fast", False),
            max_failure_rate=data.get("max_failure_rate", 0.05),
            stop_on_entity_failure=data.get("stop_on_entity_failure", True),
            idempotent_writes=data.get("idempotent_writes", True),
            rollback_strategy=RollbackStrategyKind(strategy) if strategy else None,
        )


@dataclass(frozen=True)
class RecordFailure:
    """
    One source row that could not be migrated.

    Attributes:
        key: Natural key or id of the row, if known.
        reason: Why the row failed.
    """

    key: Any
    reason: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"key": self.key, "reason": self.reason}


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one page read, transformed and written as a unit.

    Transient: folded into EntityMigrationState counters and never
    persisted on its own.

    Attributes:
        entity: Entity the batch belongs to.
        batch_number: 1-based batch sequence number within the run.
        offset: Cursor offset the page was read from.
        rows_read: Rows read from the source.
        rows_transformed: Rows that transformed successfully.
        transform_failures: Rows removed from the batch by the transformer.
        rows_written: Rows written (or, in dry-run, that would have been).
        write_failed: Rows lost because the bulk write exhausted its retries.
        attempts: Write attempts made (0 when nothing was written).
        duration_seconds: Wall-clock duration of the batch.
        dry_run: Whether the write was skipped.
        write_error: Final write error message, if the write failed.
    """

    entity: str
    batch_number: int
    offset: int
    rows_read: int
    rows_transformed: int
    transform_failures: tuple[RecordFailure, ...]
    rows_written: int
    write_failed: int = 0
    attempts: int = 0
    duration_seconds: float = 0.0
    dry_run: bool = False
    write_error: str | None = None

    @property
    def rows_failed(self) -> int:
        """Rows of this batch counted as failed."""
        return len(self.transform_failures) + self.write_failed

    @property
    def batch_failed(self) -> bool:
        """Whether the bulk write exhausted its retries."""
        return self.write_error is not None

    @property
    def retries(self) -> int:
        """Write retries performed beyond the first attempt."""
        return max(0, self.attempts - 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity": self.entity,
            "batch_number": self.batch_number,
            "offset": self.offset,
            "rows_read": self.rows_read,
            "rows_transformed": self.rows_transformed,
            "rows_written": self.rows_written,
            "rows_failed": self.rows_failed,
            "attempts": self.attempts,
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
            "write_error": self.write_error,
        }


@dataclass
class EntityMigrationState:
    """
    Progress of one entity within a session.

    This is a mutable dataclass because counters advance as batches are
    folded in. Invariant: ``migrated + failed <= total`` at all times.

    Attributes:
        entity: Entity name (e.g. "customers").
        dependencies: Entities that must be completed first.
        status: Current status.
        total: Source rows to process.
        migrated: Rows written (or accepted in dry-run).
        failed: Rows that failed.
        cursor_offset: Source rows consumed so far (resumption point).
        batches_processed: Batches folded into the counters.
        retries: Batch write retries performed.
        failure_samples: Bounded sample of record failures.
        started_at: When processing started.
        completed_at: When the entity reached a terminal status.
        last_error: Last entity-level error message.
    """

    MAX_FAILURE_SAMPLES: ClassVar[int] = 50

    entity: str
    dependencies: tuple[str, ...] = ()
    status: EntityStatus = EntityStatus.PENDING
    total: int = 0
    migrated: int = 0
    failed: int = 0
    cursor_offset: int = 0
    batches_processed: int = 0
    retries: int = 0
    failure_samples: list[RecordFailure] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    @property
    def processed(self) -> int:
        """Rows processed (migrated or failed)."""
        return self.migrated + self.failed

    @property
    def remaining(self) -> int:
        """Rows not processed yet."""
        return max(0, self.total - self.processed)

    @property
    def failure_rate(self) -> float:
        """Failed rows as a fraction of processed rows."""
        if self.processed == 0:
            return 0.0
        return self.failed / self.processed

    @property
    def progress_percent(self) -> float:
        """Progress as percentage (0-100)."""
        if self.total == 0:
            return 100.0 if self.status == EntityStatus.COMPLETED else 0.0
        return min(100.0, (self.processed / self.total) * 100)

    def transition_to(self, status: EntityStatus) -> None:
        """
        Move to a new status.

        Args:
            status: Target status.

        Raises:
            MigrationStateError: If the transition is not allowed.
        """
        if not self.status.can_transition_to(status):
            raise MigrationStateError(
                f"Invalid status transition from {self.status.value} to {status.value}",
                entity=self.entity,
                current_state=self.status.value,
                attempted=status.value,
            )
        self.status = status
        if status == EntityStatus.IN_PROGRESS and self.started_at is None:
            self.started_at = utc_now()
        if status.is_terminal:
            self.completed_at = utc_now()

    def set_total(self, total: int) -> None:
        """
        Set the number of source rows to process.

        Raises:
            MigrationStateError: If rows already processed exceed the total.
        """
        if total < self.processed:
            raise MigrationStateError(
                f"Total {total} is lower than {self.processed} rows already processed",
                entity=self.entity,
            )
        self.total = total

    def record_batch(self, result: BatchResult) -> None:
        """
        Fold a batch result into the counters.

        Args:
            result: The batch outcome.

        Raises:
            MigrationStateError: If the batch would break ``migrated + failed <= total``.
        """
        migrated = self.migrated + result.rows_written
        failed = self.failed + result.rows_failed
        if migrated + failed > self.total:
            raise MigrationStateError(
                f"Batch {result.batch_number} would exceed total: "
                f"{migrated} migrated + {failed} failed > {self.total}",
                entity=self.entity,
            )
        self.migrated = migrated
        self.failed = failed
        self.cursor_offset += result.rows_read
        self.batches_processed += 1
        self.retries += result.retries

        room = self.MAX_FAILURE_SAMPLES - len(self.failure_samples)
        if room > 0:
            self.failure_samples.extend(result.transform_failures[:room])
        if result.write_error and len(self.failure_samples) < self.MAX_FAILURE_SAMPLES:
            self.failure_samples.append(
                RecordFailure(key=f"batch:{result.batch_number}", reason=result.write_error)
            )

    def fail_remaining(self, reason: str) -> None:
        """
        Abort the entity, counting every unprocessed row as failed.

        Args:
            reason: Why the entity was aborted.
        """
        self.failed += self.remaining
        self.last_error = reason
        self.transition_to(EntityStatus.FAILED)

    def complete(self) -> None:
        """
        Mark the entity completed.

        Raises:
            MigrationStateError: If unprocessed rows remain.
        """
        if self.processed != self.total:
            raise MigrationStateError(
                f"Cannot complete with {self.remaining} unprocessed rows",
                entity=self.entity,
            )
        self.transition_to(EntityStatus.COMPLETED)

    def reset(self) -> None:
        """Reset a failed entity so it can be migrated again from the start."""
        self.transition_to(EntityStatus.PENDING)
        self.total = 0
        self.migrated = 0
        self.failed = 0
        self.cursor_offset = 0
        self.batches_processed = 0
        self.retries = 0
        self.failure_samples.clear()
        self.started_at = None
        self.completed_at = None
        self.last_error = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "entity": self.entity,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "total": self.total,
            "migrated": self.migrated,
            "failed": self.failed,
            "cursor_offset": self.cursor_offset,
            "batches_processed": self.batches_processed,
            "retries": self.retries,
            "failure_rate": self.failure_rate,
            "failure_samples": [f.to_dict() for f in self.failure_samples],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class MigrationStats:
    """
    Aggregate counters over every entity of a session.

    Attributes:
        total: Source rows across entities.
        migrated: Rows migrated across entities.
        failed: Rows failed across entities.
        batches: Batches processed.
        retries: Batch write retries.
        entities_total: Number of entities in the session.
        entities_completed: Entities that completed.
        entities_failed: Entities that failed.
    """

    total: int = 0
    migrated: int = 0
    failed: int = 0
    batches: int = 0
    retries: int = 0
    entities_total: int = 0
    entities_completed: int = 0
    entities_failed: int = 0

    @property
    def processed(self) -> int:
        """Rows processed across entities."""
        return self.migrated + self.failed

    @property
    def failure_rate(self) -> float:
        """Failed rows as a fraction of all source rows."""
        if self.total == 0:
            return 0.0
        return self.failed / self.total

    @property
    def error_rate(self) -> float:
        """Failed rows as a fraction of rows processed so far."""
        if self.processed == 0:
            return 0.0
        return self.failed / self.processed

    @classmethod
    def from_states(cls, states: list[EntityMigrationState]) -> MigrationStats:
        """
        Aggregate entity states.

        Args:
            states: Entity states to aggregate.

        Returns:
            MigrationStats instance.
        """
        return cls(
            total=sum(s.total for s in states),
            migrated=sum(s.migrated for s in states),
            failed=sum(s.failed for s in states),
            batches=sum(s.batches_processed for s in states),
            retries=sum(s.retries for s in states),
            entities_total=len(states),
            entities_completed=sum(1 for s in states if s.status == EntityStatus.COMPLETED),
            entities_failed=sum(1 for s in states if s.status == EntityStatus.FAILED),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "total": self.total,
            "migrated": self.migrated,
            "failed": self.failed,
            "processed": self.processed,
            "batches": self.batches,
            "retries": self.retries,
            "entities_total": self.entities_total,
            "entities_completed": self.entities_completed,
            "entities_failed": self.entities_failed,
            "failure_rate": self.failure_rate,
            "error_rate": self.error_rate,
        }


@dataclass(frozen=True)
class ValidationFinding:
    """
    Typed result of a validation check.

    Findings never carry timestamps, so validating unchanged data twice
    yields equal findings.

    Attributes:
        kind: Category of the finding.
        code: Specific code (e.g. "ORPHANED_PRODUCTS").
        severity: info, warning or critical.
        gate: Gate that produced the finding.
        entity: Affected entity or table name.
        count: Number of offending rows (or 1 for structural findings).
        message: Human-readable description.
        sample_keys: Sample of offending keys.
    """

    kind: FindingKind
    code: str
    severity: Severity
    gate: ValidationGate
    entity: str | None
    count: int
    message: str
    sample_keys: tuple[Any, ...] = ()

    @property
    def is_critical(self) -> bool:
        """Check if the finding blocks progression."""
        return self.severity == Severity.CRITICAL

    def sort_key(self) -> tuple[int, str, str, str]:
        """Deterministic ordering key (gate, entity, code)."""
        gate_rank = list(ValidationGate).index(self.gate)
        return (gate_rank, self.entity or "", self.code, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "severity": self.severity.value,
            "gate": self.gate.value,
            "entity": self.entity,
            "count": self.count,
            "message": self.message,
            "sample_keys": list(self.sample_keys),
        }


@dataclass(frozen=True)
class ErrorRecord:
    """
    An error observed during a session, captured for the report.

    Attributes:
        stage: Phase or component where the error happened.
        error_code: Classification error code.
        message: Error message.
        severity: Classification severity.
        recoverability: Classification recoverability.
        entity: Affected entity, if any.
        occurred_at: When the error was captured.
    """

    stage: str
    error_code: str
    message: str
    severity: str
    recoverability: str
    entity: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_exception(
        cls,
        stage: str,
        exc: BaseException,
        *,
        entity: str | None = None,
    ) -> ErrorRecord:
        """
        Capture an exception using its classification.

        Args:
            stage: Phase or component where the error happened.
            exc: The exception.
            entity: Affected entity, if any.

        Returns:
            ErrorRecord instance.
        """
        classification = classify_exception(exc)
        return cls(
            stage=stage,
            error_code=classification.error_code,
            message=str(exc),
            severity=classification.severity.value,
            recoverability=classification.recoverability.value,
            entity=entity or getattr(exc, "entity", None),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "stage": self.stage,
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity,
            "recoverability": self.recoverability,
            "entity": self.entity,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class MigrationSession:
    """
    One end-to-end migration run.

    Passed by reference through the pipeline. Mutated only by the
    orchestrator and the batch processor; rendered into an immutable
    MigrationReport at the end.

    Attributes:
        config: Session configuration.
        id: Unique session identifier.
        entities: Entity states in dependency order.
        findings: Validation findings accumulated across gates.
        errors: Errors captured during the run.
        phase: Current lifecycle phase.
        created_at: When the session was created.
        started_at: When execution started (rollback boundary).
        ended_at: When execution ended.
        estimate: Timing estimate computed before migrating.
    """

    config: MigrationConfig = field(default_factory=MigrationConfig)
    id: UUID = field(default_factory=uuid4)
    entities: list[EntityMigrationState] = field(default_factory=list)
    findings: list[ValidationFinding] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    phase: MigrationPhase = MigrationPhase.PENDING
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    estimate: dict[str, Any] | None = None

    @property
    def stats(self) -> MigrationStats:
        """Aggregate counters over every entity."""
        return MigrationStats.from_states(self.entities)

    @property
    def entity_names(self) -> list[str]:
        """Entity names in dependency order."""
        return [state.entity for state in self.entities]

    @property
    def has_critical_findings(self) -> bool:
        """Check if any accumulated finding is critical."""
        return any(f.is_critical for f in self.findings)

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed time of the run, if it started."""
        if self.started_at is None:
            return None
        end = self.ended_at or utc_now()
        return (end - self.started_at).total_seconds()

    def state_for(self, entity: str) -> EntityMigrationState:
        """
        Get the state of one entity.

        Raises:
            MigrationStateError: If the entity is not part of the session.
        """
        for state in self.entities:
            if state.entity == entity:
                return state
        raise MigrationStateError(f"Entity {entity} is not part of session {self.id}")

    def add_entity(self, entity: str, dependencies: tuple[str, ...] = ()) -> EntityMigrationState:
        """
        Append an entity state (callers add entities in dependency order).

        Returns:
            The new EntityMigrationState.
        """
        if any(s.entity == entity for s in self.entities):
            raise MigrationStateError(f"Entity {entity} already registered", entity=entity)
        state = EntityMigrationState(entity=entity, dependencies=dependencies)
        self.entities.append(state)
        return state

    def dependencies_completed(self, entity: str) -> bool:
        """Check whether every dependency of ``entity`` is completed."""
        state = self.state_for(entity)
        return all(
            self.state_for(dep).status == EntityStatus.COMPLETED for dep in state.dependencies
        )

    def begin_entity(self, entity: str) -> EntityMigrationState:
        """
        Move an entity to IN_PROGRESS.

        Raises:
            MigrationStateError: If a dependency has not completed.
        """
        state = self.state_for(entity)
        if not self.dependencies_completed(entity):
            pending = [
                dep
                for dep in state.dependencies
                if self.state_for(dep).status != EntityStatus.COMPLETED
            ]
            raise MigrationStateError(
                f"Dependencies not completed: {', '.join(pending)}",
                entity=entity,
                current_state=state.status.value,
                attempted=EntityStatus.IN_PROGRESS.value,
            )
        if state.status != EntityStatus.IN_PROGRESS:
            state.transition_to(EntityStatus.IN_PROGRESS)
        return state

    def set_phase(self, phase: MigrationPhase) -> MigrationPhase:
        """
        Move the session to a new phase.

        Returns:
            The previous phase.

        Raises:
            MigrationStateError: If the transition is not allowed.
        """
        if not self.phase.can_transition_to(phase):
            raise MigrationStateError(
                f"Invalid phase transition from {self.phase.value} to {phase.value}",
                current_state=self.phase.value,
                attempted=phase.value,
            )
        previous = self.phase
        self.phase = phase
        return previous

    def add_findings(self, findings: list[ValidationFinding]) -> None:
        """Accumulate validation findings."""
        self.findings.extend(findings)

    def record_error(
        self,
        stage: str,
        exc: BaseException,
        *,
        entity: str | None = None,
    ) -> ErrorRecord:
        """Capture an error for the final report."""
        record = ErrorRecord.from_exception(stage, exc, entity=entity)
        self.errors.append(record)
        return record

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "phase": self.phase.value,
            "config": self.config.to_dict(),
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "entities": [s.to_dict() for s in self.entities],
            "stats": self.stats.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass(frozen=True)
class SessionStatus:
    """
    Real-time status snapshot of a session.

    Attributes:
        session_id: Session identifier.
        phase: Current phase.
        current_entity: Entity being processed, if any.
        progress_percent: Processed rows as a percentage of all rows.
        stats: Aggregate counters.
        is_paused: Whether the run is paused.
        cancel_requested: Whether the operator asked to stop.
        started_at: When execution started.
    """

    session_id: UUID
    phase: MigrationPhase
    current_entity: str | None
    progress_percent: float
    stats: MigrationStats
    is_paused: bool
    cancel_requested: bool
    started_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "session_id": str(self.session_id),
            "phase": self.phase.value,
            "current_entity": self.current_entity,
            "progress_percent": self.progress_percent,
            "stats": self.stats.to_dict(),
            "is_paused": self.is_paused,
            "cancel_requested": self.cancel_requested,
            "started_at": _iso(self.started_at),
        }


@dataclass(frozen=True)
class TimeWindow:
    """
    Time range used by partial rollbacks.

    Attributes:
        start: Inclusive start.
        end: Inclusive end, or None for "until now".
    """

    start: datetime
    end: datetime | None = None

    def __post_init__(self) -> None:
        """Validate the window bounds."""
        if self.end is not None and self.end < self.start:
            raise ValueError(f"end ({self.end}) must not be before start ({self.start})")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"start": self.start.isoformat(), "end": _iso(self.end)}


@dataclass(frozen=True)
class RollbackCheckpoint:
    """
    A recorded point a rollback can be reasoned about from.

    Created by the rollback engine before destructive operations and
    referenced (not owned) by the rollback report.

    Attributes:
        name: Checkpoint name (e.g. "rollback_start", "table:products").
        strategy: Strategy that created it.
        entities: Tables or entities covered by the checkpoint.
        created_at: When the checkpoint was taken.
        details: Strategy-specific details (row counts, boundaries).
        id: Unique checkpoint identifier.
    """

    name: str
    strategy: RollbackStrategyKind
    entities: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    details: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": str(self.id),
            "name": self.name,
            "strategy": self.strategy.value,
            "entities": list(self.entities),
            "created_at": self.created_at.isoformat(),
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class TableRollbackResult:
    """
    Before/after row counts of one table touched by a rollback.

    Attributes:
        table: Target table name.
        before_count: Rows before the rollback.
        after_count: Rows after the rollback.
        rows_deleted: Rows removed (or that would be removed in dry-run).
        rows_restored: Rows copied back from the backup.
    """

    table: str
    before_count: int
    after_count: int
    rows_deleted: int = 0
    rows_restored: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "table": self.table,
            "before_count": self.before_count,
            "after_count": self.after_count,
            "rows_deleted": self.rows_deleted,
            "rows_restored": self.rows_restored,
        }


@dataclass(frozen=True)
class RollbackStats:
    """
    Counters of one rollback.

    Attributes:
        tables_processed: Tables touched.
        records_processed: Rows inspected.
        records_rolled_back: Rows deleted or restored.
        errors_encountered: Errors observed (including warnings).
        time_taken_seconds: Duration of the rollback.
    """

    tables_processed: int = 0
    records_processed: int = 0
    records_rolled_back: int = 0
    errors_encountered: int = 0
    time_taken_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tables_processed": self.tables_processed,
            "records_processed": self.records_processed,
            "records_rolled_back": self.records_rolled_back,
            "errors_encountered": self.errors_encountered,
            "time_taken_seconds": self.time_taken_seconds,
        }


@dataclass(frozen=True)
class RollbackReport:
    """
    Outcome of one rollback.

    Attributes:
        session_id: Session that was rolled back.
        trigger: Why the rollback happened.
        strategy: How the rollback undid changes.
        status: completed or failed.
        started_at: When the rollback started.
        ended_at: When the rollback ended.
        tables: Per-table before/after counts.
        stats: Rollback counters.
        checkpoints: Checkpoints taken during the rollback.
        findings: Findings from the final integrity check and preconditions.
        error: Error message if the rollback failed.
        recommendations: Follow-up advice.
        next_steps: Trigger-specific next steps for the operator.
        dry_run: Whether destructive operations were skipped.
        window: Time window of partial/incremental rollbacks.
        id: Unique report identifier.
    """

    session_id: UUID
    trigger: RollbackTrigger
    strategy: RollbackStrategyKind
    status: RollbackStatus
    started_at: datetime
    ended_at: datetime
    tables: tuple[TableRollbackResult, ...] = ()
    stats: RollbackStats = field(default_factory=RollbackStats)
    checkpoints: tuple[RollbackCheckpoint, ...] = ()
    findings: tuple[ValidationFinding, ...] = ()
    error: str | None = None
    recommendations: tuple[str, ...] = ()
    next_steps: tuple[str, ...] = ()
    dry_run: bool = False
    window: TimeWindow | None = None
    id: UUID = field(default_factory=uuid4)

    @property
    def succeeded(self) -> bool:
        """Check if the rollback completed."""
        return self.status == RollbackStatus.COMPLETED

    @property
    def duration_seconds(self) -> float:
        """Duration of the rollback."""
        return (self.ended_at - self.started_at).total_seconds()

    def table(self, name: str) -> TableRollbackResult | None:
        """Get the result for one table, if it was touched."""
        for result in self.tables:
            if result.table == name:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": REPORT_FORMAT_VERSION,
            "id": str(self.id),
            "session_id": str(self.session_id),
            "trigger": self.trigger.value,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
            "window": self.window.to_dict() if self.window else None,
            "tables": [t.to_dict() for t in self.tables],
            "stats": self.stats.to_dict(),
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "findings": [f.to_dict() for f in self.findings],
            "error": self.error,
            "recommendations": list(self.recommendations),
            "next_steps": list(self.next_steps),
        }


@dataclass(frozen=True)
class MigrationReport:
    """
    Final report of a migration session.

    Always produced, even when the run fails. Serialized with a stable
    ``version`` field so downstream tooling can parse historical reports.

    Attributes:
        session_id: Session identifier.
        status: Computed overall status.
        phase: Final session phase.
        started_at: When execution started.
        ended_at: When execution ended.
        dry_run: Whether writes were skipped.
        config: Session configuration.
        entities: Per-entity state snapshots.
        stats: Aggregate counters.
        findings: All validation findings.
        errors: All captured errors.
        rollback: Rollback outcome, if a rollback ran.
        estimate: Timing estimate, if computed.
        recommendations: Follow-up advice.
    """

    session_id: UUID
    status: OverallStatus
    phase: MigrationPhase
    started_at: datetime | None
    ended_at: datetime | None
    dry_run: bool
    config: MigrationConfig
    entities: tuple[dict[str, Any], ...]
    stats: MigrationStats
    findings: tuple[ValidationFinding, ...]
    errors: tuple[ErrorRecord, ...]
    rollback: RollbackReport | None = None
    estimate: dict[str, Any] | None = None
    recommendations: tuple[str, ...] = ()

    HIGH_FAILURE_RATE: ClassVar[float] = 0.01

    @property
    def duration_seconds(self) -> float | None:
        """Duration of the run, if it started and ended."""
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def critical_findings(self) -> list[ValidationFinding]:
        """Findings with critical severity."""
        return [f for f in self.findings if f.is_critical]

    @classmethod
    def from_session(
        cls,
        session: MigrationSession,
        rollback: RollbackReport | None = None,
    ) -> MigrationReport:
        """
        Render a session into its final report.

        Args:
            session: The session to report on.
            rollback: Rollback outcome, if a rollback ran.

        Returns:
            MigrationReport instance.
        """
        stats = session.stats
        status = cls._evaluate_status(session, stats, rollback)
        return cls(
            session_id=session.id,
            status=status,
            phase=session.phase,
            started_at=session.started_at,
            ended_at=session.ended_at,
            dry_run=session.config.dry_run,
            config=session.config,
            entities=tuple(s.to_dict() for s in session.entities),
            stats=stats,
            findings=tuple(session.findings),
            errors=tuple(session.errors),
            rollback=rollback,
            estimate=session.estimate,
            recommendations=tuple(cls._recommendations(session, stats, rollback)),
        )

    @staticmethod
    def _evaluate_status(
        session: MigrationSession,
        stats: MigrationStats,
        rollback: RollbackReport | None,
    ) -> OverallStatus:
        if (
            session.phase != MigrationPhase.COMPLETED
            or rollback is not None
            or session.has_critical_findings
            or stats.entities_failed > 0
        ):
            return OverallStatus.FAILED
        if stats.failed > 0 or session.findings or session.errors:
            return OverallStatus.COMPLETED_WITH_WARNINGS
        return OverallStatus.SUCCESS

    @classmethod
    def _recommendations(
        cls,
        session: MigrationSession,
        stats: MigrationStats,
        rollback: RollbackReport | None,
    ) -> list[str]:
        recommendations: list[str] = []

        if session.findings:
            recommendations.append(
                "Review and resolve validation findings before proceeding to production"
            )

        if stats.failure_rate > cls.HIGH_FAILURE_RATE:
            recommendations.append(
                f"High failure rate detected ({stats.failure_rate * 100:.2f}%). "
                "Investigate data quality issues"
            )

        if rollback is not None:
            recommendations.append(
                f"Rollback using {rollback.strategy.value} strategy {rollback.status.value}; "
                "review the rollback report before retrying"
            )

        if session.phase == MigrationPhase.CANCELLED:
            recommendations.append(
                "Migration was cancelled; re-execute the session to resume from the last batch"
            )

        if session.config.dry_run:
            recommendations.append(
                "Dry run only: no records were written. Disable dry_run to apply the migration"
            )

        if not recommendations:
            recommendations.append(
                "Migration completed successfully. Ready for production deployment"
            )

        return recommendations

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": REPORT_FORMAT_VERSION,
            "session_id": str(self.session_id),
            "status": self.status.value,
            "phase": self.phase.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "dry_run": self.dry_run,
            "config": self.config.to_dict(),
            "entities": [dict(e) for e in self.entities],
            "stats": self.stats.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "errors": [e.to_dict() for e in self.errors],
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "estimate": self.estimate,
            "recommendations": list(self.recommendations),
        }


__all__ = [
    "REPORT_FORMAT_VERSION",
    "utc_now",
    "EntityStatus",
    "MigrationPhase",
    "Severity",
    "FindingKind",
    "ValidationGate",
    "RollbackTrigger",
    "RollbackStrategyKind",
    "RollbackStatus",
    "OverallStatus",
    "MigrationConfig",
    "RecordFailure",
    "BatchResult",
    "EntityMigrationState",
    "MigrationStats",
    "ValidationFinding",
    "ErrorRecord",
    "MigrationSession",
    "SessionStatus",
    "TimeWindow",
    "RollbackCheckpoint",
    "TableRollbackResult",
    "RollbackStats",
    "RollbackReport",
    "MigrationReport",
]
