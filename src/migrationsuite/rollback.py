"""
Rollback engine with four interchangeable strategies.

Strategies:
    - SnapshotRollback: full restore of every affected table from a backup
    - SelectiveRollback: restore only problematic tables from a backup
    - IncrementalRollback: delete rows written since the session started
    - PartialRollback: delete rows written inside an explicit time window

Every strategy runs through the same template (RollbackStrategy.execute):
preconditions, a ``rollback_start`` checkpoint, the strategy work under
the configured time limit, a final integrity check and the report.

A rollback is never itself rolled back and never retried. Any error is
surfaced as RollbackError carrying the failed RollbackReport.

Example:
    >>> engine = RollbackEngine(target, backup=backup)
    >>> report = await engine.rollback(session, RollbackTrigger.TIMEOUT)
    >>> report.strategy
    <RollbackStrategyKind.INCREMENTAL: 'incremental'>
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, ClassVar

from migrationsuite.entities import (
    ENTITY_SPECS,
    TARGET_TABLES,
    EntitySpec,
    reverse_dependency_order,
    topological_order,
)
from migrationsuite.events import RollbackCompleted, RollbackStarted
from migrationsuite.exceptions import (
    BackupIntegrityError,
    InvalidRollbackStrategyError,
    RollbackError,
    RollbackVerificationError,
    StoreError,
)
from migrationsuite.interfaces import BackupReader, EventPublisher, ReportSink, TargetWriter
from migrationsuite.metrics import MigrationMetrics
from migrationsuite.models import (
    FindingKind,
    MigrationSession,
    RollbackCheckpoint,
    RollbackReport,
    RollbackStats,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
    Severity,
    TableRollbackResult,
    TimeWindow,
    ValidationFinding,
    ValidationGate,
    utc_now,
)
from migrationsuite.observability import (
    ATTR_DRY_RUN,
    ATTR_ROLLBACK_STATUS,
    ATTR_ROLLBACK_STRATEGY,
    ATTR_ROLLBACK_TRIGGER,
    ATTR_SESSION_ID,
    ATTR_TABLE,
    Tracer,
    create_tracer,
)
from migrationsuite.validation import ValidationEngine

logger = logging.getLogger(__name__)

CREATED_AT_COLUMN = "created_at"
"""Target column holding the time a row was written."""

LARGE_ROLLBACK_THRESHOLD = 100_000
"""Rows rolled back above which an incremental approach is recommended."""

_NEXT_STEPS: dict[RollbackTrigger, tuple[str, ...]] = {
    RollbackTrigger.VALIDATION_FAILURE: (
        "Fix data validation issues in the source system",
        "Re-run data quality validation",
        "Retry the migration with corrected data",
    ),
    RollbackTrigger.DATA_CORRUPTION: (
        "Investigate the root cause of the data corruption",
        "Verify backup integrity",
        "Add data validation checks for the corrupted fields",
    ),
    RollbackTrigger.TIMEOUT: (
        "Optimize migration throughput (batch size, indexes)",
        "Split the migration into smaller entity groups",
        "Increase the pipeline timeout if appropriate",
    ),
}

_DEFAULT_NEXT_STEPS: tuple[str, ...] = (
    "Review the rollback cause and address the root issue",
    "Update migration procedures if necessary",
    "Schedule a new migration attempt",
)


@dataclass(frozen=True)
class RollbackConfig:
    """
    Configuration of the rollback engine.

    Attributes:
        max_rollback_time_seconds: Time limit of the strategy work.
        checkpoint_interval: Rows copied between progress checkpoints.
        batch_size: Rows per page when copying back from a backup.
        max_backup_age_hours: Backups older than this raise BACKUP_STALE.
        dry_run: Count rows that would be affected without mutating.
    """

    max_rollback_time_seconds: float = 1800.0
    checkpoint_interval: int = 5000
    batch_size: int = 1000
    max_backup_age_hours: float = 24.0
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_rollback_time_seconds <= 0:
            raise ValueError(
                f"max_rollback_time_seconds must be > 0, got {self.max_rollback_time_seconds}"
            )
        if self.checkpoint_interval < 1:
            raise ValueError(f"checkpoint_interval must be >= 1, got {self.checkpoint_interval}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_backup_age_hours <= 0:
            raise ValueError(f"max_backup_age_hours must be > 0, got {self.max_backup_age_hours}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "max_rollback_time_seconds": self.max_rollback_time_seconds,
            "checkpoint_interval": self.checkpoint_interval,
            "batch_size": self.batch_size,
            "max_backup_age_hours": self.max_backup_age_hours,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackConfig:
        """Create from dictionary."""
        defaults = cls()
        return cls(
            max_rollback_time_seconds=data.get(
                "max_rollback_time_seconds", defaults.max_rollback_time_seconds
            ),
            checkpoint_interval=data.get("checkpoint_interval", defaults.checkpoint_interval),
            batch_size=data.get("batch_size", defaults.batch_size),
            max_backup_age_hours=data.get("max_backup_age_hours", defaults.max_backup_age_hours),
            dry_run=data.get("dry_run", defaults.dry_run),
        )


def affected_specs(session: MigrationSession) -> list[EntitySpec]:
    """Specs of the session's entities in dependency order (every entity when empty)."""
    names = set(session.entity_names)
    specs = [spec for spec in ENTITY_SPECS.values() if not names or spec.name in names]
    return topological_order(specs)


class RollbackStrategy(ABC):
    """
    Template shared by the four strategies.

    A strategy instance serves one rollback: it accumulates per-table
    results, checkpoints and findings while it runs, so a failed run can
    still be reported with everything done up to the failure.

    Subclasses set ``kind`` and implement _run().
    """

    kind: ClassVar[RollbackStrategyKind]

    def __init__(
        self,
        target: TargetWriter,
        trigger: RollbackTrigger,
        config: RollbackConfig | None = None,
        *,
        validator: ValidationEngine | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the strategy.

        Args:
            target: Store being rolled back.
            trigger: Why the rollback is happening.
            config: Rollback configuration.
            validator: Runs the integrity checks.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._target = target
        self._trigger = trigger
        self._config = config or RollbackConfig()
        self._validator = validator or ValidationEngine(target, target, tracer=self._tracer)

        self._tables: list[TableRollbackResult] = []
        self._checkpoints: list[RollbackCheckpoint] = []
        self._findings: list[ValidationFinding] = []
        self._records_processed = 0
        self._records_rolled_back = 0
        self._errors = 0
        self._started_at: datetime | None = None
        self._window: TimeWindow | None = None

    @property
    def requires_backup(self) -> bool:
        """Check if the strategy copies rows back from a backup."""
        return self.kind.requires_backup

    @property
    def dry_run(self) -> bool:
        return self._config.dry_run

    async def execute(
        self,
        session: MigrationSession,
        backup: BackupReader | None = None,
    ) -> RollbackReport:
        """
        Roll back the session's writes.

        Args:
            session: Session whose writes are undone (start time and entities).
            backup: Backup store; required by snapshot and selective.

        Returns:
            The completed RollbackReport.

        Raises:
            RollbackError: If the rollback fails; ``report`` holds the
                failed report.
        """
        self._started_at = utc_now()
        start = time.perf_counter()
        specs = affected_specs(session)

        try:
            await self._check_preconditions(backup)
            self._checkpoint(
                "rollback_start",
                [spec.target_table for spec in specs],
                trigger=self._trigger.value,
            )
            try:
                await asyncio.wait_for(
                    self._run(session, specs, backup),
                    timeout=self._config.max_rollback_time_seconds,
                )
            except TimeoutError as e:
                raise RollbackError(
                    f"Rollback exceeded {self._config.max_rollback_time_seconds}s",
                    session_id=session.id,
                ) from e
            self._findings.extend(
                await self._validator.relationship_findings(ValidationGate.ROLLBACK)
            )
        except RollbackError as e:
            self._errors += 1
            e.report = self._report(session, start, RollbackStatus.FAILED, str(e))
            raise
        except Exception as e:
            self._errors += 1
            report = self._report(session, start, RollbackStatus.FAILED, str(e))
            raise RollbackError(
                f"{self.kind.value} rollback failed: {e}",
                session_id=session.id,
                report=report,
            ) from e

        return self._report(session, start, RollbackStatus.COMPLETED, None)

    @abstractmethod
    async def _run(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        backup: BackupReader | None,
    ) -> None:
        """Strategy work."""

    # -- template steps ---------------------------------------------------------

    async def _check_preconditions(self, backup: BackupReader | None) -> None:
        await self._target.ping()
        if not self.requires_backup:
            return
        if backup is None:
            raise InvalidRollbackStrategyError(f"{self.kind.value} rollback requires a backup")
        await backup.ping()
        stale = await backup_staleness_finding(backup, self._config)
        if stale is not None:
            logger.warning(stale.message)
            self._findings.append(stale)

    def _checkpoint(self, name: str, entities: Sequence[str], **details: Any) -> RollbackCheckpoint:
        checkpoint = RollbackCheckpoint(
            name=name,
            strategy=self.kind,
            entities=tuple(entities),
            details={
                "records_processed": self._records_processed,
                "records_rolled_back": self._records_rolled_back,
                **details,
            },
        )
        self._checkpoints.append(checkpoint)
        logger.debug("Rollback checkpoint %s (%s)", name, ", ".join(entities))
        return checkpoint

    async def _count(self, table: str) -> int:
        if not await self._target.table_exists(table):
            return 0
        return await self._target.count(table)

    async def _copy_from_backup(self, table: str, backup: BackupReader) -> int:
        """Copy every backup row of a table into the target, page by page."""
        copied = 0
        since_checkpoint = 0
        offset = 0
        while True:
            rows = await backup.fetch_page(table, ["id"], self._config.batch_size, offset)
            if not rows:
                break
            await self._target.insert_batch(table, rows)
            copied += len(rows)
            since_checkpoint += len(rows)
            offset += len(rows)
            if since_checkpoint >= self._config.checkpoint_interval:
                self._checkpoint("copy_progress", [table], rows_copied=copied)
                since_checkpoint = 0
        return copied

    async def _restore_tables(self, tables: list[str], backup: BackupReader, *, reset: bool) -> None:
        """
        Replace target tables with their backup rows.

        Rows are removed children first and copied back parents first.
        """
        missing = [table for table in tables if not await backup.table_exists(table)]
        if missing:
            raise BackupIntegrityError(missing)

        before = {table: await self._count(table) for table in tables}
        expected = {table: await backup.count(table) for table in tables}
        self._records_processed += sum(before.values())

        if self.dry_run:
            for table in tables:
                self._tables.append(
                    TableRollbackResult(
                        table=table,
                        before_count=before[table],
                        after_count=before[table],
                        rows_deleted=before[table],
                        rows_restored=expected[table],
                    )
                )
            return

        deleted: dict[str, int] = {}
        for table in reversed(tables):
            with self._tracer.span("migrationsuite.rollback.clear_table", {ATTR_TABLE: table}):
                if reset:
                    await self._target.reset_table(table)
                    deleted[table] = before[table]
                else:
                    deleted[table] = await self._target.delete_all(table)

        for table in tables:
            with self._tracer.span("migrationsuite.rollback.restore_table", {ATTR_TABLE: table}):
                restored = await self._copy_from_backup(table, backup)
            after = await self._count(table)
            self._records_rolled_back += restored
            self._tables.append(
                TableRollbackResult(
                    table=table,
                    before_count=before[table],
                    after_count=after,
                    rows_deleted=deleted[table],
                    rows_restored=restored,
                )
            )
            self._checkpoint("table_rollback", [table], rows_restored=restored)
            logger.info("Restored %s: %d rows (was %d)", table, restored, before[table])

            if after != expected[table]:
                raise RollbackVerificationError(
                    f"Record count mismatch for {table}: backup={expected[table]}, restored={after}",
                    table=table,
                    expected=expected[table],
                    actual=after,
                )

    async def _delete_window(self, specs: list[EntitySpec], start: datetime, end: datetime | None) -> None:
        """Delete rows created inside ``[start, end]``, children first."""
        for spec in reverse_dependency_order(specs):
            table = spec.target_table
            if not await self._target.table_exists(table):
                logger.warning("Target table %s does not exist, skipping", table)
                continue

            with self._tracer.span("migrationsuite.rollback.delete_window", {ATTR_TABLE: table}):
                before = await self._target.count(table)
                if self.dry_run:
                    deleted = await self._target.count_between(table, CREATED_AT_COLUMN, start, end)
                    after = before
                else:
                    deleted = await self._target.delete_between(table, CREATED_AT_COLUMN, start, end)
                    after = await self._target.count(table)

            self._records_processed += before
            self._records_rolled_back += deleted
            self._tables.append(
                TableRollbackResult(
                    table=table,
                    before_count=before,
                    after_count=after,
                    rows_deleted=deleted,
                )
            )
            self._checkpoint("table_rollback", [table], rows_deleted=deleted)
            logger.info(
                "%s %d rows from %s created since %s",
                "Would delete" if self.dry_run else "Deleted",
                deleted,
                table,
                start.isoformat(),
            )

    # -- reporting --------------------------------------------------------------

    def _report(
        self,
        session: MigrationSession,
        start: float,
        status: RollbackStatus,
        error: str | None,
    ) -> RollbackReport:
        stats = RollbackStats(
            tables_processed=len(self._tables),
            records_processed=self._records_processed,
            records_rolled_back=self._records_rolled_back,
            errors_encountered=self._errors,
            time_taken_seconds=time.perf_counter() - start,
        )
        findings = tuple(sorted(self._findings, key=lambda f: f.sort_key()))
        return RollbackReport(
            session_id=session.id,
            trigger=self._trigger,
            strategy=self.kind,
            status=status,
            started_at=self._started_at or utc_now(),
            ended_at=utc_now(),
            tables=tuple(self._tables),
            stats=stats,
            checkpoints=tuple(self._checkpoints),
            findings=findings,
            error=error,
            recommendations=rollback_recommendations(stats, findings),
            next_steps=next_steps(self._trigger),
            dry_run=self.dry_run,
            window=self._window,
        )


class SnapshotRollback(RollbackStrategy):
    """
    Full restore from the backup.

    Verifies the backup, terminates other target connections, drops and
    recreates every affected table, copies all rows back and checks
    per-table count parity.
    """

    kind = RollbackStrategyKind.SNAPSHOT

    async def _run(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        backup: BackupReader | None,
    ) -> None:
        assert backup is not None
        tables = [spec.target_table for spec in specs]

        if not self.dry_run:
            try:
                terminated = await self._target.terminate_connections()
                logger.info("Terminated %d target connections", terminated)
            except StoreError as e:
                logger.warning("Could not terminate target connections: %s", e)
                self._findings.append(
                    ValidationFinding(
                        kind=FindingKind.CONNECTION_TERMINATION,
                        code="CONNECTION_TERMINATION_FAILED",
                        severity=Severity.WARNING,
                        gate=ValidationGate.ROLLBACK,
                        entity=None,
                        count=1,
                        message=str(e),
                    )
                )

        await self._restore_tables(tables, backup, reset=True)


class SelectiveRollback(RollbackStrategy):
    """
    Restore only problematic tables from the backup.

    Tables are either given explicitly or detected with the same checks
    the post-migration gate runs (orphaned rows, missing required fields).
    """

    kind = RollbackStrategyKind.SELECTIVE

    def __init__(
        self,
        target: TargetWriter,
        trigger: RollbackTrigger,
        config: RollbackConfig | None = None,
        *,
        tables: Sequence[str] | None = None,
        validator: ValidationEngine | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(
            target,
            trigger,
            config,
            validator=validator,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self._explicit_tables = tuple(tables) if tables else ()

    async def _run(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        backup: BackupReader | None,
    ) -> None:
        assert backup is not None
        if self._explicit_tables:
            wanted = set(self._explicit_tables)
            order = [spec.target_table for spec in topological_order(ENTITY_SPECS.values())]
            tables = [table for table in order if table in wanted]
        else:
            tables = await self._validator.find_problematic_tables(
                spec.target_table for spec in specs
            )

        if not tables:
            logger.info("No problematic tables found, nothing to restore")
            return
        await self._restore_tables(tables, backup, reset=False)


class IncrementalRollback(RollbackStrategy):
    """Delete rows created at or after the session start, children first."""

    kind = RollbackStrategyKind.INCREMENTAL

    async def _run(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        backup: BackupReader | None,
    ) -> None:
        if session.started_at is None:
            raise InvalidRollbackStrategyError(
                "Incremental rollback requires a started session",
                session_id=session.id,
            )
        self._window = TimeWindow(start=session.started_at)
        await self._delete_window(specs, session.started_at, None)


class PartialRollback(RollbackStrategy):
    """Delete rows created inside an explicit time window, children first."""

    kind = RollbackStrategyKind.PARTIAL

    def __init__(
        self,
        target: TargetWriter,
        trigger: RollbackTrigger,
        config: RollbackConfig | None = None,
        *,
        window: TimeWindow,
        validator: ValidationEngine | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(
            target,
            trigger,
            config,
            validator=validator,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self._window = window

    async def _run(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        backup: BackupReader | None,
    ) -> None:
        assert self._window is not None
        await self._delete_window(specs, self._window.start, self._window.end)


async def backup_staleness_finding(
    backup: BackupReader,
    config: RollbackConfig,
) -> ValidationFinding | None:
    """Return a BACKUP_STALE warning when the backup is older than allowed."""
    taken_at = await backup.snapshot_time()
    if taken_at is None:
        logger.info("Backup snapshot time unknown, skipping currency check")
        return None
    age = utc_now() - taken_at
    if age <= timedelta(hours=config.max_backup_age_hours):
        logger.info("Backup currency verified (%.1f hours old)", age.total_seconds() / 3600)
        return None
    hours = age.total_seconds() / 3600
    return ValidationFinding(
        kind=FindingKind.BACKUP_STALE,
        code="BACKUP_STALE",
        severity=Severity.WARNING,
        gate=ValidationGate.ROLLBACK,
        entity=None,
        count=1,
        message=f"Backup is {hours:.0f} hours old (limit {config.max_backup_age_hours:.0f})",
    )


def rollback_recommendations(
    stats: RollbackStats,
    findings: Sequence[ValidationFinding],
) -> tuple[str, ...]:
    """Operator recommendations for a finished rollback."""
    recommendations: list[str] = []
    if stats.errors_encountered > 0:
        recommendations.append(
            "Investigate and resolve rollback errors before the next migration attempt"
        )
    if stats.records_rolled_back > LARGE_ROLLBACK_THRESHOLD:
        recommendations.append("Consider an incremental migration approach for large datasets")
    if any(f.kind == FindingKind.ORPHANED_REFERENCE for f in findings):
        recommendations.append("Resolve orphaned references left after the rollback")
    if any(f.kind == FindingKind.BACKUP_STALE for f in findings):
        recommendations.append("Refresh the backup before the next migration attempt")
    recommendations.append("Verify application functionality after the rollback")
    recommendations.append("Review migration procedures to prevent future rollbacks")
    return tuple(recommendations)


def next_steps(trigger: RollbackTrigger) -> tuple[str, ...]:
    """Trigger-specific next steps for the operator."""
    return _NEXT_STEPS.get(trigger, _DEFAULT_NEXT_STEPS)


class RollbackEngine:
    """
    Selects and runs rollback strategies.

    Selection: the explicit strategy, else PARTIAL when a time window is
    given, else the trigger's default strategy. Selections that cannot run
    are rejected before any I/O.

    Example:
        >>> engine = RollbackEngine(target, backup=backup, sink=sink)
        >>> report = await engine.rollback(
        ...     session,
        ...     RollbackTrigger.MANUAL,
        ...     window=TimeWindow(start=t0, end=t1),
        ... )
    """

    def __init__(
        self,
        target: TargetWriter,
        backup: BackupReader | None = None,
        config: RollbackConfig | None = None,
        *,
        validator: ValidationEngine | None = None,
        publisher: EventPublisher | None = None,
        metrics: MigrationMetrics | None = None,
        sink: ReportSink | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the rollback engine.

        Args:
            target: Store being rolled back.
            backup: Point-in-time backup of the target.
            config: Rollback configuration.
            validator: Runs integrity checks and problem-table detection.
            publisher: Receives RollbackStarted/RollbackCompleted events.
            metrics: Metric instruments.
            sink: Destination of rollback reports.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._target = target
        self._backup = backup
        self._config = config or RollbackConfig()
        self._validator = validator or ValidationEngine(target, target, tracer=self._tracer)
        self._publisher = publisher
        self._metrics = metrics
        self._sink = sink

    @property
    def config(self) -> RollbackConfig:
        return self._config

    @property
    def has_backup(self) -> bool:
        return self._backup is not None

    def select_strategy(
        self,
        trigger: RollbackTrigger,
        strategy: RollbackStrategyKind | None = None,
        window: TimeWindow | None = None,
    ) -> RollbackStrategyKind:
        """
        Pick the strategy for a rollback request.

        Raises:
            InvalidRollbackStrategyError: If the strategy cannot run with
                the given window and backup.
        """
        if strategy is None:
            strategy = (
                RollbackStrategyKind.PARTIAL
                if window is not None
                else RollbackStrategyKind.for_trigger(trigger)
            )
        if strategy == RollbackStrategyKind.PARTIAL and window is None:
            raise InvalidRollbackStrategyError("Partial rollback requires a time window")
        if strategy.requires_backup and self._backup is None:
            raise InvalidRollbackStrategyError(
                f"{strategy.value} rollback requires a backup store"
            )
        return strategy

    def create_strategy(
        self,
        kind: RollbackStrategyKind,
        trigger: RollbackTrigger,
        *,
        tables: Sequence[str] | None = None,
        window: TimeWindow | None = None,
        dry_run: bool | None = None,
    ) -> RollbackStrategy:
        """Instantiate a strategy for one rollback."""
        config = self._config
        if dry_run is not None and dry_run != config.dry_run:
            config = RollbackConfig.from_dict({**config.to_dict(), "dry_run": dry_run})

        common: dict[str, Any] = {"validator": self._validator, "tracer": self._tracer}
        if kind == RollbackStrategyKind.SNAPSHOT:
            return SnapshotRollback(self._target, trigger, config, **common)
        if kind == RollbackStrategyKind.SELECTIVE:
            return SelectiveRollback(self._target, trigger, config, tables=tables, **common)
        if kind == RollbackStrategyKind.INCREMENTAL:
            return IncrementalRollback(self._target, trigger, config, **common)
        if window is None:
            raise InvalidRollbackStrategyError("Partial rollback requires a time window")
        return PartialRollback(self._target, trigger, config, window=window, **common)

    async def rollback(
        self,
        session: MigrationSession,
        trigger: RollbackTrigger,
        *,
        strategy: RollbackStrategyKind | None = None,
        tables: Sequence[str] | None = None,
        window: TimeWindow | None = None,
        dry_run: bool | None = None,
    ) -> RollbackReport:
        """
        Roll back a session's writes.

        Args:
            session: Session whose writes are undone.
            trigger: Why the rollback is happening.
            strategy: Explicit strategy, overriding selection.
            tables: Tables for a selective rollback (auto-detected when omitted).
            window: Time window; selects PARTIAL when no strategy is given.
            dry_run: Override the configured dry-run flag.

        Returns:
            The RollbackReport, also written to the sink when one is set.

        Raises:
            InvalidRollbackStrategyError: Before any I/O, for selections
                that cannot run.
            RollbackError: If the rollback fails.
        """
        kind = self.select_strategy(trigger, strategy, window)
        unknown = sorted(set(tables or ()) - TARGET_TABLES)
        if unknown:
            raise InvalidRollbackStrategyError(
                f"Unknown tables for selective rollback: {', '.join(unknown)}",
                session_id=session.id,
            )
        if kind == RollbackStrategyKind.INCREMENTAL and session.started_at is None:
            raise InvalidRollbackStrategyError(
                "Incremental rollback requires a started session",
                session_id=session.id,
            )

        runner = self.create_strategy(kind, trigger, tables=tables, window=window, dry_run=dry_run)
        logger.warning(
            "Starting %s rollback of session %s (trigger=%s, dry_run=%s)",
            kind.value,
            session.id,
            trigger.value,
            runner.dry_run,
        )

        with self._tracer.span(
            "migrationsuite.rollback.execute",
            {
                ATTR_SESSION_ID: str(session.id),
                ATTR_ROLLBACK_TRIGGER: trigger.value,
                ATTR_ROLLBACK_STRATEGY: kind.value,
                ATTR_DRY_RUN: runner.dry_run,
            },
        ) as span:
            if self._publisher is not None:
                await self._publisher.publish(
                    RollbackStarted(
                        session_id=session.id,
                        trigger=trigger,
                        strategy=kind,
                        dry_run=runner.dry_run,
                    )
                )

            try:
                report = await runner.execute(session, self._backup)
            except RollbackError as e:
                logger.error("Rollback of session %s failed: %s", session.id, e)
                if e.report is not None:
                    await self._finish(e.report, span)
                raise

            logger.info(
                "Rollback of session %s completed: %d records rolled back across %d tables",
                session.id,
                report.stats.records_rolled_back,
                report.stats.tables_processed,
            )
            await self._finish(report, span)
            return report

    async def _finish(self, report: RollbackReport, span: Any) -> None:
        if span is not None:
            span.set_attribute(ATTR_ROLLBACK_STATUS, report.status.value)
        if self._metrics:
            self._metrics.record_rollback(
                report.strategy.value,
                report.status.value,
                report.duration_seconds,
            )
        if self._publisher is not None:
            await self._publisher.publish(
                RollbackCompleted(
                    session_id=report.session_id,
                    trigger=report.trigger,
                    strategy=report.strategy,
                    status=report.status,
                    records_rolled_back=report.stats.records_rolled_back,
                    duration_seconds=report.duration_seconds,
                    error=report.error,
                )
            )
        if self._sink is not None:
            try:
                location = await self._sink.write_rollback_report(report)
            except OSError:
                logger.exception(
                    "Could not write the rollback report of session %s", report.session_id
                )
            else:
                logger.info("Rollback report written to %s", location)

    async def check_readiness(self, session: MigrationSession) -> list[ValidationFinding]:
        """
        Check whether a rollback of the session could run.

        Returns:
            Sorted findings; critical ones mean no strategy needing the
            affected store can run.
        """
        findings: list[ValidationFinding] = []
        tables = [spec.target_table for spec in affected_specs(session)]

        try:
            await self._target.ping()
        except StoreError as e:
            findings.append(_readiness_finding(FindingKind.UNREACHABLE_STORE, "TARGET_UNREACHABLE", str(e)))

        if self._backup is None:
            findings.append(
                _readiness_finding(
                    FindingKind.BACKUP_INTEGRITY,
                    "BACKUP_UNAVAILABLE",
                    "No backup store configured; only incremental and partial rollbacks can run",
                    Severity.WARNING,
                )
            )
        else:
            try:
                await self._backup.ping()
                missing = [table for table in tables if not await self._backup.table_exists(table)]
                if missing:
                    findings.append(
                        _readiness_finding(
                            FindingKind.BACKUP_INTEGRITY,
                            "BACKUP_TABLE_MISSING",
                            f"Backup lacks tables: {', '.join(missing)}",
                            count=len(missing),
                            sample_keys=tuple(missing),
                        )
                    )
                stale = await backup_staleness_finding(self._backup, self._config)
                if stale is not None:
                    findings.append(stale)
            except StoreError as e:
                findings.append(
                    _readiness_finding(FindingKind.UNREACHABLE_STORE, "BACKUP_UNREACHABLE", str(e))
                )

        if session.started_at is None:
            findings.append(
                _readiness_finding(
                    FindingKind.INVALID_DATA,
                    "SESSION_NOT_STARTED",
                    "Session has no start time; incremental rollback cannot run",
                    Severity.WARNING,
                )
            )
        return sorted(findings, key=lambda f: f.sort_key())


def _readiness_finding(
    kind: FindingKind,
    code: str,
    message: str,
    severity: Severity = Severity.CRITICAL,
    *,
    count: int = 1,
    sample_keys: tuple[Any, ...] = (),
) -> ValidationFinding:
    return ValidationFinding(
        kind=kind,
        code=code,
        severity=severity,
        gate=ValidationGate.ROLLBACK,
        entity=None,
        count=count,
        message=message,
        sample_keys=sample_keys,
    )


__all__ = [
    "CREATED_AT_COLUMN",
    "RollbackConfig",
    "RollbackStrategy",
    "SnapshotRollback",
    "SelectiveRollback",
    "IncrementalRollback",
    "PartialRollback",
    "RollbackEngine",
    "affected_specs",
    "backup_staleness_finding",
    "rollback_recommendations",
    "next_steps",
]
