"""
MigrationOrchestrator: drives a migration session end to end.

Phases:
    PENDING -> PRE_VALIDATION -> MIGRATING -> POST_VALIDATION -> COMPLETED

Failure paths:
    - A critical pre-migration finding halts the run before any write;
      the FAILED report is returned.
    - A critical failure after writes began (entity abort, pipeline
      timeout, unexpected error, critical post-migration finding) rolls
      back when ``rollback_enabled`` and raises MigrationAbortedError
      carrying the final report.
    - cancel() stops at the next batch boundary; the session becomes
      CANCELLED and can be executed again to resume.

Every run produces a MigrationReport, written to the report sink when
one is configured.

Example:
    >>> orchestrator = MigrationOrchestrator(source, target, backup=backup, sink=sink)
    >>> session = orchestrator.create_session()
    >>> report = await orchestrator.execute(session)
    >>> report.status
    <OverallStatus.SUCCESS: 'SUCCESS'>
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from typing import Any

from migrationsuite.batch_processor import BatchProcessor, RunControl
from migrationsuite.cursor import BatchCursor
from migrationsuite.entities import ENTITY_SPECS, Entity, EntitySpec, topological_order
from migrationsuite.events import InMemoryEventChannel, PhaseChanged
from migrationsuite.exceptions import (
    EntityMigrationError,
    ErrorHandler,
    MigrationAbortedError,
    MigrationCancelledError,
    MigrationError,
    MigrationStateError,
    OrchestrationError,
    PipelineTimeoutError,
    RollbackError,
    StoreError,
)
from migrationsuite.interfaces import BackupReader, EventPublisher, ReportSink, SourceReader, TargetWriter
from migrationsuite.metrics import MigrationMetrics
from migrationsuite.models import (
    EntityStatus,
    MigrationConfig,
    MigrationPhase,
    MigrationReport,
    MigrationSession,
    RollbackReport,
    RollbackStrategyKind,
    RollbackTrigger,
    SessionStatus,
    utc_now,
)
from migrationsuite.monitor import MonitorConfig, ProgressMonitor
from migrationsuite.observability import (
    ATTR_DRY_RUN,
    ATTR_PHASE,
    ATTR_SESSION_ID,
    Tracer,
    create_tracer,
)
from migrationsuite.planning import estimate_migration_timing
from migrationsuite.rollback import RollbackConfig, RollbackEngine
from migrationsuite.validation import ValidationEngine

logger = logging.getLogger(__name__)

_RESTARTABLE_PHASES = (MigrationPhase.PENDING, MigrationPhase.CANCELLED)


class MigrationOrchestrator:
    """
    Sequences entities in dependency order through the validation gates,
    the batch processor and, on failure, the rollback engine.

    One orchestrator runs one session at a time; mutual exclusion between
    processes is up to the caller.

    Attributes:
        control: Cancellation/pause/deadline shared with the batch processor.
    """

    def __init__(
        self,
        source: SourceReader,
        target: TargetWriter,
        config: MigrationConfig | None = None,
        *,
        backup: BackupReader | None = None,
        specs: Iterable[EntitySpec] | None = None,
        publisher: EventPublisher | None = None,
        sink: ReportSink | None = None,
        metrics: MigrationMetrics | None = None,
        error_handler: ErrorHandler | None = None,
        rollback_config: RollbackConfig | None = None,
        monitor_config: MonitorConfig | None = None,
        enable_monitor: bool = False,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            source: Legacy store.
            target: New store.
            config: Default configuration for sessions it creates.
            backup: Backup of the target used by snapshot/selective rollback.
            specs: Entity registry (defaults to every known entity).
            publisher: Receives every pipeline event.
            sink: Destination of migration and rollback reports.
            metrics: Metric instruments.
            error_handler: Retry handler passed to the batch processor.
            rollback_config: Rollback engine configuration.
            monitor_config: Progress monitor configuration.
            enable_monitor: Run a ProgressMonitor for the duration of execute().
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._config = config or MigrationConfig()
        self._backup = backup
        self._specs: dict[str, EntitySpec] = {
            spec.name: spec for spec in (specs if specs is not None else ENTITY_SPECS.values())
        }
        self._publisher = publisher
        self._sink = sink
        self._metrics = metrics
        self._error_handler = error_handler or ErrorHandler()
        self._rollback_config = rollback_config or RollbackConfig()
        self._monitor_config = monitor_config
        self._enable_monitor = enable_monitor

        self.control = RunControl()
        self._session: MigrationSession | None = None
        self._monitor: ProgressMonitor | None = None
        self._phase_started: float | None = None

    @property
    def session(self) -> MigrationSession | None:
        """Session being (or last) executed."""
        return self._session

    @property
    def monitor(self) -> ProgressMonitor | None:
        """Monitor of the current or last run, when monitoring is enabled."""
        return self._monitor

    # -- planning ---------------------------------------------------------------

    def plan(self, entities: Iterable[Entity | str] | None = None) -> list[EntitySpec]:
        """
        Order entities for migration.

        Args:
            entities: Entities to migrate (all registered when omitted).

        Returns:
            Specs in dependency order.

        Raises:
            OrchestrationError: If an entity name is not registered.
            DependencyCycleError: If dependencies form a cycle.
            UnknownDependencyError: If an entity depends on one not selected.
        """
        if entities is None:
            selected = list(self._specs.values())
        else:
            selected = []
            for entity in entities:
                name = entity.value if isinstance(entity, Entity) else entity
                if name not in self._specs:
                    raise OrchestrationError(f"Unknown entity: {name}")
                selected.append(self._specs[name])
        return topological_order(selected)

    def create_session(
        self,
        entities: Iterable[Entity | str] | None = None,
        config: MigrationConfig | None = None,
    ) -> MigrationSession:
        """
        Create a session with entity states in dependency order.

        Raises:
            OrchestrationError: If the entity graph is invalid.
        """
        session = MigrationSession(config=config or self._config)
        for spec in self.plan(entities):
            session.add_entity(spec.name, spec.dependency_names)
        return session

    # -- execution --------------------------------------------------------------

    async def execute(self, session: MigrationSession) -> MigrationReport:
        """
        Run a session to completion.

        Re-executing a cancelled session resumes each entity from its
        cursor offset and skips completed entities. Failed entities are
        reset and migrated again from the start.

        Args:
            session: Session to run (PENDING or CANCELLED).

        Returns:
            The final MigrationReport (FAILED when pre-migration validation
            halted the run, CANCELLED phase when the operator cancelled).

        Raises:
            OrchestrationError: On a dependency cycle, before any I/O.
            MigrationStateError: If the session cannot be (re)started.
            MigrationAbortedError: On a critical failure after writes began;
                ``report`` holds the final report.
        """
        specs = self.plan(session.entity_names or None)
        if session.phase not in _RESTARTABLE_PHASES:
            raise MigrationStateError(
                f"Session {session.id} is {session.phase.value} and cannot be executed",
                current_state=session.phase.value,
                attempted=MigrationPhase.PRE_VALIDATION.value,
            )
        self._prepare_session(session, specs)

        self._session = session
        self.control.reset()
        self.control.set_deadline(session.config.pipeline_timeout_seconds)

        with self._tracer.span(
            "migrationsuite.orchestrator.execute",
            {ATTR_SESSION_ID: str(session.id), ATTR_DRY_RUN: session.config.dry_run},
        ) as span:
            await self._start_monitor(session)
            try:
                report = await self._run(session, specs)
            finally:
                await self._stop_monitor()
                if span is not None:
                    span.set_attribute(ATTR_PHASE, session.phase.value)
            return report

    def _prepare_session(self, session: MigrationSession, specs: Sequence[EntitySpec]) -> None:
        if not session.entities:
            for spec in specs:
                session.add_entity(spec.name, spec.dependency_names)
        for state in session.entities:
            if state.status == EntityStatus.FAILED:
                logger.info("Resetting failed entity %s for a new attempt", state.entity)
                state.reset()
        session.findings.clear()
        session.ended_at = None
        if session.started_at is None:
            session.started_at = utc_now()

    async def _run(self, session: MigrationSession, specs: list[EntitySpec]) -> MigrationReport:
        config = session.config
        validator = ValidationEngine(
            self._source,
            self._target,
            config,
            publisher=self._publisher,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        logger.info(
            "Starting migration session %s: %s%s",
            session.id,
            ", ".join(spec.name for spec in specs),
            " (dry run)" if config.dry_run else "",
        )

        # pre-migration gate
        await self._set_phase(session, MigrationPhase.PRE_VALIDATION)
        try:
            findings = await validator.validate_pre_migration(specs, session_id=session.id)
        except Exception as e:
            session.record_error(MigrationPhase.PRE_VALIDATION.value, e)
            return await self._abort(session, specs, e, writes_started=False)
        session.add_findings(findings)
        if session.has_critical_findings:
            codes = sorted({f.code for f in findings if f.is_critical})
            logger.error(
                "Pre-migration validation failed (%s); halting before any write",
                ", ".join(codes),
            )
            await self._set_phase(session, MigrationPhase.FAILED)
            return await self._finish(session)

        await self._estimate(session, specs)

        # migration
        await self._set_phase(session, MigrationPhase.MIGRATING)
        processor = BatchProcessor(
            self._source,
            self._target,
            config,
            session_id=session.id,
            publisher=self._publisher,
            metrics=self._metrics,
            error_handler=self._error_handler,
            control=self.control,
            tracer=self._tracer,
        )
        writes_started = not config.dry_run
        failure: BaseException | None = None
        trigger = RollbackTrigger.SYSTEM_ERROR

        for spec in specs:
            state = session.state_for(spec.name)
            if state.status == EntityStatus.COMPLETED:
                logger.info("Skipping completed entity %s", spec.name)
                continue
            try:
                await processor.migrate_entity(state, spec, session=session)
            except MigrationStateError as blocked:
                logger.warning("Skipped %s: %s", spec.name, blocked)
                session.record_error(MigrationPhase.MIGRATING.value, blocked, entity=spec.name)
                failure = failure or blocked
                continue
            except MigrationCancelledError as e:
                session.record_error(MigrationPhase.MIGRATING.value, e, entity=spec.name)
                logger.warning("Migration session %s cancelled during %s", session.id, spec.name)
                await self._set_phase(session, MigrationPhase.CANCELLED)
                return await self._finish(session)
            except PipelineTimeoutError as e:
                session.record_error(MigrationPhase.MIGRATING.value, e, entity=spec.name)
                return await self._abort(
                    session, specs, e, writes_started=writes_started, trigger=RollbackTrigger.TIMEOUT
                )
            except EntityMigrationError as e:
                session.record_error(MigrationPhase.MIGRATING.value, e, entity=spec.name)
                failure = failure or e
                if config.stop_on_entity_failure:
                    break
                logger.warning("Continuing with remaining entities after %s failed", spec.name)
            except Exception as e:
                session.record_error(MigrationPhase.MIGRATING.value, e, entity=spec.name)
                return await self._abort(session, specs, e, writes_started=writes_started)

        if failure is not None:
            return await self._abort(session, specs, failure, writes_started=writes_started, trigger=trigger)

        # post-migration gate
        await self._set_phase(session, MigrationPhase.POST_VALIDATION)
        try:
            findings = await validator.validate_post_migration(session, specs)
        except Exception as e:
            session.record_error(MigrationPhase.POST_VALIDATION.value, e)
            return await self._abort(session, specs, e, writes_started=writes_started)
        session.add_findings(findings)
        critical = [f for f in findings if f.is_critical]
        if critical:
            error = MigrationError(
                "Post-migration validation failed: "
                + ", ".join(sorted({f.code for f in critical})),
                session_id=session.id,
            )
            session.record_error(MigrationPhase.POST_VALIDATION.value, error)
            return await self._abort(
                session,
                specs,
                error,
                writes_started=writes_started,
                trigger=RollbackTrigger.VALIDATION_FAILURE,
            )

        await self._set_phase(session, MigrationPhase.COMPLETED)
        report = await self._finish(session)
        logger.info(
            "Migration session %s completed: %s (%d migrated, %d failed)",
            session.id,
            report.status.value,
            report.stats.migrated,
            report.stats.failed,
        )
        return report

    async def _estimate(self, session: MigrationSession, specs: list[EntitySpec]) -> None:
        """Count source records and attach a timing estimate to the session."""
        counts: dict[str, int] = {}
        try:
            for spec in specs:
                counts[spec.name] = await BatchCursor(self._source, spec, tracer=self._tracer).prepare()
        except StoreError as e:
            logger.warning("Could not count source records for the estimate: %s", e)
            session.record_error("planning", e)
            return
        estimate = estimate_migration_timing(counts, session.config.batch_size)
        session.estimate = estimate.to_dict()
        logger.info(
            "Estimated %d records in %d batches, about %d minutes",
            estimate.total_records,
            estimate.total_batches,
            round(estimate.total_seconds / 60),
        )

    # -- failure handling -------------------------------------------------------

    async def _abort(
        self,
        session: MigrationSession,
        specs: list[EntitySpec],
        error: BaseException,
        *,
        writes_started: bool,
        trigger: RollbackTrigger = RollbackTrigger.SYSTEM_ERROR,
    ) -> MigrationReport:
        """Roll back when writes began, fail the session and raise MigrationAbortedError."""
        logger.error("Migration session %s failed: %s", session.id, error)
        rollback: RollbackReport | None = None

        if writes_started and session.config.rollback_enabled:
            await self._set_phase(session, MigrationPhase.ROLLING_BACK)
            rollback = await self._rollback(session, trigger)

        await self._set_phase(session, MigrationPhase.FAILED)
        report = await self._finish(session, rollback)
        raise MigrationAbortedError(
            f"Migration session {session.id} aborted: {error}",
            report=report,
        ) from error

    async def _rollback(
        self,
        session: MigrationSession,
        trigger: RollbackTrigger,
    ) -> RollbackReport | None:
        engine = RollbackEngine(
            self._target,
            self._backup_for(session),
            self._rollback_config,
            validator=ValidationEngine(
                self._source, self._target, session.config, tracer=self._tracer
            ),
            publisher=self._publisher,
            metrics=self._metrics,
            sink=self._sink,
            tracer=self._tracer,
        )
        strategy = self.rollback_strategy(session, trigger)
        try:
            return await engine.rollback(session, trigger, strategy=strategy)
        except RollbackError as e:
            logger.critical("Rollback of session %s failed: %s", session.id, e)
            session.record_error(MigrationPhase.ROLLING_BACK.value, e)
            return e.report
        except Exception as e:
            logger.exception("Rollback of session %s raised an unexpected error", session.id)
            session.record_error(MigrationPhase.ROLLING_BACK.value, e)
            return None

    def _backup_for(self, session: MigrationSession) -> BackupReader | None:
        return self._backup if session.config.backup_enabled else None

    def rollback_strategy(
        self,
        session: MigrationSession,
        trigger: RollbackTrigger,
    ) -> RollbackStrategyKind:
        """
        Strategy used when a failed run is rolled back automatically.

        The configured strategy wins; otherwise the trigger's default, with
        incremental rollback standing in when that default needs a backup
        and none is configured.
        """
        if session.config.rollback_strategy is not None:
            return session.config.rollback_strategy
        strategy = RollbackStrategyKind.for_trigger(trigger)
        if strategy.requires_backup and self._backup_for(session) is None:
            logger.warning(
                "No backup configured for %s rollback, using incremental rollback",
                strategy.value,
            )
            return RollbackStrategyKind.INCREMENTAL
        return strategy

    # -- phases and reporting ---------------------------------------------------

    async def _set_phase(self, session: MigrationSession, phase: MigrationPhase) -> None:
        previous = session.set_phase(phase)
        now = time.perf_counter()
        if self._metrics and self._phase_started is not None:
            self._metrics.record_phase_duration(previous.value, now - self._phase_started)
        self._phase_started = now
        logger.info("Session %s: %s -> %s", session.id, previous.value, phase.value)
        if self._publisher is not None:
            await self._publisher.publish(
                PhaseChanged(session_id=session.id, previous_phase=previous, phase=phase)
            )

    async def _finish(
        self,
        session: MigrationSession,
        rollback: RollbackReport | None = None,
    ) -> MigrationReport:
        session.ended_at = utc_now()
        self._phase_started = None
        report = MigrationReport.from_session(session, rollback)
        if self._sink is not None:
            try:
                location = await self._sink.write_migration_report(report)
            except OSError:
                logger.exception("Could not write the report of session %s", session.id)
            else:
                logger.info("Migration report written to %s", location)
        return report

    # -- monitor ----------------------------------------------------------------

    async def _start_monitor(self, session: MigrationSession) -> None:
        if not self._enable_monitor:
            return
        self._monitor = ProgressMonitor(
            session,
            self._target,
            self._monitor_config,
            publisher=self._publisher,
            tracer=self._tracer,
        )
        if isinstance(self._publisher, InMemoryEventChannel):
            self._publisher.subscribe_to_all_events(self._monitor.handle_event)
        await self._monitor.start()

    async def _stop_monitor(self) -> None:
        if self._monitor is None or not self._monitor.is_running:
            return
        await self._monitor.stop()
        if isinstance(self._publisher, InMemoryEventChannel):
            self._publisher.unsubscribe_from_all_events(self._monitor.handle_event)

    # -- operator controls ------------------------------------------------------

    def cancel(self) -> None:
        """Stop at the next batch boundary; the session stays resumable."""
        self.control.cancel()

    def pause(self) -> None:
        """Hold processing at the next batch boundary."""
        self.control.pause()

    def resume(self) -> None:
        """Resume a paused run."""
        self.control.resume()

    def get_status(self) -> SessionStatus | None:
        """Snapshot of the current session, or None before the first run."""
        session = self._session
        if session is None:
            return None
        stats = session.stats
        current = next(
            (s.entity for s in session.entities if s.status == EntityStatus.IN_PROGRESS),
            None,
        )
        if stats.total:
            progress = min(100.0, stats.processed / stats.total * 100)
        else:
            progress = 100.0 if session.phase == MigrationPhase.COMPLETED else 0.0
        return SessionStatus(
            session_id=session.id,
            phase=session.phase,
            current_entity=current,
            progress_percent=round(progress, 2),
            stats=stats,
            is_paused=self.control.is_paused,
            cancel_requested=self.control.is_cancelled,
            started_at=session.started_at,
        )

    def describe(self) -> dict[str, Any]:
        """Registered entities and their dependencies, in migration order."""
        return {
            spec.name: list(spec.dependency_names)
            for spec in topological_order(self._specs.values())
        }


__all__ = ["MigrationOrchestrator"]
