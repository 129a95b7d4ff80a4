"""
Batch processor: cursor -> transformer -> bulk insert for one entity.

The BatchProcessor drives the migration of a single entity. It reads the
entity's legacy rows page by page through a BatchCursor, resolves foreign
keys for the whole page, transforms rows one at a time and writes each
surviving page as one bulk insert.

Failure isolation:
    - A row that fails to transform is dropped from its batch and counted
      as failed; the batch continues.
    - A bulk insert that fails is retried with exponential backoff. When
      retries are exhausted the batch's rows are counted as failed and the
      entity continues, unless ``fail_fast`` is set.
    - When the entity's failure rate exceeds ``max_failure_rate`` the
      entity aborts; its unprocessed rows are counted as failed.

Operator control (cancel, pause, pipeline deadline) is observed only at
batch boundaries, so the target always holds whole batches.

Usage:
    >>> processor = BatchProcessor(source, target, config, publisher=channel)
    >>> state = await processor.migrate_entity(session.state_for("customers"), CUSTOMERS)
    >>> state.migrated, state.failed
    (2500, 0)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import replace
from collections.abc import AsyncIterator
from typing import Any
from uuid import UUID, uuid4

from migrationsuite.cursor import BatchCursor, SourcePage, SourceRow
from migrationsuite.entities import ENTITY_SPECS, EntitySpec, LookupSpec
from migrationsuite.events import BatchCompleted, EntityStatusChanged, ProgressTick
from migrationsuite.exceptions import (
    STORE_RETRY_CONFIG,
    BatchTimeoutError,
    BatchWriteError,
    EntityMigrationError,
    ErrorHandler,
    FailureThresholdExceededError,
    MigrationCancelledError,
    MigrationError,
    PipelineTimeoutError,
    RecordTransformError,
    RetryConfig,
    StoreError,
)
from migrationsuite.interfaces import EventPublisher, SourceReader, TargetWriter
from migrationsuite.metrics import MigrationMetrics
from migrationsuite.models import (
    BatchResult,
    EntityMigrationState,
    EntityStatus,
    MigrationConfig,
    MigrationSession,
    RecordFailure,
    utc_now,
)
from migrationsuite.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DRY_RUN,
    ATTR_ENTITY,
    ATTR_OFFSET,
    ATTR_RETRY_COUNT,
    ATTR_ROWS_FAILED,
    ATTR_ROWS_READ,
    ATTR_ROWS_WRITTEN,
    ATTR_SESSION_ID,
    Tracer,
    create_tracer,
)
from migrationsuite.transformers import Record, TransformContext

logger = logging.getLogger(__name__)


class RunControl:
    """
    Cancellation, pause and deadline shared by orchestrator and processor.

    The processor calls checkpoint() before every batch; nothing else in
    the pipeline blocks on it.

    Example:
        >>> control = RunControl()
        >>> control.pause()
        >>> control.resume()
        >>> control.cancel()
        >>> await control.checkpoint()  # raises MigrationCancelledError
    """

    def __init__(self) -> None:
        self._is_cancelled = False
        self._is_paused = False
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._deadline: float | None = None
        self._timeout_seconds: float | None = None

    def cancel(self) -> None:
        """Request a stop at the next batch boundary."""
        self._is_cancelled = True
        # a paused run has to wake up to observe the cancellation
        self._resume_event.set()
        logger.info("Migration cancellation requested")

    def pause(self) -> None:
        """Hold processing at the next batch boundary."""
        self._is_paused = True
        self._resume_event.clear()
        logger.info("Migration paused")

    def resume(self) -> None:
        """Resume a paused run."""
        self._is_paused = False
        self._resume_event.set()
        logger.info("Migration resumed")

    def reset(self) -> None:
        """Clear cancellation, pause and deadline before a new run."""
        self._is_cancelled = False
        self.resume()
        self._deadline = None
        self._timeout_seconds = None

    def set_deadline(self, timeout_seconds: float | None) -> None:
        """Start the pipeline clock; None disables the deadline."""
        self._timeout_seconds = timeout_seconds
        self._deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._is_cancelled

    @property
    def is_paused(self) -> bool:
        """Check if the run is paused."""
        return self._is_paused

    @property
    def remaining_seconds(self) -> float | None:
        """Seconds left before the pipeline deadline, if one is set."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    async def checkpoint(self, session_id: UUID | None = None) -> None:
        """
        Batch boundary: wait while paused, then enforce cancel and deadline.

        Raises:
            MigrationCancelledError: If cancellation was requested.
            PipelineTimeoutError: If the pipeline deadline passed.
        """
        if self._is_paused:
            try:
                await asyncio.wait_for(self._resume_event.wait(), self.remaining_seconds)
            except TimeoutError:
                raise self._timeout_error(session_id) from None

        if self._is_cancelled:
            raise MigrationCancelledError("Migration cancelled by operator", session_id=session_id)

        remaining = self.remaining_seconds
        if remaining is not None and remaining <= 0:
            raise self._timeout_error(session_id)

    def _timeout_error(self, session_id: UUID | None) -> PipelineTimeoutError:
        return PipelineTimeoutError(self._timeout_seconds or 0.0, session_id=session_id)


def _staging_columns() -> dict[str, set[tuple[str, str]]]:
    """(target column, value column) pairs looked up per target table."""
    columns: dict[str, set[tuple[str, str]]] = defaultdict(set)
    for spec in ENTITY_SPECS.values():
        for lookup in spec.lookups:
            for _, target_column in lookup.matches:
                columns[lookup.target_table].add((target_column, lookup.value_column))
    return columns


class BatchProcessor:
    """
    Migrates one entity at a time, batch by batch.

    One processor serves one session. In dry-run mode it remembers the
    keys of records it would have written, so dependent entities can still
    resolve their foreign keys against parents that were never inserted.

    Attributes:
        session_id: Session stamped on published events.
        control: Cancellation/pause/deadline observed at batch boundaries.
    """

    def __init__(
        self,
        source: SourceReader,
        target: TargetWriter,
        config: MigrationConfig | None = None,
        *,
        session_id: UUID | None = None,
        publisher: EventPublisher | None = None,
        metrics: MigrationMetrics | None = None,
        error_handler: ErrorHandler | None = None,
        control: RunControl | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the batch processor.

        Args:
            source: Legacy store to read from.
            target: New store to write to.
            config: Migration configuration (defaults apply when omitted).
            session_id: Session stamped on events (generated when omitted).
            publisher: Receives BatchCompleted, ProgressTick and
                EntityStatusChanged events.
            metrics: Metric instruments to record batches on.
            error_handler: Retry handler for reads and writes.
            control: Shared run control.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._config = config or MigrationConfig()
        self.session_id = session_id or uuid4()
        self._publisher = publisher
        self._metrics = metrics
        self._error_handler = error_handler or ErrorHandler()
        self.control = control or RunControl()
        self._retry_config = RetryConfig(
            max_attempts=self._config.max_retries + 1,
            base_delay_ms=self._config.retry_base_delay_ms,
            max_delay_ms=self._config.retry_max_delay_ms,
        )
        # reads keep the store policy, paced by the run's backoff
        self._read_retry_config = replace(
            STORE_RETRY_CONFIG,
            base_delay_ms=self._config.retry_base_delay_ms,
            max_delay_ms=self._config.retry_max_delay_ms,
        )
        self._staging_columns = _staging_columns()
        # table -> target column -> value -> resolved value
        self._staged: dict[str, dict[str, dict[Any, Any]]] = defaultdict(
            lambda: defaultdict(dict)
        )
        self._batch_number = 0

    @property
    def config(self) -> MigrationConfig:
        """Configuration of the processor."""
        return self._config

    async def migrate_entity(
        self,
        state: EntityMigrationState,
        spec: EntitySpec,
        *,
        session: MigrationSession | None = None,
    ) -> EntityMigrationState:
        """
        Migrate one entity to completion.

        Resumes from ``state.cursor_offset``. A completed entity is
        returned unchanged.

        Args:
            state: Entity state, PENDING or IN_PROGRESS.
            spec: How the entity migrates.
            session: Owning session. When given, the entity only starts
                once its dependencies have completed.

        Returns:
            The state, COMPLETED on success.

        Raises:
            MigrationStateError: If a dependency has not completed.
            EntityMigrationError: If the entity aborted (the state is FAILED).
            MigrationCancelledError: If cancelled (the state stays IN_PROGRESS).
            PipelineTimeoutError: If the pipeline deadline passed (state FAILED).
        """
        async for _ in self.iter_batches(state, spec, session=session):
            pass
        return state

    async def iter_batches(
        self,
        state: EntityMigrationState,
        spec: EntitySpec,
        *,
        session: MigrationSession | None = None,
    ) -> AsyncIterator[BatchResult]:
        """
        Migrate one entity, yielding each batch outcome as it is folded in.

        Args:
            state: Entity state, PENDING or IN_PROGRESS.
            spec: How the entity migrates.
            session: Owning session, checked for completed dependencies.

        Yields:
            BatchResult for every batch processed.
        """
        if state.status == EntityStatus.COMPLETED:
            logger.info("Entity %s already completed, skipping", spec.name)
            return

        with self._tracer.span(
            "migrationsuite.batch_processor.migrate_entity",
            {
                ATTR_SESSION_ID: str(self.session_id),
                ATTR_ENTITY: spec.name,
                ATTR_DRY_RUN: self._config.dry_run,
            },
        ):
            await self._begin(state, session)

            cursor = BatchCursor(self._source, spec, tracer=self._tracer)
            try:
                total = await self._read_with_retry(cursor.prepare, f"{spec.name}.prepare")
            except StoreError as e:
                await self._abort(state, f"Cannot count source rows: {e}")
                raise EntityMigrationError(
                    f"Entity {spec.name} aborted: {e}",
                    entity=spec.name,
                    session_id=self.session_id,
                    migrated=state.migrated,
                    failed=state.failed,
                ) from e
            state.set_total(total)

            logger.info(
                "Migrating %s: %d rows from offset %d%s",
                spec.name,
                total,
                state.cursor_offset,
                " (dry run)" if self._config.dry_run else "",
            )
            started = time.monotonic()
            processed_at_start = state.processed

            while state.cursor_offset < total:
                try:
                    await self.control.checkpoint(self.session_id)
                except PipelineTimeoutError as e:
                    await self._abort(state, str(e))
                    raise

                result = await self._process_batch(state, spec, cursor)
                previous_processed = state.processed
                state.record_batch(result)
                await self._after_batch(state, spec, result, previous_processed)

                elapsed = time.monotonic() - started
                if self._metrics and elapsed > 0:
                    self._metrics.record_throughput((state.processed - processed_at_start) / elapsed)

                yield result

                await self._enforce_failure_policy(state, spec, result)

            state.complete()
            await self._publish(
                EntityStatusChanged(
                    session_id=self.session_id,
                    entity=spec.name,
                    previous_status=EntityStatus.IN_PROGRESS,
                    status=EntityStatus.COMPLETED,
                    migrated=state.migrated,
                    failed=state.failed,
                    total=state.total,
                )
            )
            logger.info(
                "Entity %s completed: %d migrated, %d failed of %d",
                spec.name,
                state.migrated,
                state.failed,
                state.total,
            )

    async def _process_batch(
        self,
        state: EntityMigrationState,
        spec: EntitySpec,
        cursor: BatchCursor,
    ) -> BatchResult:
        """Read, transform and write one page."""
        self._batch_number += 1
        batch_number = self._batch_number
        offset = state.cursor_offset
        started = time.monotonic()

        with self._tracer.span(
            "migrationsuite.batch_processor.batch",
            {
                ATTR_SESSION_ID: str(self.session_id),
                ATTR_ENTITY: spec.name,
                ATTR_BATCH_NUMBER: batch_number,
                ATTR_OFFSET: offset,
                ATTR_BATCH_SIZE: self._config.batch_size,
            },
        ) as span:
            try:
                page = await self._read_with_retry(
                    lambda: cursor.fetch(offset, self._config.batch_size),
                    f"{spec.name}.fetch_page",
                )
                lookups = await self._resolve_lookups(spec, page)
            except StoreError as e:
                await self._abort(state, f"Source read failed at offset {offset}: {e}")
                raise EntityMigrationError(
                    f"Entity {spec.name} aborted reading batch {batch_number}: {e}",
                    entity=spec.name,
                    session_id=self.session_id,
                    migrated=state.migrated,
                    failed=state.failed,
                ) from e

            migrated_at = utc_now()
            records: list[Record] = []
            failures: list[RecordFailure] = [
                RecordFailure(
                    key=f"offset:{offset + len(page.rows) + i}",
                    reason="row no longer present in source",
                )
                for i in range(page.missing)
            ]
            for index, source_row in enumerate(page.rows):
                context = TransformContext(
                    entity=spec.name,
                    migrated_at=migrated_at,
                    lookups=lookups[index],
                    required_lookups=spec.required_lookups,
                )
                try:
                    records.append(source_row.source.transform(source_row.row, context))
                except (RecordTransformError, ValueError, TypeError) as e:
                    reason = e.message if isinstance(e, MigrationError) else str(e)
                    failures.append(RecordFailure(key=source_row.key, reason=reason))
                    logger.debug("Row %s of %s failed: %s", source_row.key, spec.name, reason)

            written, write_failed, attempts, write_error = await self._write(
                spec, records, batch_number, offset
            )
            result = BatchResult(
                entity=spec.name,
                batch_number=batch_number,
                offset=offset,
                rows_read=page.span,
                rows_transformed=len(records),
                transform_failures=tuple(failures),
                rows_written=written,
                write_failed=write_failed,
                attempts=attempts,
                duration_seconds=time.monotonic() - started,
                dry_run=self._config.dry_run,
                write_error=write_error,
            )
            if span is not None:
                span.set_attribute(ATTR_ROWS_READ, result.rows_read)
                span.set_attribute(ATTR_ROWS_WRITTEN, result.rows_written)
                span.set_attribute(ATTR_ROWS_FAILED, result.rows_failed)
                span.set_attribute(ATTR_RETRY_COUNT, max(0, result.attempts - 1))
            return result

    async def _write(
        self,
        spec: EntitySpec,
        records: list[Record],
        batch_number: int,
        offset: int,
    ) -> tuple[int, int, int, str | None]:
        """
        Write a batch as one bulk insert with timeout and retry.

        Returns:
            (rows accepted, rows failed, attempts, final error message)
        """
        if not records:
            return 0, 0, 0, None

        if self._config.dry_run:
            self._stage(spec.target_table, records)
            return len(records), 0, 0, None

        conflict_keys = [spec.natural_key] if self._config.idempotent_writes else None
        attempts = 0

        async def attempt() -> int:
            nonlocal attempts
            attempts += 1
            try:
                return await asyncio.wait_for(
                    self._target.insert_batch(spec.target_table, records, conflict_keys),
                    self._config.batch_timeout_seconds,
                )
            except TimeoutError as e:
                raise BatchTimeoutError(
                    spec.name, batch_number, offset, self._config.batch_timeout_seconds
                ) from e
            except StoreError as e:
                raise BatchWriteError(spec.name, batch_number, offset, e.original_error) from e

        try:
            inserted = await self._error_handler.execute_with_retry(
                attempt,
                f"{spec.name}.batch_write",
                retry_config=self._retry_config,
            )
        except BatchWriteError as e:
            logger.error(
                "Batch %d of %s failed after %d attempts: %s",
                batch_number,
                spec.name,
                attempts,
                e.original_error,
            )
            return 0, len(records), attempts, e.message

        if inserted < len(records):
            logger.debug(
                "Batch %d of %s: %d records already present in target",
                batch_number,
                spec.name,
                len(records) - inserted,
            )
        # rows already present count as migrated so reruns still reach the total
        return len(records), 0, attempts, None

    def _stage(self, table: str, records: list[Record]) -> None:
        """Remember keys of dry-run records for dependent lookups."""
        for target_column, value_column in self._staging_columns.get(table, ()):
            staged = self._staged[table][target_column]
            for record in records:
                key = record.get(target_column)
                if key is not None and key not in staged:
                    staged[key] = record.get(value_column)

    async def _resolve_lookups(
        self,
        spec: EntitySpec,
        page: SourcePage,
    ) -> list[dict[str, Any]]:
        """Resolve every lookup of a page with one keyed query per candidate match."""
        resolved: list[dict[str, Any]] = [{} for _ in page.rows]
        for lookup in spec.lookups:
            await self._resolve_lookup(lookup, page.rows, resolved)
        return resolved

    async def _resolve_lookup(
        self,
        lookup: LookupSpec,
        rows: tuple[SourceRow, ...],
        resolved: list[dict[str, Any]],
    ) -> None:
        for legacy_column, target_column in lookup.matches:
            pending = [
                i
                for i, source_row in enumerate(rows)
                if resolved[i].get(lookup.field) is None
                and source_row.row.get(legacy_column) is not None
            ]
            if not pending:
                continue

            keys = [rows[i].row[legacy_column] for i in pending]
            found = await self._read_with_retry(
                lambda keys=keys, column=target_column: self._target.fetch_keys(
                    lookup.target_table, column, keys, lookup.value_column
                ),
                f"lookup.{lookup.target_table}.{target_column}",
            )
            staged = self._staged.get(lookup.target_table, {}).get(target_column, {})
            for i in pending:
                key = rows[i].row[legacy_column]
                value = found.get(key, staged.get(key))
                if value is not None:
                    resolved[i][lookup.field] = value

    async def _read_with_retry(self, operation: Any, operation_name: str) -> Any:
        return await self._error_handler.execute_with_retry(
            operation,
            operation_name,
            retry_config=self._read_retry_config,
        )

    async def _after_batch(
        self,
        state: EntityMigrationState,
        spec: EntitySpec,
        result: BatchResult,
        previous_processed: int,
    ) -> None:
        """Publish batch and progress events and record metrics."""
        if self._metrics:
            self._metrics.record_batch(
                spec.name,
                written=result.rows_written,
                failed=result.rows_failed,
                duration_seconds=result.duration_seconds,
                retries=result.retries,
                batch_failed=result.batch_failed,
            )

        await self._publish(
            BatchCompleted(
                session_id=self.session_id,
                entity=spec.name,
                batch_number=result.batch_number,
                offset=result.offset,
                rows_read=result.rows_read,
                rows_written=result.rows_written,
                rows_failed=result.rows_failed,
                attempts=result.attempts,
                duration_seconds=result.duration_seconds,
                dry_run=result.dry_run,
                batch_failed=result.batch_failed,
            )
        )

        interval = self._config.progress_report_interval
        if state.processed // interval > previous_processed // interval:
            await self._publish(
                ProgressTick(
                    session_id=self.session_id,
                    entity=spec.name,
                    processed=state.processed,
                    migrated=state.migrated,
                    failed=state.failed,
                    total=state.total,
                )
            )
            logger.info(
                "%s progress: %d/%d (%.1f%%)",
                spec.name,
                state.processed,
                state.total,
                state.progress_percent,
            )

    async def _enforce_failure_policy(
        self,
        state: EntityMigrationState,
        spec: EntitySpec,
        result: BatchResult,
    ) -> None:
        """Abort the entity on fail-fast batch failures or an excessive failure rate."""
        if result.batch_failed and self._config.fail_fast:
            reason = f"Batch {result.batch_number} failed with fail_fast enabled: {result.write_error}"
            await self._abort(state, reason)
            raise EntityMigrationError(
                f"Entity {spec.name} aborted: {reason}",
                entity=spec.name,
                session_id=self.session_id,
                migrated=state.migrated,
                failed=state.failed,
            )

        failure_rate = state.failure_rate
        if failure_rate > self._config.max_failure_rate:
            await self._abort(
                state,
                f"Failure rate {failure_rate:.2%} exceeds {self._config.max_failure_rate:.2%}",
            )
            raise FailureThresholdExceededError(
                entity=spec.name,
                failure_rate=failure_rate,
                threshold=self._config.max_failure_rate,
                session_id=self.session_id,
                migrated=state.migrated,
                failed=state.failed,
            )

    async def _abort(self, state: EntityMigrationState, reason: str) -> None:
        """Mark the entity failed, counting unprocessed rows as failed."""
        previous = state.status
        state.fail_remaining(reason)
        logger.error("Entity %s aborted: %s", state.entity, reason)
        await self._publish(
            EntityStatusChanged(
                session_id=self.session_id,
                entity=state.entity,
                previous_status=previous,
                status=EntityStatus.FAILED,
                migrated=state.migrated,
                failed=state.failed,
                total=state.total,
                error=reason,
            )
        )

    async def _begin(self, state: EntityMigrationState, session: MigrationSession | None) -> None:
        previous = state.status
        if session is not None:
            session.begin_entity(state.entity)
        elif previous == EntityStatus.PENDING:
            state.transition_to(EntityStatus.IN_PROGRESS)
        if state.status == previous:
            return
        await self._publish(
            EntityStatusChanged(
                session_id=self.session_id,
                entity=state.entity,
                previous_status=previous,
                status=state.status,
                migrated=state.migrated,
                failed=state.failed,
                total=state.total,
            )
        )

    async def _publish(self, event: Any) -> None:
        if self._publisher is not None:
            await self._publisher.publish(event)


__all__ = ["RunControl", "BatchProcessor"]
