"""
OpenTelemetry metrics for migration runs.

This module provides metrics instrumentation for the migration engine,
tracking records migrated and failed, batch outcomes and durations,
retries, phase durations, validation findings and rollbacks.

Example:
    >>> from migrationsuite.metrics import MigrationMetrics
    >>>
    >>> metrics = MigrationMetrics(str(session.id))
    >>> metrics.record_batch("customers", written=1000, failed=0, duration_seconds=1.2)
    >>> with metrics.time_phase("migrating"):
    ...     await migrate()

Metrics Exposed:
    - migration.records.migrated (Counter): Records written per entity
    - migration.records.failed (Counter): Records failed per entity
    - migration.batches (Counter): Batches processed, by outcome
    - migration.batch.retries (Counter): Batch write retries
    - migration.batch.duration (Histogram): Batch duration in seconds
    - migration.phase.duration (Histogram): Time spent in each phase
    - migration.validation.findings (Counter): Findings by gate and severity
    - migration.rollback.duration (Histogram): Rollback duration in seconds
    - migration.throughput (Gauge): Current records per second

All metrics include the 'session_id' attribute for filtering.
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

METER_NAME = "migrationsuite"


class NoOpCounter:
    """No-op counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """No-op add operation."""


class NoOpHistogram:
    """No-op histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """No-op record operation."""


@dataclass(frozen=True)
class MigrationMetricSnapshot:
    """
    Snapshot of metric values recorded for a session.

    Attributes:
        records_migrated: Records written, per entity
        records_failed: Records failed, per entity
        batches: Batches processed
        failed_batches: Batches whose write exhausted its retries
        retries: Batch write retries
        throughput: Last reported records per second
        phase_durations: Phase name to total duration in seconds
        findings: "gate:severity" to finding count
        rollbacks: Rollback durations in seconds
    """

    records_migrated: dict[str, int] = field(default_factory=dict)
    records_failed: dict[str, int] = field(default_factory=dict)
    batches: int = 0
    failed_batches: int = 0
    retries: int = 0
    throughput: float = 0.0
    phase_durations: dict[str, float] = field(default_factory=dict)
    findings: dict[str, int] = field(default_factory=dict)
    rollbacks: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "records_migrated": dict(self.records_migrated),
            "records_failed": dict(self.records_failed),
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "retries": self.retries,
            "throughput": self.throughput,
            "phase_durations": dict(self.phase_durations),
            "findings": dict(self.findings),
            "rollbacks": list(self.rollbacks),
        }


@dataclass
class MigrationMetrics:
    """
    Container for migration metric instruments.

    Attributes:
        session_id: Session identifier used as metric label
        enable_metrics: Whether metrics are exported (default True)
        meter_provider: Meter provider to use instead of the global one

    Example:
        >>> metrics = MigrationMetrics("8a1f...", meter_provider=provider)
        >>> metrics.record_batch("products", written=500, failed=2, duration_seconds=0.8)
        >>> metrics.get_snapshot().records_migrated
        {'products': 500}
    """

    session_id: str
    enable_metrics: bool = True
    meter_provider: Any = None

    _meter: Any = field(default=None, init=False, repr=False)
    _migrated_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _batch_counter: Any = field(default=None, init=False, repr=False)
    _retry_counter: Any = field(default=None, init=False, repr=False)
    _batch_duration_histogram: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _findings_counter: Any = field(default=None, init=False, repr=False)
    _rollback_duration_histogram: Any = field(default=None, init=False, repr=False)
    _throughput_value: float = field(default=0.0, init=False, repr=False)

    # Internal counters for snapshot
    _records_migrated: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _records_failed: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _batches: int = field(default=0, init=False, repr=False)
    _failed_batches: int = field(default=0, init=False, repr=False)
    _retries: int = field(default=0, init=False, repr=False)
    _phase_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _findings: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _rollbacks: list[float] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        """Set up OpenTelemetry metric instruments."""
        provider = self.meter_provider or metrics.get_meter_provider()
        self._meter = provider.get_meter(METER_NAME, version="1.0.0")

        self._migrated_counter = self._meter.create_counter(
            name="migration.records.migrated",
            unit="records",
            description="Records written to the target",
        )
        self._failed_counter = self._meter.create_counter(
            name="migration.records.failed",
            unit="records",
            description="Records that failed transformation or writing",
        )
        self._batch_counter = self._meter.create_counter(
            name="migration.batches",
            unit="batches",
            description="Batches processed, labelled by outcome",
        )
        self._retry_counter = self._meter.create_counter(
            name="migration.batch.retries",
            unit="retries",
            description="Batch write retries",
        )
        self._batch_duration_histogram = self._meter.create_histogram(
            name="migration.batch.duration",
            unit="s",
            description="Duration of one batch read, transform and write",
        )
        self._phase_duration_histogram = self._meter.create_histogram(
            name="migration.phase.duration",
            unit="s",
            description="Time spent in each session phase",
        )
        self._findings_counter = self._meter.create_counter(
            name="migration.validation.findings",
            unit="findings",
            description="Validation findings by gate and severity",
        )
        self._rollback_duration_histogram = self._meter.create_histogram(
            name="migration.rollback.duration",
            unit="s",
            description="Duration of rollbacks",
        )
        self._meter.create_observable_gauge(
            name="migration.throughput",
            callbacks=[self._observe_throughput],
            unit="records/s",
            description="Current migration throughput",
        )

    def _setup_noop(self) -> None:
        """Set up no-op instruments when metrics are disabled."""
        self._migrated_counter = NoOpCounter()
        self._failed_counter = NoOpCounter()
        self._batch_counter = NoOpCounter()
        self._retry_counter = NoOpCounter()
        self._batch_duration_histogram = NoOpHistogram()
        self._phase_duration_histogram = NoOpHistogram()
        self._findings_counter = NoOpCounter()
        self._rollback_duration_histogram = NoOpHistogram()

    def _base_attributes(self) -> dict[str, str]:
        """Get base attributes for all metrics."""
        return {"session_id": self.session_id}

    def _observe_throughput(self, options: CallbackOptions) -> Generator[Observation, None, None]:
        """Callback for the throughput gauge, invoked during collection."""
        yield Observation(value=self._throughput_value, attributes=self._base_attributes())

    def record_batch(
        self,
        entity: str,
        *,
        written: int,
        failed: int,
        duration_seconds: float,
        retries: int = 0,
        batch_failed: bool = False,
    ) -> None:
        """
        Record the outcome of one batch.

        Args:
            entity: Entity the batch belongs to
            written: Records written
            failed: Records failed
            duration_seconds: Batch duration
            retries: Write retries performed
            batch_failed: Whether the write exhausted its retries
        """
        attrs = {**self._base_attributes(), "entity": entity}
        if written:
            self._migrated_counter.add(written, attrs)
        if failed:
            self._failed_counter.add(failed, attrs)
        if retries:
            self._retry_counter.add(retries, attrs)
        outcome = "failed" if batch_failed else "ok"
        self._batch_counter.add(1, {**attrs, "outcome": outcome})
        self._batch_duration_histogram.record(duration_seconds, attrs)

        self._records_migrated[entity] = self._records_migrated.get(entity, 0) + written
        self._records_failed[entity] = self._records_failed.get(entity, 0) + failed
        self._batches += 1
        self._retries += retries
        if batch_failed:
            self._failed_batches += 1

    def record_throughput(self, records_per_second: float) -> None:
        """Update the throughput reported by the gauge."""
        self._throughput_value = max(0.0, records_per_second)

    def record_phase_duration(self, phase: str, duration_seconds: float) -> None:
        """
        Record duration for a session phase.

        Args:
            phase: Phase name (e.g., 'pre_validation', 'migrating')
            duration_seconds: Duration in seconds
        """
        attrs = {**self._base_attributes(), "phase": phase}
        self._phase_duration_histogram.record(duration_seconds, attrs)
        self._phase_durations[phase] = self._phase_durations.get(phase, 0.0) + duration_seconds

    def record_findings(self, gate: str, severity: str, count: int) -> None:
        """Record validation findings produced by a gate."""
        if count <= 0:
            return
        attrs = {**self._base_attributes(), "gate": gate, "severity": severity}
        self._findings_counter.add(count, attrs)
        key = f"{gate}:{severity}"
        self._findings[key] = self._findings.get(key, 0) + count

    def record_rollback(self, strategy: str, status: str, duration_seconds: float) -> None:
        """Record a finished rollback."""
        attrs = {**self._base_attributes(), "strategy": strategy, "status": status}
        self._rollback_duration_histogram.record(duration_seconds, attrs)
        self._rollbacks.append(duration_seconds)

    @contextmanager
    def time_phase(self, phase: str) -> Generator[_PhaseTimer, None, None]:
        """
        Context manager for timing a session phase.

        Example:
            >>> with metrics.time_phase("post_validation"):
            ...     await validate()
        """
        timer = _PhaseTimer()
        timer.start()
        try:
            yield timer
        finally:
            timer.stop()
            self.record_phase_duration(phase, timer.duration_seconds)

    def get_snapshot(self) -> MigrationMetricSnapshot:
        """
        Get a snapshot of recorded values.

        Returns:
            MigrationMetricSnapshot with current values
        """
        return MigrationMetricSnapshot(
            records_migrated=dict(self._records_migrated),
            records_failed=dict(self._records_failed),
            batches=self._batches,
            failed_batches=self._failed_batches,
            retries=self._retries,
            throughput=self._throughput_value,
            phase_durations=dict(self._phase_durations),
            findings=dict(self._findings),
            rollbacks=list(self._rollbacks),
        )

    @property
    def metrics_enabled(self) -> bool:
        """Check if metrics are exported."""
        return self.enable_metrics


class _PhaseTimer:
    """Internal timer used by the time_phase context manager."""

    def __init__(self) -> None:
        self._start: float = 0.0
        self._end: float = 0.0
        self._stopped: bool = False

    def start(self) -> None:
        """Start the timer."""
        self._start = time.perf_counter()
        self._stopped = False

    def stop(self) -> None:
        """Stop the timer."""
        if not self._stopped:
            self._end = time.perf_counter()
            self._stopped = True

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds, or 0 if not started."""
        if self._start == 0:
            return 0.0
        end = self._end if self._stopped else time.perf_counter()
        return end - self._start


__all__ = [
    "METER_NAME",
    "NoOpCounter",
    "NoOpHistogram",
    "MigrationMetricSnapshot",
    "MigrationMetrics",
]
