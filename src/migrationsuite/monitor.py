"""
Progress monitor: periodic sampling, alerting and status snapshots.

The monitor runs on its own asyncio task next to the orchestrator and
only reads: entity counters from the session, memory usage from psutil
and connection/storage metrics from the target store. Database metrics
are collected under a timeout, so a slow target never stalls sampling,
let alone the pipeline.

Features:
    - Throughput, average throughput, error rate and ETA per sample
    - Threshold alerts (error rate, slowdown, memory, connection pool)
      with suppression of repeats while an alert of the same type is active
    - Bounded history: one hour of samples, the last 100 status snapshots
    - Phase and entity step tracking from the event channel
    - Trends, alert summary, recommendations and a progress report

Usage:
    >>> monitor = ProgressMonitor(session, target=target, publisher=channel)
    >>> channel.subscribe_to_all_events(monitor.handle_event)
    >>> await monitor.start()
    >>> ...
    >>> await monitor.stop()
    >>> monitor.get_progress_report()["progress"]["percent"]
    100.0
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import psutil

from migrationsuite.events import (
    AlertRaised,
    EntityStatusChanged,
    MigrationEvent,
    PhaseChanged,
    StatusSnapshotPublished,
)
from migrationsuite.exceptions import StoreError
from migrationsuite.interfaces import DatabaseMetrics, EventPublisher, TargetWriter
from migrationsuite.models import (
    EntityStatus,
    MigrationPhase,
    MigrationSession,
    Severity,
    utc_now,
)
from migrationsuite.observability import (
    ATTR_PHASE,
    ATTR_RECORDS_TOTAL,
    ATTR_SESSION_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


class AlertType(Enum):
    """Kinds of threshold alerts."""

    ERROR_RATE_HIGH = "ERROR_RATE_HIGH"
    PROCESSING_SLOWDOWN = "PROCESSING_SLOWDOWN"
    MEMORY_USAGE_HIGH = "MEMORY_USAGE_HIGH"
    CONNECTION_POOL_HIGH = "CONNECTION_POOL_HIGH"


class Trend(Enum):
    """Direction of a metric between the two latest samples."""

    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


@dataclass(frozen=True)
class AlertThresholds:
    """
    Alert thresholds.

    Attributes:
        error_rate: Failed / processed above which ERROR_RATE_HIGH fires.
        expected_throughput: Records per second considered normal.
        slowdown_factor: Fraction of the expected throughput below which
            PROCESSING_SLOWDOWN fires.
        memory_usage: Memory usage ratio above which MEMORY_USAGE_HIGH fires.
        connection_pool: Connections / limit above which
            CONNECTION_POOL_HIGH fires.
        connection_limit: Limit used when the target does not report one.
    """

    error_rate: float = 0.05
    expected_throughput: float = 100.0
    slowdown_factor: float = 0.5
    memory_usage: float = 0.8
    connection_pool: float = 0.9
    connection_limit: int = 100

    def __post_init__(self) -> None:
        """Validate thresholds."""
        for name in ("error_rate", "slowdown_factor", "memory_usage", "connection_pool"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if self.expected_throughput < 0:
            raise ValueError(f"expected_throughput must be >= 0, got {self.expected_throughput}")
        if self.connection_limit < 1:
            raise ValueError(f"connection_limit must be >= 1, got {self.connection_limit}")

    @property
    def minimum_throughput(self) -> float:
        """Throughput below which processing counts as slowed down."""
        return self.expected_throughput * self.slowdown_factor

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "error_rate": self.error_rate,
            "expected_throughput": self.expected_throughput,
            "slowdown_factor": self.slowdown_factor,
            "memory_usage": self.memory_usage,
            "connection_pool": self.connection_pool,
            "connection_limit": self.connection_limit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlertThresholds:
        """Create from dictionary."""
        return cls(**{key: data[key] for key in cls().to_dict() if key in data})


@dataclass(frozen=True)
class MonitorConfig:
    """
    Configuration of the progress monitor.

    Attributes:
        refresh_interval_seconds: Seconds between samples.
        sample_retention_seconds: Age after which samples are dropped.
        max_status_snapshots: Published status snapshots kept.
        max_alerts: Raised alerts kept, oldest dropped first.
        alert_suppression_seconds: Window during which an alert of the
            same type is not raised again.
        metrics_timeout_seconds: Limit on database metric collection.
        thresholds: Alert thresholds.
    """

    refresh_interval_seconds: float = 5.0
    sample_retention_seconds: float = 3600.0
    max_status_snapshots: int = 100
    max_alerts: int = 1000
    alert_suppression_seconds: float = 300.0
    metrics_timeout_seconds: float = 2.0
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.refresh_interval_seconds <= 0:
            raise ValueError(
                f"refresh_interval_seconds must be > 0, got {self.refresh_interval_seconds}"
            )
        if self.max_status_snapshots < 1:
            raise ValueError(f"max_status_snapshots must be >= 1, got {self.max_status_snapshots}")
        if self.max_alerts < 1:
            raise ValueError(f"max_alerts must be >= 1, got {self.max_alerts}")
        if self.metrics_timeout_seconds <= 0:
            raise ValueError(
                f"metrics_timeout_seconds must be > 0, got {self.metrics_timeout_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "sample_retention_seconds": self.sample_retention_seconds,
            "max_status_snapshots": self.max_status_snapshots,
            "max_alerts": self.max_alerts,
            "alert_suppression_seconds": self.alert_suppression_seconds,
            "metrics_timeout_seconds": self.metrics_timeout_seconds,
            "thresholds": self.thresholds.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitorConfig:
        """Create from dictionary."""
        values = {key: data[key] for key in cls().to_dict() if key in data and key != "thresholds"}
        if "thresholds" in data:
            values["thresholds"] = AlertThresholds.from_dict(data["thresholds"])
        return cls(**values)


@dataclass(frozen=True)
class MonitorSample:
    """
    One monitor measurement.

    Attributes:
        sampled_at: When the sample was taken.
        phase: Session phase at the time.
        processed: Records processed so far.
        migrated: Records migrated so far.
        failed: Records failed so far.
        total: Records to migrate.
        throughput: Records per second since the previous sample.
        average_throughput: Records per second since monitoring started.
        error_rate: failed / processed.
        eta_seconds: Estimated seconds remaining, if computable.
        memory_usage: System memory usage ratio (0-1).
        process_memory_bytes: Resident memory of this process.
        database: Target database metrics, if collected in time.
    """

    sampled_at: datetime
    phase: MigrationPhase
    processed: int
    migrated: int
    failed: int
    total: int
    throughput: float
    average_throughput: float
    error_rate: float
    eta_seconds: float | None
    memory_usage: float | None
    process_memory_bytes: int | None
    database: DatabaseMetrics | None

    @property
    def progress_percent(self) -> float:
        if self.total == 0:
            return 100.0 if self.phase.is_terminal else 0.0
        return min(100.0, self.processed / self.total * 100)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sampled_at": self.sampled_at.isoformat(),
            "phase": self.phase.value,
            "processed": self.processed,
            "migrated": self.migrated,
            "failed": self.failed,
            "total": self.total,
            "progress_percent": round(self.progress_percent, 2),
            "throughput": round(self.throughput, 2),
            "average_throughput": round(self.average_throughput, 2),
            "error_rate": round(self.error_rate, 4),
            "eta_seconds": round(self.eta_seconds) if self.eta_seconds is not None else None,
            "memory_usage": self.memory_usage,
            "process_memory_bytes": self.process_memory_bytes,
            "database": self.database.to_dict() if self.database else None,
        }


@dataclass(frozen=True)
class Alert:
    """A raised threshold alert."""

    alert_type: AlertType
    severity: Severity
    message: str
    value: float
    threshold: float
    raised_at: datetime = field(default_factory=utc_now)

    def is_active(self, now: datetime, window_seconds: float) -> bool:
        """Check if the alert is still inside its suppression window."""
        return now - self.raised_at < timedelta(seconds=window_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "value": self.value,
            "threshold": self.threshold,
            "raised_at": self.raised_at.isoformat(),
        }


@dataclass(frozen=True)
class MetricTrend:
    """Latest and previous value of a metric with its direction."""

    current: float
    previous: float
    trend: Trend

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"current": self.current, "previous": self.previous, "trend": self.trend.value}


@dataclass(frozen=True)
class Recommendation:
    """An operator recommendation derived from active alerts."""

    priority: str
    category: str
    recommendation: str
    action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "priority": self.priority,
            "category": self.category,
            "recommendation": self.recommendation,
            "action": self.action,
        }


@dataclass
class StepStatus:
    """Status of one phase or entity step, tracked from events."""

    name: str
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    migrated: int = 0
    failed: int = 0
    total: int = 0

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "migrated": self.migrated,
            "failed": self.failed,
            "total": self.total,
        }


_RECOMMENDATIONS: dict[AlertType, Recommendation] = {
    AlertType.ERROR_RATE_HIGH: Recommendation(
        priority="HIGH",
        category="Error Handling",
        recommendation="Investigate and resolve data quality issues causing the high error rate",
        action="Pause the migration, fix source data, resume the migration",
    ),
    AlertType.PROCESSING_SLOWDOWN: Recommendation(
        priority="MEDIUM",
        category="Performance",
        recommendation="Optimize database performance or increase resource allocation",
        action="Check indexes, increase memory allocation or reduce the batch size",
    ),
    AlertType.MEMORY_USAGE_HIGH: Recommendation(
        priority="MEDIUM",
        category="Resources",
        recommendation="Monitor memory usage and consider reducing batch sizes",
        action="Reduce concurrent operations or increase available memory",
    ),
    AlertType.CONNECTION_POOL_HIGH: Recommendation(
        priority="MEDIUM",
        category="Resources",
        recommendation="Reduce connections held against the target database",
        action="Stop other writers or raise the connection limit",
    ),
}

_NORMAL = Recommendation(
    priority="LOW",
    category="General",
    recommendation="Migration is proceeding normally",
    action="Continue monitoring for any issues",
)


def system_memory_usage() -> float:
    """System memory usage ratio (0-1)."""
    return psutil.virtual_memory().percent / 100.0


def process_memory_bytes() -> int:
    """Resident memory of the current process."""
    return psutil.Process().memory_info().rss


class ProgressMonitor:
    """
    Observes a migration session while it runs.

    The monitor never mutates the session. start() launches the polling
    task and stop() cancels it; sample() can also be called directly,
    which is what tests do.

    Example:
        >>> monitor = ProgressMonitor(session, target=target)
        >>> sample = await monitor.sample()
        >>> sample.error_rate
        0.0
    """

    def __init__(
        self,
        session: MigrationSession,
        target: TargetWriter | None = None,
        config: MonitorConfig | None = None,
        *,
        publisher: EventPublisher | None = None,
        clock: Callable[[], float] = time.monotonic,
        memory_reader: Callable[[], float] = system_memory_usage,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the monitor.

        Args:
            session: Session being observed.
            target: Target store polled for database metrics.
            config: Monitor configuration.
            publisher: Receives AlertRaised and StatusSnapshotPublished events.
            clock: Monotonic clock used for throughput.
            memory_reader: Returns the memory usage ratio.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._session = session
        self._target = target
        self._config = config or MonitorConfig()
        self._publisher = publisher
        self._clock = clock
        self._memory_reader = memory_reader

        self._samples: deque[tuple[float, MonitorSample]] = deque()
        self._snapshots: deque[dict[str, Any]] = deque(maxlen=self._config.max_status_snapshots)
        self._alerts: deque[Alert] = deque(maxlen=self._config.max_alerts)
        self._phases: dict[str, StepStatus] = {}
        self._steps: dict[str, StepStatus] = {}
        self._started: float | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """Check if the polling task is alive."""
        return self._task is not None and not self._task.done()

    @property
    def samples(self) -> list[MonitorSample]:
        """Retained samples, oldest first."""
        return [sample for _, sample in self._samples]

    @property
    def latest_sample(self) -> MonitorSample | None:
        return self._samples[-1][1] if self._samples else None

    @property
    def snapshots(self) -> list[dict[str, Any]]:
        """Published status snapshots, oldest first."""
        return list(self._snapshots)

    @property
    def alerts(self) -> list[Alert]:
        """Every alert raised, oldest first."""
        return list(self._alerts)

    def active_alerts(self, now: datetime | None = None) -> list[Alert]:
        """Alerts raised within the suppression window."""
        now = now or utc_now()
        window = self._config.alert_suppression_seconds
        return [alert for alert in self._alerts if alert.is_active(now, window)]

    # -- lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        """Start polling on a background task."""
        if self.is_running:
            return
        self._started = self._clock()
        self._task = asyncio.create_task(self._run(), name=f"monitor-{self._session.id}")
        logger.debug(
            "Progress monitor started for session %s (every %.1fs)",
            self._session.id,
            self._config.refresh_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop polling and take a final sample."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._started is not None:
            await self.sample()
        logger.debug("Progress monitor stopped for session %s", self._session.id)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.refresh_interval_seconds)
            try:
                await self.sample()
            except Exception:
                logger.exception("Progress monitor sample failed")

    # -- sampling ---------------------------------------------------------------

    async def sample(self) -> MonitorSample:
        """
        Take one sample, check alerts and publish a status snapshot.

        Returns:
            The new sample.
        """
        with self._tracer.span(
            "migrationsuite.monitor.sample",
            {ATTR_SESSION_ID: str(self._session.id), ATTR_PHASE: self._session.phase.value},
        ) as span:
            now = self._clock()
            if self._started is None:
                self._started = now

            stats = self._session.stats
            previous = self._samples[-1] if self._samples else None
            if previous is not None and now > previous[0]:
                throughput = (stats.processed - previous[1].processed) / (now - previous[0])
            else:
                throughput = 0.0
            elapsed = now - self._started
            average = stats.processed / elapsed if elapsed > 0 else 0.0
            remaining = max(0, stats.total - stats.processed)
            eta = remaining / average if average > 0 else None

            sample = MonitorSample(
                sampled_at=utc_now(),
                phase=self._session.phase,
                processed=stats.processed,
                migrated=stats.migrated,
                failed=stats.failed,
                total=stats.total,
                throughput=max(0.0, throughput),
                average_throughput=average,
                error_rate=stats.error_rate,
                eta_seconds=eta,
                memory_usage=self._read_memory(),
                process_memory_bytes=self._read_process_memory(),
                database=await self._collect_database_metrics(),
            )
            self._samples.append((now, sample))
            self._prune(now)

            if span is not None:
                span.set_attribute(ATTR_RECORDS_TOTAL, stats.total)

            await self._check_alerts(sample, has_previous=previous is not None)
            await self.publish_status()
            return sample

    def _read_memory(self) -> float | None:
        try:
            return self._memory_reader()
        except (psutil.Error, OSError) as e:
            logger.warning("Could not collect memory usage: %s", e)
            return None

    @staticmethod
    def _read_process_memory() -> int | None:
        try:
            return process_memory_bytes()
        except (psutil.Error, OSError) as e:
            logger.warning("Could not collect process memory: %s", e)
            return None

    async def _collect_database_metrics(self) -> DatabaseMetrics | None:
        if self._target is None:
            return None
        try:
            return await asyncio.wait_for(
                self._target.database_metrics(),
                timeout=self._config.metrics_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "Database metrics took longer than %.1fs, skipping",
                self._config.metrics_timeout_seconds,
            )
        except StoreError as e:
            logger.warning("Could not collect database metrics: %s", e)
        return None

    def _prune(self, now: float) -> None:
        cutoff = now - self._config.sample_retention_seconds
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    # -- alerts -----------------------------------------------------------------

    async def _check_alerts(self, sample: MonitorSample, *, has_previous: bool) -> None:
        thresholds = self._config.thresholds
        candidates: list[Alert] = []

        if sample.processed > 0 and sample.error_rate > thresholds.error_rate:
            candidates.append(
                Alert(
                    alert_type=AlertType.ERROR_RATE_HIGH,
                    severity=Severity.CRITICAL,
                    message=(
                        f"Error rate is {sample.error_rate:.1%}, exceeding threshold of "
                        f"{thresholds.error_rate:.1%}"
                    ),
                    value=sample.error_rate,
                    threshold=thresholds.error_rate,
                )
            )

        if (
            has_previous
            and sample.phase == MigrationPhase.MIGRATING
            and sample.throughput < thresholds.minimum_throughput
        ):
            candidates.append(
                Alert(
                    alert_type=AlertType.PROCESSING_SLOWDOWN,
                    severity=Severity.WARNING,
                    message=(
                        f"Processing rate is {sample.throughput:.1f} records/sec, below "
                        f"expected {thresholds.expected_throughput:.0f} records/sec"
                    ),
                    value=sample.throughput,
                    threshold=thresholds.minimum_throughput,
                )
            )

        if sample.memory_usage is not None and sample.memory_usage > thresholds.memory_usage:
            candidates.append(
                Alert(
                    alert_type=AlertType.MEMORY_USAGE_HIGH,
                    severity=Severity.WARNING,
                    message=(
                        f"Memory usage is {sample.memory_usage:.0%}, exceeding threshold of "
                        f"{thresholds.memory_usage:.0%}"
                    ),
                    value=sample.memory_usage,
                    threshold=thresholds.memory_usage,
                )
            )

        if sample.database is not None:
            limit = sample.database.connection_limit or thresholds.connection_limit
            usage = sample.database.active_connections / limit
            if usage > thresholds.connection_pool:
                candidates.append(
                    Alert(
                        alert_type=AlertType.CONNECTION_POOL_HIGH,
                        severity=Severity.WARNING,
                        message=(
                            f"Active connections: {sample.database.active_connections} of "
                            f"{limit}, approaching the limit"
                        ),
                        value=usage,
                        threshold=thresholds.connection_pool,
                    )
                )

        active = {alert.alert_type for alert in self.active_alerts()}
        for alert in candidates:
            if alert.alert_type in active:
                logger.debug("Suppressing repeated %s alert", alert.alert_type.value)
                continue
            await self._raise(alert)

    async def _raise(self, alert: Alert) -> None:
        self._alerts.append(alert)
        logger.log(
            logging.CRITICAL if alert.severity == Severity.CRITICAL else logging.WARNING,
            "%s: %s",
            alert.alert_type.value,
            alert.message,
        )
        if self._publisher is not None:
            await self._publisher.publish(
                AlertRaised(
                    session_id=self._session.id,
                    alert_type=alert.alert_type.value,
                    severity=alert.severity,
                    message=alert.message,
                    value=alert.value,
                    threshold=alert.threshold,
                )
            )

    # -- status snapshots -------------------------------------------------------

    async def publish_status(self) -> dict[str, Any]:
        """Build, retain and publish a status snapshot."""
        latest = self.latest_sample
        snapshot = {
            "session_id": str(self._session.id),
            "published_at": utc_now().isoformat(),
            "phase": self._session.phase.value,
            "current_entity": self._current_entity(),
            "stats": self._session.stats.to_dict(),
            "metrics": latest.to_dict() if latest else {},
            "alerts": [alert.to_dict() for alert in self.active_alerts()],
        }
        self._snapshots.append(snapshot)
        if self._publisher is not None:
            await self._publisher.publish(
                StatusSnapshotPublished(session_id=self._session.id, snapshot=snapshot)
            )
        return snapshot

    def _current_entity(self) -> str | None:
        for state in self._session.entities:
            if state.status == EntityStatus.IN_PROGRESS:
                return state.entity
        return None

    # -- event tracking ---------------------------------------------------------

    async def handle_event(self, event: MigrationEvent) -> None:
        """Track phase and entity step status; subscribe this to the channel."""
        if event.session_id != self._session.id:
            return
        if isinstance(event, PhaseChanged):
            previous = self._phases.get(event.previous_phase.value)
            if previous is not None and previous.ended_at is None:
                previous.ended_at = event.occurred_at
                previous.status = "completed"
            status = event.phase.value if event.phase.is_terminal else "in_progress"
            self._phases[event.phase.value] = StepStatus(
                name=event.phase.value,
                status=status,
                started_at=event.occurred_at,
                ended_at=event.occurred_at if event.phase.is_terminal else None,
            )
        elif isinstance(event, EntityStatusChanged):
            step = self._steps.setdefault(event.entity, StepStatus(name=event.entity, status=event.status.value))
            step.status = event.status.value
            step.migrated = event.migrated
            step.failed = event.failed
            step.total = event.total
            if event.status == EntityStatus.IN_PROGRESS and step.started_at is None:
                step.started_at = event.occurred_at
            if event.status.is_terminal:
                step.ended_at = event.occurred_at

    @property
    def phase_statuses(self) -> list[StepStatus]:
        return list(self._phases.values())

    @property
    def step_statuses(self) -> list[StepStatus]:
        return list(self._steps.values())

    # -- dashboard --------------------------------------------------------------

    def get_trends(self) -> dict[str, MetricTrend]:
        """Compare the two latest samples (empty with fewer than two)."""
        if len(self._samples) < 2:
            return {}
        previous, latest = self._samples[-2][1], self._samples[-1][1]
        return {
            "throughput": MetricTrend(
                current=latest.throughput,
                previous=previous.throughput,
                trend=_direction(latest.throughput, previous.throughput, higher_is_better=True),
            ),
            "error_rate": MetricTrend(
                current=latest.error_rate,
                previous=previous.error_rate,
                trend=_direction(latest.error_rate, previous.error_rate, higher_is_better=False),
            ),
        }

    def get_alert_summary(self) -> dict[str, Any]:
        """Count every alert raised by severity and type."""
        by_type: dict[str, int] = {}
        for alert in self._alerts:
            by_type[alert.alert_type.value] = by_type.get(alert.alert_type.value, 0) + 1
        return {
            "total": len(self._alerts),
            "by_severity": {
                severity.value: sum(1 for a in self._alerts if a.severity == severity)
                for severity in Severity
            },
            "by_type": by_type,
        }

    def get_recommendations(self) -> list[Recommendation]:
        """Recommendations for the alerts currently active."""
        active = {alert.alert_type for alert in self.active_alerts()}
        recommendations = [rec for alert_type, rec in _RECOMMENDATIONS.items() if alert_type in active]
        return recommendations or [_NORMAL]

    def get_progress_report(self) -> dict[str, Any]:
        """Progress, performance, steps, trends and alerts in one document."""
        stats = self._session.stats
        latest = self.latest_sample
        progress = stats.processed / stats.total * 100 if stats.total else (
            100.0 if self._session.phase.is_terminal else 0.0
        )
        completed = sum(1 for s in self._session.entities if s.status == EntityStatus.COMPLETED)
        entity_count = len(self._session.entities)

        return {
            "session": {
                "id": str(self._session.id),
                "phase": self._session.phase.value,
                "started_at": (
                    self._session.started_at.isoformat() if self._session.started_at else None
                ),
                "uptime_seconds": self._session.duration_seconds,
            },
            "progress": {
                "percent": round(min(progress, 100.0), 2),
                "current_entity": self._current_entity(),
            },
            "statistics": stats.to_dict(),
            "phases": [phase.to_dict() for phase in self.phase_statuses],
            "steps": [step.to_dict() for step in self.step_statuses],
            "performance": {
                "average_throughput": round(latest.average_throughput, 2) if latest else 0.0,
                "error_rate": round(stats.error_rate, 4),
                "completion_rate": round(completed / entity_count * 100) if entity_count else 0,
                "eta_seconds": (
                    round(latest.eta_seconds)
                    if latest is not None and latest.eta_seconds is not None
                    else None
                ),
            },
            "trends": {name: trend.to_dict() for name, trend in self.get_trends().items()},
            "alerts": {
                "active": [alert.to_dict() for alert in self.active_alerts()],
                "summary": self.get_alert_summary(),
            },
            "recommendations": [rec.to_dict() for rec in self.get_recommendations()],
        }


def _direction(current: float, previous: float, *, higher_is_better: bool) -> Trend:
    if current == previous:
        return Trend.STABLE
    if (current > previous) == higher_is_better:
        return Trend.IMPROVING
    return Trend.DECLINING


__all__ = [
    "AlertType",
    "Trend",
    "AlertThresholds",
    "MonitorConfig",
    "MonitorSample",
    "Alert",
    "MetricTrend",
    "Recommendation",
    "StepStatus",
    "ProgressMonitor",
    "system_memory_usage",
    "process_memory_bytes",
]
