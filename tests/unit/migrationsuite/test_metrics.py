"""
Unit tests for MigrationMetrics.

Exported values are read back through the InMemoryMetricReader fixture.
"""

from typing import Any

import pytest

from migrationsuite.batch_processor import BatchProcessor
from migrationsuite.entities import get_spec
from migrationsuite.metrics import MigrationMetrics, NoOpCounter
from migrationsuite.models import EntityMigrationState, MigrationConfig
from migrationsuite.stores import InMemoryStore
from tests.fixtures import customer_rows


def _metric(metrics_data: Any, metric_name: str) -> Any:
    if not metrics_data or not metrics_data.resource_metrics:
        return None
    for resource_metric in metrics_data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == metric_name:
                    return metric
    return None


def _get_metric_value(metrics_data: Any, metric_name: str) -> float:
    """Sum of the data points of a counter or gauge, 0 when absent."""
    metric = _metric(metrics_data, metric_name)
    if metric is None:
        return 0
    return sum(dp.value for dp in metric.data.data_points)


def _get_histogram_count(metrics_data: Any, metric_name: str) -> int:
    metric = _metric(metrics_data, metric_name)
    if metric is None:
        return 0
    return sum(dp.count for dp in metric.data.data_points)


def _attributes(metrics_data: Any, metric_name: str) -> list[dict[str, Any]]:
    metric = _metric(metrics_data, metric_name)
    if metric is None:
        return []
    return [dict(dp.attributes) for dp in metric.data.data_points]


class TestExport:
    """Tests for values exported to OpenTelemetry."""

    def test_record_batch(self, metric_reader: Any) -> None:
        reader, provider = metric_reader
        metrics = MigrationMetrics("session-1", meter_provider=provider)

        metrics.record_batch("customers", written=90, failed=10, duration_seconds=0.5, retries=2)
        metrics.record_batch(
            "customers", written=0, failed=100, duration_seconds=0.1, batch_failed=True
        )

        data = reader.get_metrics_data()
        assert _get_metric_value(data, "migration.records.migrated") == 90
        assert _get_metric_value(data, "migration.records.failed") == 110
        assert _get_metric_value(data, "migration.batch.retries") == 2
        assert _get_metric_value(data, "migration.batches") == 2
        assert _get_histogram_count(data, "migration.batch.duration") == 2
        outcomes = {attrs["outcome"] for attrs in _attributes(data, "migration.batches")}
        assert outcomes == {"ok", "failed"}
        assert _attributes(data, "migration.records.migrated") == [
            {"session_id": "session-1", "entity": "customers"}
        ]

    def test_throughput_gauge(self, metric_reader: Any) -> None:
        reader, provider = metric_reader
        metrics = MigrationMetrics("session-1", meter_provider=provider)

        metrics.record_throughput(250.0)

        assert _get_metric_value(reader.get_metrics_data(), "migration.throughput") == 250.0

    def test_phase_findings_and_rollbacks(self, metric_reader: Any) -> None:
        reader, provider = metric_reader
        metrics = MigrationMetrics("session-1", meter_provider=provider)

        metrics.record_phase_duration("migrating", 3.0)
        metrics.record_findings("pre_migration", "critical", 2)
        metrics.record_findings("pre_migration", "warning", 0)
        metrics.record_rollback("incremental", "completed", 1.5)

        data = reader.get_metrics_data()
        assert _get_histogram_count(data, "migration.phase.duration") == 1
        assert _get_metric_value(data, "migration.validation.findings") == 2
        assert _get_histogram_count(data, "migration.rollback.duration") == 1


class TestSnapshot:
    """Tests for get_snapshot."""

    def test_snapshot_accumulates(self) -> None:
        metrics = MigrationMetrics("session-1", enable_metrics=False)

        metrics.record_batch("customers", written=10, failed=1, duration_seconds=0.1, retries=1)
        metrics.record_batch("suppliers", written=5, failed=0, duration_seconds=0.1)
        metrics.record_batch(
            "suppliers", written=0, failed=5, duration_seconds=0.1, batch_failed=True
        )
        metrics.record_phase_duration("migrating", 1.0)
        metrics.record_phase_duration("migrating", 2.0)
        metrics.record_findings("post_migration", "critical", 1)

        snapshot = metrics.get_snapshot()

        assert snapshot.records_migrated == {"customers": 10, "suppliers": 5}
        assert snapshot.records_failed == {"customers": 1, "suppliers": 5}
        assert snapshot.batches == 3
        assert snapshot.failed_batches == 1
        assert snapshot.retries == 1
        assert snapshot.phase_durations == {"migrating": 3.0}
        assert snapshot.findings == {"post_migration:critical": 1}
        assert snapshot.to_dict()["batches"] == 3

    def test_time_phase(self) -> None:
        metrics = MigrationMetrics("session-1", enable_metrics=False)

        with metrics.time_phase("post_validation") as timer:
            pass

        assert timer.duration_seconds >= 0
        assert "post_validation" in metrics.get_snapshot().phase_durations

    def test_disabled_metrics_use_noop_instruments(self) -> None:
        metrics = MigrationMetrics("session-1", enable_metrics=False)

        assert not metrics.metrics_enabled
        assert isinstance(metrics._migrated_counter, NoOpCounter)

    def test_negative_throughput_is_clamped(self) -> None:
        metrics = MigrationMetrics("session-1", enable_metrics=False)

        metrics.record_throughput(-5.0)

        assert metrics.get_snapshot().throughput == 0.0


@pytest.mark.asyncio
async def test_processor_feeds_metrics(
    source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
) -> None:
    source.seed("legacy_customers", customer_rows(5))
    metrics = MigrationMetrics("session-1", enable_metrics=False)
    processor = BatchProcessor(source, target, fast_config, metrics=metrics, enable_tracing=False)

    await processor.migrate_entity(EntityMigrationState(entity="customers"), get_spec("customers"))

    snapshot = metrics.get_snapshot()
    assert snapshot.records_migrated == {"customers": 5}
    assert snapshot.batches == 1
