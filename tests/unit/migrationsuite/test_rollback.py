"""
Unit tests for the rollback engine and its strategies.

Tests cover:
- Strategy selection and rejection before any I/O
- Snapshot, selective, incremental and partial rollbacks
- Dry-run rollbacks
- Backup staleness and readiness checks
- Failed rollbacks carrying their report
"""

import asyncio
from datetime import timedelta

import pytest

from migrationsuite.entities import specs_for
from migrationsuite.events import InMemoryEventChannel, RollbackCompleted, RollbackStarted
from migrationsuite.exceptions import InvalidRollbackStrategyError, RollbackError
from migrationsuite.models import (
    FindingKind,
    MigrationSession,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
    TimeWindow,
    utc_now,
)
from migrationsuite.reports import InMemoryReportSink
from migrationsuite.rollback import RollbackConfig, RollbackEngine, next_steps
from migrationsuite.stores import InMemoryStore
from tests.fixtures import BASE_TIME

STARTED = BASE_TIME + timedelta(days=30)


def customers(count: int, *, start: int = 1, created_at=BASE_TIME) -> list[dict]:
    return [
        {
            "id": i,
            "customer_code": f"C-{i:05d}",
            "company_name": f"Customer {i}",
            "email": f"c{i}@example.com",
            "created_at": created_at,
        }
        for i in range(start, start + count)
    ]


def session_for(*entities: str, started_at=STARTED) -> MigrationSession:
    session = MigrationSession(started_at=started_at)
    for spec in specs_for(entities):
        session.add_entity(spec.name, spec.dependency_names)
    return session


@pytest.fixture
def migrated_target(target: InMemoryStore) -> InMemoryStore:
    """Target holding 3 pre-existing customers and 4 written by the run."""
    target.seed("customers", customers(3))
    target.seed("customers", customers(4, start=4, created_at=STARTED + timedelta(minutes=5)))
    return target


class TestStrategySelection:
    """Tests for RollbackEngine.select_strategy."""

    def test_trigger_defaults(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, target.clone(), enable_tracing=False)

        assert engine.select_strategy(RollbackTrigger.TIMEOUT) == RollbackStrategyKind.INCREMENTAL
        assert engine.select_strategy(RollbackTrigger.SYSTEM_ERROR) == RollbackStrategyKind.SNAPSHOT
        assert (
            engine.select_strategy(RollbackTrigger.VALIDATION_FAILURE)
            == RollbackStrategyKind.SELECTIVE
        )

    def test_window_selects_partial(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, enable_tracing=False)

        strategy = engine.select_strategy(RollbackTrigger.MANUAL, window=TimeWindow(start=STARTED))

        assert strategy == RollbackStrategyKind.PARTIAL

    def test_backup_strategies_need_a_backup(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, enable_tracing=False)

        assert not engine.has_backup
        with pytest.raises(InvalidRollbackStrategyError):
            engine.select_strategy(RollbackTrigger.MANUAL)

    def test_partial_needs_a_window(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, enable_tracing=False)

        with pytest.raises(InvalidRollbackStrategyError):
            engine.select_strategy(RollbackTrigger.MANUAL, RollbackStrategyKind.PARTIAL)

    @pytest.mark.asyncio
    async def test_unknown_tables_are_rejected(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, target.clone(), enable_tracing=False)

        with pytest.raises(InvalidRollbackStrategyError, match="orders"):
            await engine.rollback(
                session_for("customers"),
                RollbackTrigger.MANUAL,
                strategy=RollbackStrategyKind.SELECTIVE,
                tables=["orders"],
            )

    @pytest.mark.asyncio
    async def test_incremental_needs_a_started_session(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, enable_tracing=False)

        with pytest.raises(InvalidRollbackStrategyError):
            await engine.rollback(session_for("customers", started_at=None), RollbackTrigger.TIMEOUT)


class TestIncrementalRollback:
    """Tests for incremental rollback."""

    @pytest.mark.asyncio
    async def test_restores_the_pre_run_count(self, migrated_target: InMemoryStore) -> None:
        engine = RollbackEngine(migrated_target, enable_tracing=False)

        report = await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

        assert report.strategy == RollbackStrategyKind.INCREMENTAL
        assert report.succeeded
        assert await migrated_target.count("customers") == 3
        table = report.table("customers")
        assert (table.before_count, table.after_count, table.rows_deleted) == (7, 3, 4)
        assert report.stats.records_rolled_back == 4
        assert report.window == TimeWindow(start=STARTED)

    @pytest.mark.asyncio
    async def test_children_are_deleted_before_parents(self, target: InMemoryStore) -> None:
        written = STARTED + timedelta(minutes=1)
        target.seed("suppliers", [{"id": 1, "supplier_code": "V-001", "created_at": written}])
        target.seed(
            "products",
            [{"id": 1, "sku": "SKU-1", "supplier_id": 1, "created_at": written}],
        )
        engine = RollbackEngine(target, enable_tracing=False)

        report = await engine.rollback(session_for("suppliers", "products"), RollbackTrigger.TIMEOUT)

        assert [t.table for t in report.tables] == ["products", "suppliers"]
        assert report.findings == ()

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_deleting(self, migrated_target: InMemoryStore) -> None:
        engine = RollbackEngine(migrated_target, enable_tracing=False)

        report = await engine.rollback(
            session_for("customers"), RollbackTrigger.TIMEOUT, dry_run=True
        )

        assert report.dry_run
        assert report.table("customers").rows_deleted == 4
        assert await migrated_target.count("customers") == 7

    @pytest.mark.asyncio
    async def test_ignores_an_unreachable_backup(self, migrated_target: InMemoryStore) -> None:
        """Incremental rollback never touches the backup."""
        backup = migrated_target.clone(name="backup", snapshot_at=utc_now() - timedelta(hours=48))
        backup.reachable = False
        engine = RollbackEngine(migrated_target, backup, enable_tracing=False)

        report = await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

        assert report.strategy == RollbackStrategyKind.INCREMENTAL
        assert report.succeeded
        assert report.findings == ()
        assert await migrated_target.count("customers") == 3


class TestPartialRollback:
    """Tests for partial rollback."""

    @pytest.mark.asyncio
    async def test_deletes_only_inside_the_window(self, target: InMemoryStore) -> None:
        target.seed("customers", customers(2, created_at=STARTED + timedelta(minutes=1)))
        target.seed("customers", customers(3, start=3, created_at=STARTED + timedelta(minutes=10)))
        engine = RollbackEngine(target, enable_tracing=False)
        window = TimeWindow(start=STARTED, end=STARTED + timedelta(minutes=5))

        report = await engine.rollback(session_for("customers"), RollbackTrigger.MANUAL, window=window)

        assert report.strategy == RollbackStrategyKind.PARTIAL
        assert report.window == window
        assert [r["id"] for r in target.rows("customers")] == [3, 4, 5]


class TestSnapshotRollback:
    """Tests for snapshot rollback."""

    @pytest.mark.asyncio
    async def test_restores_the_backup(self, target: InMemoryStore) -> None:
        target.seed("customers", customers(3))
        backup = target.clone(name="backup", snapshot_at=utc_now())
        target.seed("customers", customers(5, start=4, created_at=STARTED))
        await target.delete_between("customers", "created_at", BASE_TIME, BASE_TIME)
        engine = RollbackEngine(target, backup, enable_tracing=False)

        report = await engine.rollback(session_for("customers"), RollbackTrigger.MANUAL)

        assert report.strategy == RollbackStrategyKind.SNAPSHOT
        assert target.rows("customers") == backup.rows("customers")
        table = report.table("customers")
        assert (table.before_count, table.rows_restored, table.after_count) == (5, 3, 3)
        assert [c.name for c in report.checkpoints][:2] == ["rollback_start", "table_rollback"]

    @pytest.mark.asyncio
    async def test_missing_backup_table_fails(self, target: InMemoryStore) -> None:
        backup = target.clone(name="backup")
        backup.drop_table("customers")
        sink = InMemoryReportSink()
        engine = RollbackEngine(target, backup, sink=sink, enable_tracing=False)

        with pytest.raises(RollbackError) as exc_info:
            await engine.rollback(session_for("customers"), RollbackTrigger.MANUAL)

        report = exc_info.value.report
        assert report is not None
        assert report.status == RollbackStatus.FAILED
        assert "customers" in report.error
        assert sink.last_rollback_report is report

    @pytest.mark.asyncio
    async def test_stale_backup_is_reported(self, target: InMemoryStore) -> None:
        backup = target.clone(name="backup", snapshot_at=utc_now() - timedelta(hours=48))
        engine = RollbackEngine(target, backup, enable_tracing=False)

        report = await engine.rollback(session_for("customers"), RollbackTrigger.MANUAL)

        assert [f.code for f in report.findings] == ["BACKUP_STALE"]
        assert "Refresh the backup before the next migration attempt" in report.recommendations


class TestSelectiveRollback:
    """Tests for selective rollback."""

    @pytest.fixture
    def broken_target(self, target: InMemoryStore) -> InMemoryStore:
        target.seed(
            "suppliers",
            [{"id": 1, "supplier_code": "V-001", "company_name": "V", "email": "v@x.test"}],
        )
        target.seed("products", [{"id": 1, "sku": "SKU-1", "name": "Bolt", "supplier_id": 1}])
        return target

    @pytest.mark.asyncio
    async def test_auto_detects_problematic_tables(self, broken_target: InMemoryStore) -> None:
        backup = broken_target.clone(name="backup")
        broken_target.seed(
            "products", [{"id": 2, "sku": "SKU-2", "name": "Nut", "supplier_id": 99}]
        )
        broken_target.seed(
            "suppliers",
            [{"id": 2, "supplier_code": "V-002", "company_name": "W", "email": "w@x.test"}],
        )
        engine = RollbackEngine(broken_target, backup, enable_tracing=False)

        report = await engine.rollback(
            session_for("suppliers", "products"), RollbackTrigger.VALIDATION_FAILURE
        )

        assert report.strategy == RollbackStrategyKind.SELECTIVE
        assert [t.table for t in report.tables] == ["products"]
        assert await broken_target.count("products") == 1
        # suppliers were not problematic and keep the new row
        assert await broken_target.count("suppliers") == 2

    @pytest.mark.asyncio
    async def test_explicit_tables(self, broken_target: InMemoryStore) -> None:
        backup = broken_target.clone(name="backup")
        broken_target.seed(
            "suppliers",
            [{"id": 2, "supplier_code": "V-002", "company_name": "W", "email": "w@x.test"}],
        )
        engine = RollbackEngine(broken_target, backup, enable_tracing=False)

        report = await engine.rollback(
            session_for("suppliers", "products"),
            RollbackTrigger.BUSINESS_RULE_VIOLATION,
            tables=["suppliers"],
        )

        assert [t.table for t in report.tables] == ["suppliers"]
        assert await broken_target.count("suppliers") == 1

    @pytest.mark.asyncio
    async def test_nothing_to_restore(self, broken_target: InMemoryStore) -> None:
        engine = RollbackEngine(broken_target, broken_target.clone(), enable_tracing=False)

        report = await engine.rollback(
            session_for("suppliers", "products"), RollbackTrigger.VALIDATION_FAILURE
        )

        assert report.succeeded
        assert report.tables == ()


class TestEngine:
    """Tests for events, sinks, failures and readiness."""

    @pytest.mark.asyncio
    async def test_publishes_events_and_writes_report(
        self,
        migrated_target: InMemoryStore,
        channel: InMemoryEventChannel,
        sink: InMemoryReportSink,
    ) -> None:
        engine = RollbackEngine(
            migrated_target, publisher=channel, sink=sink, enable_tracing=False
        )

        report = await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

        (started,) = channel.events_of(RollbackStarted)
        (completed,) = channel.events_of(RollbackCompleted)
        assert started.strategy == RollbackStrategyKind.INCREMENTAL
        assert completed.records_rolled_back == 4
        assert sink.rollback_reports == [report]

    @pytest.mark.asyncio
    async def test_failing_sink_still_returns_the_report(
        self, migrated_target: InMemoryStore
    ) -> None:
        class FullDiskSink(InMemoryReportSink):
            async def write_rollback_report(self, report):
                raise OSError("disk full")

        engine = RollbackEngine(migrated_target, sink=FullDiskSink(), enable_tracing=False)

        report = await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

        assert report.succeeded
        assert await migrated_target.count("customers") == 3

    @pytest.mark.asyncio
    async def test_unreachable_target_fails_with_report(self, migrated_target: InMemoryStore) -> None:
        migrated_target.reachable = False
        engine = RollbackEngine(migrated_target, enable_tracing=False)

        with pytest.raises(RollbackError) as exc_info:
            await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

        report = exc_info.value.report
        assert report.status == RollbackStatus.FAILED
        assert report.stats.errors_encountered == 1
        assert report.recommendations[0].startswith("Investigate and resolve rollback errors")

    @pytest.mark.asyncio
    async def test_time_limit(self, migrated_target: InMemoryStore) -> None:
        class SlowStore(InMemoryStore):
            async def delete_between(self, *args, **kwargs):
                await asyncio.sleep(1)
                return await super().delete_between(*args, **kwargs)

        slow = SlowStore.with_target_schema()
        slow.seed("customers", migrated_target.rows("customers"))
        engine = RollbackEngine(
            slow, config=RollbackConfig(max_rollback_time_seconds=0.05), enable_tracing=False
        )

        with pytest.raises(RollbackError, match="exceeded"):
            await engine.rollback(session_for("customers"), RollbackTrigger.TIMEOUT)

    @pytest.mark.asyncio
    async def test_readiness_without_backup(self, target: InMemoryStore) -> None:
        engine = RollbackEngine(target, enable_tracing=False)

        findings = await engine.check_readiness(session_for("customers", started_at=None))

        assert sorted(f.code for f in findings) == ["BACKUP_UNAVAILABLE", "SESSION_NOT_STARTED"]
        assert not any(f.is_critical for f in findings)

    @pytest.mark.asyncio
    async def test_readiness_with_incomplete_backup(self, target: InMemoryStore) -> None:
        backup = target.clone(name="backup")
        backup.drop_table("customers")
        engine = RollbackEngine(target, backup, enable_tracing=False)

        findings = await engine.check_readiness(session_for("customers"))

        assert [f.code for f in findings] == ["BACKUP_TABLE_MISSING"]
        assert findings[0].kind == FindingKind.BACKUP_INTEGRITY
        assert findings[0].is_critical

    def test_next_steps_by_trigger(self) -> None:
        assert next_steps(RollbackTrigger.TIMEOUT)[0].startswith("Optimize migration throughput")
        assert next_steps(RollbackTrigger.MANUAL)[0].startswith("Review the rollback cause")
