"""
Unit tests for MigrationOrchestrator.

Runs whole sessions against in-memory stores and checks phases, reports,
rollback on failure and operator cancellation.
"""

from dataclasses import replace
from typing import Any

import pytest

from migrationsuite.entities import CUSTOMERS, SUPPLIERS, Entity, get_spec
from migrationsuite.events import (
    BatchCompleted,
    EntityStatusChanged,
    InMemoryEventChannel,
    MigrationEvent,
    PhaseChanged,
    RollbackStarted,
)
from migrationsuite.exceptions import (
    DependencyCycleError,
    MigrationAbortedError,
    MigrationStateError,
    OrchestrationError,
    StoreError,
)
from migrationsuite.models import (
    EntityStatus,
    MigrationConfig,
    MigrationPhase,
    MigrationSession,
    OverallStatus,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
)
from migrationsuite.monitor import MonitorConfig
from migrationsuite.orchestrator import MigrationOrchestrator
from migrationsuite.reports import InMemoryReportSink
from migrationsuite.stores import InMemoryStore
from tests.fixtures import (
    BASE_TIME,
    customer_rows,
    product_rows,
    seed_full_dataset,
    vendor_rows,
)


class FailingTableStore(InMemoryStore):
    """Target whose inserts into one table always fail."""

    failing_table = "products"

    async def insert_batch(
        self,
        table: str,
        records: Any,
        conflict_keys: Any = None,
    ) -> int:
        if table == self.failing_table:
            raise StoreError("insert_batch", "disk full", table=table)
        return await super().insert_batch(table, records, conflict_keys)


def make_orchestrator(
    source: InMemoryStore,
    target: InMemoryStore,
    config: MigrationConfig,
    **kwargs: Any,
) -> MigrationOrchestrator:
    return MigrationOrchestrator(source, target, config, enable_tracing=False, **kwargs)


class TestPlanning:
    """Tests for plan, create_session and describe."""

    def test_plan_orders_dependencies_first(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(source, target, fast_config)

        names = [spec.name for spec in orchestrator.plan(["inventory", "products", Entity.SUPPLIERS])]

        assert names == ["suppliers", "products", "inventory"]

    def test_unknown_entity(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(source, target, fast_config)

        with pytest.raises(OrchestrationError, match="Unknown entity"):
            orchestrator.plan(["warehouses"])

    def test_create_session_uses_default_config(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(source, target, fast_config)

        session = orchestrator.create_session(["products", "suppliers"])

        assert session.config is fast_config
        assert session.entity_names == ["suppliers", "products"]
        assert session.state_for("products").dependencies == ("suppliers",)

    def test_describe_lists_dependencies(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        described = make_orchestrator(source, target, fast_config).describe()

        assert list(described)[:2] == ["customers", "suppliers"]
        assert described["upload_history"] == ["suppliers", "price_lists"]

    @pytest.mark.asyncio
    async def test_cycle_is_rejected_before_any_io(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        channel: InMemoryEventChannel,
        fast_config: MigrationConfig,
    ) -> None:
        specs = [
            replace(CUSTOMERS, dependencies=(Entity.SUPPLIERS,)),
            replace(SUPPLIERS, dependencies=(Entity.CUSTOMERS,)),
        ]
        source.reachable = False
        orchestrator = make_orchestrator(
            source, target, fast_config, specs=specs, publisher=channel
        )

        with pytest.raises(DependencyCycleError):
            await orchestrator.execute(MigrationSession(config=fast_config))

        assert channel.history == []


class TestExecute:
    """Tests for successful runs."""

    @pytest.mark.asyncio
    async def test_customers_only(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        channel: InMemoryEventChannel,
        sink: InMemoryReportSink,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(25))
        config = replace(fast_config, batch_size=10)
        orchestrator = make_orchestrator(source, target, config, publisher=channel, sink=sink)
        session = orchestrator.create_session(["customers"])

        report = await orchestrator.execute(session)

        assert report.status == OverallStatus.SUCCESS
        assert report.phase == MigrationPhase.COMPLETED
        assert report.stats.migrated == 25
        assert await target.count("customers") == 25
        assert [event.phase for event in channel.events_of(PhaseChanged)] == [
            MigrationPhase.PRE_VALIDATION,
            MigrationPhase.MIGRATING,
            MigrationPhase.POST_VALIDATION,
            MigrationPhase.COMPLETED,
        ]
        assert sink.last_migration_report is report
        assert session.estimate is not None
        assert session.estimate["total"]["records"] == 25

    @pytest.mark.asyncio
    async def test_full_dataset(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        fast_config: MigrationConfig,
    ) -> None:
        expected = seed_full_dataset(source)
        orchestrator = make_orchestrator(source, target, replace(fast_config, batch_size=4))
        session = orchestrator.create_session()

        report = await orchestrator.execute(session)

        assert report.status == OverallStatus.SUCCESS
        assert report.stats.migrated == sum(expected.values())
        for entity, count in expected.items():
            assert session.state_for(entity).migrated == count
            assert await target.count(entity) == count

    @pytest.mark.asyncio
    async def test_entities_start_after_their_dependencies_complete(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        channel: InMemoryEventChannel,
        fast_config: MigrationConfig,
    ) -> None:
        expected = seed_full_dataset(source)
        orchestrator = make_orchestrator(
            source, target, replace(fast_config, batch_size=4), publisher=channel
        )

        await orchestrator.execute(orchestrator.create_session())

        changes = channel.events_of(EntityStatusChanged)
        position = {(e.entity, e.status): i for i, e in enumerate(changes)}
        dependent = [name for name in expected if get_spec(name).dependency_names]
        assert dependent
        for name in expected:
            started = position[(name, EntityStatus.IN_PROGRESS)]
            assert started < position[(name, EntityStatus.COMPLETED)]
            for dependency in get_spec(name).dependency_names:
                assert position[(dependency, EntityStatus.COMPLETED)] < started

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(5))
        orchestrator = make_orchestrator(source, target, replace(fast_config, dry_run=True))

        report = await orchestrator.execute(orchestrator.create_session(["customers"]))

        assert report.status == OverallStatus.SUCCESS
        assert report.dry_run
        assert report.stats.migrated == 5
        assert await target.count("customers") == 0
        assert any("Dry run" in rec for rec in report.recommendations)

    @pytest.mark.asyncio
    async def test_completed_session_cannot_run_again(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(2))
        orchestrator = make_orchestrator(source, target, fast_config)
        session = orchestrator.create_session(["customers"])
        await orchestrator.execute(session)

        with pytest.raises(MigrationStateError):
            await orchestrator.execute(session)

    @pytest.mark.asyncio
    async def test_monitor_runs_for_the_session(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        channel: InMemoryEventChannel,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(3))
        orchestrator = make_orchestrator(
            source,
            target,
            fast_config,
            publisher=channel,
            enable_monitor=True,
            monitor_config=MonitorConfig(refresh_interval_seconds=60),
        )

        await orchestrator.execute(orchestrator.create_session(["customers"]))

        monitor = orchestrator.monitor
        assert monitor is not None
        assert not monitor.is_running
        assert monitor.latest_sample is not None
        assert monitor.latest_sample.migrated == 3
        assert [step.name for step in monitor.step_statuses] == ["customers"]


class TestStatus:
    """Tests for get_status."""

    def test_no_status_before_a_run(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        assert make_orchestrator(source, target, fast_config).get_status() is None

    @pytest.mark.asyncio
    async def test_status_after_a_run(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        source.seed("legacy_customers", customer_rows(4))
        orchestrator = make_orchestrator(source, target, fast_config)
        session = orchestrator.create_session(["customers"])
        await orchestrator.execute(session)

        status = orchestrator.get_status()

        assert status is not None
        assert status.session_id == session.id
        assert status.phase == MigrationPhase.COMPLETED
        assert status.progress_percent == 100.0
        assert status.current_entity is None
        assert not status.cancel_requested


class TestFailures:
    """Tests for halted and aborted runs."""

    @pytest.mark.asyncio
    async def test_critical_pre_validation_halts_before_writes(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        sink: InMemoryReportSink,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(3))
        source.seed("legacy_vendors", vendor_rows(1, company_name=None))
        orchestrator = make_orchestrator(source, target, fast_config, sink=sink)

        report = await orchestrator.execute(orchestrator.create_session(["customers", "suppliers"]))

        assert report.status == OverallStatus.FAILED
        assert report.phase == MigrationPhase.FAILED
        assert [f.code for f in report.critical_findings] == ["MISSING_SUPPLIER_NAME"]
        assert report.rollback is None
        assert await target.count("customers") == 0
        assert sink.last_migration_report is report

    @pytest.mark.asyncio
    async def test_entity_failure_rolls_back_incrementally(
        self,
        source: InMemoryStore,
        channel: InMemoryEventChannel,
        sink: InMemoryReportSink,
        fast_config: MigrationConfig,
    ) -> None:
        target = FailingTableStore.with_target_schema()
        target.seed(
            "customers",
            [
                {
                    "customer_code": "C-90001",
                    "company_name": "Existing",
                    "email": "existing@example.com",
                    "created_at": BASE_TIME,
                }
            ],
        )
        source.seed("legacy_customers", customer_rows(3))
        source.seed("legacy_vendors", vendor_rows(2))
        source.seed("legacy_products", product_rows(3))
        config = replace(fast_config, fail_fast=True, max_retries=0)
        orchestrator = make_orchestrator(source, target, config, publisher=channel, sink=sink)
        session = orchestrator.create_session(["customers", "suppliers", "products"])

        with pytest.raises(MigrationAbortedError) as exc_info:
            await orchestrator.execute(session)

        report = exc_info.value.report
        assert report.status == OverallStatus.FAILED
        assert report.phase == MigrationPhase.FAILED
        assert report.rollback is not None
        assert report.rollback.strategy == RollbackStrategyKind.INCREMENTAL
        assert report.rollback.status == RollbackStatus.COMPLETED
        assert session.state_for("products").status == EntityStatus.FAILED
        assert await target.count("customers") == 1
        assert await target.count("suppliers") == 0
        assert MigrationPhase.ROLLING_BACK in [e.phase for e in channel.events_of(PhaseChanged)]
        assert sink.last_rollback_report == report.rollback

    @pytest.mark.asyncio
    async def test_failure_without_rollback(
        self,
        source: InMemoryStore,
        fast_config: MigrationConfig,
    ) -> None:
        target = FailingTableStore.with_target_schema()
        target.failing_table = "customers"
        source.seed("legacy_customers", customer_rows(3))
        config = replace(fast_config, fail_fast=True, max_retries=0, rollback_enabled=False)
        orchestrator = make_orchestrator(source, target, config)

        with pytest.raises(MigrationAbortedError) as exc_info:
            await orchestrator.execute(orchestrator.create_session(["customers"]))

        assert exc_info.value.report.rollback is None
        assert exc_info.value.report.errors[0].entity == "customers"

    @pytest.mark.asyncio
    async def test_unexpected_rollback_error_keeps_the_failure_report(
        self,
        source: InMemoryStore,
        sink: InMemoryReportSink,
        fast_config: MigrationConfig,
    ) -> None:
        class BrokenRollbackChannel(InMemoryEventChannel):
            async def publish(self, event: MigrationEvent) -> None:
                if isinstance(event, RollbackStarted):
                    raise RuntimeError("event bus closed")
                await super().publish(event)

        target = FailingTableStore.with_target_schema()
        target.failing_table = "customers"
        source.seed("legacy_customers", customer_rows(3))
        config = replace(fast_config, fail_fast=True, max_retries=0)
        orchestrator = make_orchestrator(
            source, target, config, publisher=BrokenRollbackChannel(), sink=sink
        )

        with pytest.raises(MigrationAbortedError) as exc_info:
            await orchestrator.execute(orchestrator.create_session(["customers"]))

        report = exc_info.value.report
        assert report.phase == MigrationPhase.FAILED
        assert report.rollback is None
        assert [e.stage for e in report.errors] == ["migrating", "rolling_back"]
        assert sink.last_migration_report is report

    @pytest.mark.asyncio
    async def test_entity_with_failed_dependency_is_skipped(
        self,
        source: InMemoryStore,
        fast_config: MigrationConfig,
    ) -> None:
        target = FailingTableStore.with_target_schema()
        target.failing_table = "suppliers"
        source.seed("legacy_vendors", vendor_rows(2))
        source.seed("legacy_products", product_rows(3))
        config = replace(
            fast_config,
            fail_fast=True,
            max_retries=0,
            rollback_enabled=False,
            stop_on_entity_failure=False,
        )
        orchestrator = make_orchestrator(source, target, config)
        session = orchestrator.create_session(["suppliers", "products"])

        with pytest.raises(MigrationAbortedError) as exc_info:
            await orchestrator.execute(session)

        assert session.state_for("suppliers").status == EntityStatus.FAILED
        assert session.state_for("products").status == EntityStatus.PENDING
        assert [e.entity for e in exc_info.value.report.errors] == ["suppliers", "products"]
        assert await target.count("products") == 0


class TestRollbackStrategy:
    """Tests for the automatic rollback strategy choice."""

    def test_backup_strategy_without_backup_falls_back(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(source, target, fast_config)
        session = orchestrator.create_session(["customers"])

        strategy = orchestrator.rollback_strategy(session, RollbackTrigger.DATA_CORRUPTION)

        assert strategy == RollbackStrategyKind.INCREMENTAL

    def test_trigger_default_with_backup(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(source, target, fast_config, backup=target.clone())
        session = orchestrator.create_session(["customers"])

        assert (
            orchestrator.rollback_strategy(session, RollbackTrigger.VALIDATION_FAILURE)
            == RollbackStrategyKind.SELECTIVE
        )

    def test_disabled_backup_is_ignored(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        orchestrator = make_orchestrator(
            source, target, replace(fast_config, backup_enabled=False), backup=target.clone()
        )
        session = orchestrator.create_session(["customers"])

        assert (
            orchestrator.rollback_strategy(session, RollbackTrigger.SYSTEM_ERROR)
            == RollbackStrategyKind.INCREMENTAL
        )

    def test_configured_strategy_wins(
        self, source: InMemoryStore, target: InMemoryStore, fast_config: MigrationConfig
    ) -> None:
        config = replace(fast_config, rollback_strategy=RollbackStrategyKind.SELECTIVE)
        orchestrator = make_orchestrator(source, target, config)
        session = orchestrator.create_session(["customers"])

        assert (
            orchestrator.rollback_strategy(session, RollbackTrigger.TIMEOUT)
            == RollbackStrategyKind.SELECTIVE
        )


class TestOperatorControl:
    """Tests for cancel and resume."""

    @pytest.mark.asyncio
    async def test_cancel_then_resume(
        self,
        source: InMemoryStore,
        target: InMemoryStore,
        channel: InMemoryEventChannel,
        fast_config: MigrationConfig,
    ) -> None:
        source.seed("legacy_customers", customer_rows(25))
        config = replace(fast_config, batch_size=10)
        orchestrator = make_orchestrator(source, target, config, publisher=channel)
        session = orchestrator.create_session(["customers"])

        def cancel_once(event: BatchCompleted) -> None:
            channel.unsubscribe(BatchCompleted, cancel_once)
            orchestrator.cancel()

        channel.subscribe(BatchCompleted, cancel_once)

        report = await orchestrator.execute(session)

        assert report.phase == MigrationPhase.CANCELLED
        assert session.state_for("customers").cursor_offset == 10
        assert await target.count("customers") == 10

        report = await orchestrator.execute(session)

        assert report.phase == MigrationPhase.COMPLETED
        assert report.status == OverallStatus.COMPLETED_WITH_WARNINGS
        assert session.state_for("customers").migrated == 25
        assert await target.count("customers") == 25
