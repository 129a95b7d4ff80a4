"""
Unit tests for migration models: state machines, configuration,
entity counters and the computed report status.
"""

from dataclasses import replace

import pytest

from migrationsuite.exceptions import MigrationStateError, StoreError
from migrationsuite.models import (
    BatchResult,
    EntityMigrationState,
    EntityStatus,
    FindingKind,
    MigrationConfig,
    MigrationPhase,
    MigrationReport,
    MigrationSession,
    OverallStatus,
    RecordFailure,
    RollbackStrategyKind,
    RollbackTrigger,
    Severity,
    ValidationFinding,
    ValidationGate,
)


def batch(
    *,
    number: int = 1,
    read: int = 10,
    written: int = 10,
    failures: tuple[RecordFailure, ...] = (),
    write_failed: int = 0,
    attempts: int = 1,
    write_error: str | None = None,
) -> BatchResult:
    return BatchResult(
        entity="customers",
        batch_number=number,
        offset=0,
        rows_read=read,
        rows_transformed=read - len(failures),
        transform_failures=failures,
        rows_written=written,
        write_failed=write_failed,
        attempts=attempts,
        write_error=write_error,
    )


def finding(severity: Severity) -> ValidationFinding:
    return ValidationFinding(
        kind=FindingKind.MISSING_REQUIRED_FIELD,
        code="MISSING_CUSTOMER_EMAILS",
        severity=severity,
        gate=ValidationGate.PRE_MIGRATION,
        entity="customers",
        count=1,
        message="1 customer without email",
    )


def completed_session(**config: object) -> MigrationSession:
    session = MigrationSession(config=replace(MigrationConfig(), **config))
    state = session.add_entity("customers")
    state.transition_to(EntityStatus.IN_PROGRESS)
    state.set_total(10)
    state.record_batch(batch())
    state.complete()
    for phase in (
        MigrationPhase.PRE_VALIDATION,
        MigrationPhase.MIGRATING,
        MigrationPhase.POST_VALIDATION,
        MigrationPhase.COMPLETED,
    ):
        session.set_phase(phase)
    return session


class TestMigrationPhase:
    """Tests for the session state machine."""

    def test_happy_path(self) -> None:
        assert MigrationPhase.PENDING.can_transition_to(MigrationPhase.PRE_VALIDATION)
        assert MigrationPhase.MIGRATING.can_transition_to(MigrationPhase.ROLLING_BACK)
        assert MigrationPhase.POST_VALIDATION.can_transition_to(MigrationPhase.COMPLETED)

    def test_cancelled_session_can_resume(self) -> None:
        assert MigrationPhase.CANCELLED.can_transition_to(MigrationPhase.PRE_VALIDATION)
        assert not MigrationPhase.CANCELLED.is_terminal

    @pytest.mark.parametrize("phase", [MigrationPhase.COMPLETED, MigrationPhase.FAILED])
    def test_terminal_phases_are_final(self, phase: MigrationPhase) -> None:
        assert phase.is_terminal
        assert not any(phase.can_transition_to(target) for target in MigrationPhase)

    def test_invalid_transition_raises(self) -> None:
        session = MigrationSession()

        with pytest.raises(MigrationStateError):
            session.set_phase(MigrationPhase.COMPLETED)


class TestEntityStatus:
    """Tests for the entity state machine."""

    def test_transitions(self) -> None:
        assert EntityStatus.PENDING.can_transition_to(EntityStatus.IN_PROGRESS)
        assert EntityStatus.FAILED.can_transition_to(EntityStatus.PENDING)
        assert not EntityStatus.COMPLETED.can_transition_to(EntityStatus.PENDING)
        assert not EntityStatus.PENDING.can_transition_to(EntityStatus.COMPLETED)


class TestMigrationConfig:
    """Tests for MigrationConfig."""

    def test_defaults(self) -> None:
        config = MigrationConfig()

        assert config.batch_size == 1000
        assert config.max_retries == 3
        assert config.max_failure_rate == 0.05
        assert config.rollback_enabled
        assert not config.dry_run

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"batch_size": 0},
            {"max_retries": -1},
            {"retry_base_delay_ms": 100, "retry_max_delay_ms": 10},
            {"batch_timeout_seconds": 0},
            {"pipeline_timeout_seconds": 0},
            {"progress_report_interval": 0},
            {"max_failure_rate": 1.5},
        ],
    )
    def test_invalid_values(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            MigrationConfig(**kwargs)

    def test_dict_round_trip(self) -> None:
        config = MigrationConfig(
            batch_size=250, dry_run=True, rollback_strategy=RollbackStrategyKind.PARTIAL
        )

        assert MigrationConfig.from_dict(config.to_dict()) == config


class TestEntityMigrationState:
    """Tests for counters and their invariant."""

    def test_record_batch(self) -> None:
        state = EntityMigrationState(entity="customers", total=20)
        failure = RecordFailure(key="C-1", reason="missing customer_code")

        state.record_batch(batch(written=9, failures=(failure,), attempts=3))

        assert state.migrated == 9
        assert state.failed == 1
        assert state.cursor_offset == 10
        assert state.retries == 2
        assert state.failure_samples == [failure]
        assert state.failure_rate == 0.1

    def test_write_failure_adds_batch_sample(self) -> None:
        state = EntityMigrationState(entity="customers", total=10)

        state.record_batch(batch(number=4, written=0, write_failed=10, write_error="reset"))

        assert state.failed == 10
        assert state.failure_samples == [RecordFailure(key="batch:4", reason="reset")]

    def test_batch_cannot_exceed_total(self) -> None:
        state = EntityMigrationState(entity="customers", total=5)

        with pytest.raises(MigrationStateError):
            state.record_batch(batch())

    def test_fail_remaining(self) -> None:
        state = EntityMigrationState(entity="customers", total=30)
        state.transition_to(EntityStatus.IN_PROGRESS)
        state.record_batch(batch())

        state.fail_remaining("store unreachable")

        assert state.status == EntityStatus.FAILED
        assert state.migrated == 10
        assert state.failed == 20
        assert state.last_error == "store unreachable"

    def test_complete_requires_every_row(self) -> None:
        state = EntityMigrationState(entity="customers", total=30)
        state.transition_to(EntityStatus.IN_PROGRESS)
        state.record_batch(batch())

        with pytest.raises(MigrationStateError):
            state.complete()

    def test_reset(self) -> None:
        state = EntityMigrationState(entity="customers", total=30)
        state.transition_to(EntityStatus.IN_PROGRESS)
        state.record_batch(batch())
        state.fail_remaining("boom")

        state.reset()

        assert state.status == EntityStatus.PENDING
        assert (state.total, state.migrated, state.failed, state.cursor_offset) == (0, 0, 0, 0)

    def test_set_total_below_processed(self) -> None:
        state = EntityMigrationState(entity="customers", total=30)
        state.record_batch(batch())

        with pytest.raises(MigrationStateError):
            state.set_total(5)


class TestMigrationSession:
    """Tests for session helpers."""

    def test_dependencies_completed(self) -> None:
        session = MigrationSession()
        session.add_entity("suppliers")
        session.add_entity("products", ("suppliers",))

        assert not session.dependencies_completed("products")
        with pytest.raises(MigrationStateError):
            session.begin_entity("products")

    def test_duplicate_entity(self) -> None:
        session = MigrationSession()
        session.add_entity("customers")

        with pytest.raises(MigrationStateError):
            session.add_entity("customers")

    def test_record_error_uses_classification(self) -> None:
        session = MigrationSession()

        record = session.record_error("migrating", StoreError("count", "timeout"), entity="customers")

        assert record.error_code == "STORE_ERROR"
        assert record.recoverability == "transient"
        assert session.errors == [record]

    def test_stats_aggregate_entities(self) -> None:
        session = completed_session()

        stats = session.stats

        assert stats.total == 10
        assert stats.migrated == 10
        assert stats.entities_completed == 1
        assert stats.failure_rate == 0.0

    def test_error_rate_is_relative_to_processed_rows(self) -> None:
        session = MigrationSession()
        state = session.add_entity("customers")
        state.total = 1000
        state.migrated = 30
        state.failed = 10

        stats = session.stats

        assert stats.error_rate == 0.25
        assert stats.failure_rate == 0.01
        assert stats.to_dict()["error_rate"] == 0.25
        assert MigrationSession().stats.error_rate == 0.0


class TestMigrationReport:
    """Tests for the computed overall status."""

    def test_success(self) -> None:
        report = MigrationReport.from_session(completed_session())

        assert report.status == OverallStatus.SUCCESS

    def test_warnings(self) -> None:
        session = completed_session()
        session.add_findings([finding(Severity.WARNING)])

        report = MigrationReport.from_session(session)

        assert report.status == OverallStatus.COMPLETED_WITH_WARNINGS
        assert any("validation findings" in rec for rec in report.recommendations)

    def test_critical_finding_fails(self) -> None:
        session = completed_session()
        session.add_findings([finding(Severity.CRITICAL)])

        assert MigrationReport.from_session(session).status == OverallStatus.FAILED

    def test_unfinished_session_fails(self) -> None:
        assert MigrationReport.from_session(MigrationSession()).status == OverallStatus.FAILED

    def test_dry_run_recommendation(self) -> None:
        report = MigrationReport.from_session(completed_session(dry_run=True))

        assert report.dry_run
        assert any("Dry run" in rec for rec in report.recommendations)

    def test_to_dict_is_versioned(self) -> None:
        document = MigrationReport.from_session(completed_session()).to_dict()

        assert document["version"] == "1.0"
        assert document["status"] == "SUCCESS"
        assert document["entities"][0]["entity"] == "customers"
        assert document["rollback"] is None


class TestRollbackStrategyKind:
    """Tests for trigger defaults."""

    @pytest.mark.parametrize(
        ("trigger", "strategy"),
        [
            (RollbackTrigger.DATA_CORRUPTION, RollbackStrategyKind.SNAPSHOT),
            (RollbackTrigger.SYSTEM_ERROR, RollbackStrategyKind.SNAPSHOT),
            (RollbackTrigger.MANUAL, RollbackStrategyKind.SNAPSHOT),
            (RollbackTrigger.VALIDATION_FAILURE, RollbackStrategyKind.SELECTIVE),
            (RollbackTrigger.BUSINESS_RULE_VIOLATION, RollbackStrategyKind.SELECTIVE),
            (RollbackTrigger.TIMEOUT, RollbackStrategyKind.INCREMENTAL),
        ],
    )
    def test_trigger_defaults(
        self, trigger: RollbackTrigger, strategy: RollbackStrategyKind
    ) -> None:
        assert RollbackStrategyKind.for_trigger(trigger) == strategy

    def test_backup_requirement(self) -> None:
        assert RollbackStrategyKind.SNAPSHOT.requires_backup
        assert not RollbackStrategyKind.PARTIAL.requires_backup
