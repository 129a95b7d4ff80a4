"""
Unit tests for report sinks and report parsing.
"""

import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from migrationsuite.models import (
    MigrationPhase,
    MigrationReport,
    MigrationSession,
    OverallStatus,
    RollbackReport,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
)
from migrationsuite.reports import (
    InMemoryReportSink,
    JsonFileReportSink,
    ReportFormatError,
    parse_report,
    read_report,
)

ENDED = datetime(2024, 3, 1, 12, 30, tzinfo=UTC)


@pytest.fixture
def report() -> MigrationReport:
    session = MigrationSession()
    session.add_entity("customers")
    session.started_at = ENDED
    session.ended_at = ENDED
    return MigrationReport.from_session(session)


def rollback_report(session_id) -> RollbackReport:
    return RollbackReport(
        session_id=session_id,
        trigger=RollbackTrigger.MANUAL,
        strategy=RollbackStrategyKind.INCREMENTAL,
        status=RollbackStatus.COMPLETED,
        started_at=ENDED,
        ended_at=ENDED,
    )


class TestJsonFileReportSink:
    """Tests for JsonFileReportSink."""

    @pytest.mark.asyncio
    async def test_writes_versioned_json(self, tmp_path: Path, report: MigrationReport) -> None:
        sink = JsonFileReportSink(tmp_path / "reports")

        location = await sink.write_migration_report(report)

        path = Path(location)
        assert path.name == f"migration-report-{report.session_id}-20240301T123000.000000Z.json"
        document = read_report(path)
        assert document["version"] == "1.0"
        assert document["session_id"] == str(report.session_id)
        assert document["phase"] == MigrationPhase.PENDING.value
        assert document["status"] == OverallStatus.FAILED.value
        assert list(path.parent.glob("*.tmp")) == []

    @pytest.mark.asyncio
    async def test_writes_rollback_reports(self, tmp_path: Path, report: MigrationReport) -> None:
        sink = JsonFileReportSink(tmp_path)

        location = await sink.write_rollback_report(rollback_report(report.session_id))

        document = read_report(location)
        assert Path(location).name.startswith("rollback-report-")
        assert document["strategy"] == "incremental"

    @pytest.mark.asyncio
    async def test_reports_ending_in_the_same_second_keep_both_files(
        self, tmp_path: Path, report: MigrationReport
    ) -> None:
        sink = JsonFileReportSink(tmp_path)
        resumed = replace(report, ended_at=ENDED + timedelta(milliseconds=250))

        first = await sink.write_migration_report(report)
        second = await sink.write_migration_report(resumed)

        assert first != second
        assert len(list(tmp_path.glob("migration-report-*.json"))) == 2


class TestInMemoryReportSink:
    """Tests for InMemoryReportSink."""

    @pytest.mark.asyncio
    async def test_keeps_reports(self, report: MigrationReport) -> None:
        sink = InMemoryReportSink()
        assert sink.last_migration_report is None

        location = await sink.write_migration_report(report)
        await sink.write_rollback_report(rollback_report(report.session_id))

        assert location == f"memory://migration/{report.session_id}/1"
        assert sink.last_migration_report is report
        assert sink.last_rollback_report is not None
        assert len(sink.rollback_reports) == 1


class TestParseReport:
    """Tests for parse_report."""

    def test_missing_version(self) -> None:
        with pytest.raises(ReportFormatError):
            parse_report(json.dumps({"session_id": "x"}))

    def test_unsupported_version(self) -> None:
        with pytest.raises(ReportFormatError, match="2.0"):
            parse_report(json.dumps({"version": "2.0"}))

    def test_not_an_object(self) -> None:
        with pytest.raises(ReportFormatError):
            parse_report("[1, 2]")

    def test_accepts_bytes(self) -> None:
        assert parse_report(b'{"version": "1.0"}') == {"version": "1.0"}
