"""
Report sinks for migration and rollback reports.

Reports are written as versioned JSON documents (``"version": "1.0"``)
so downstream tooling can parse historical reports.

Sinks:
    - JsonFileReportSink: one JSON file per report in a directory
    - InMemoryReportSink: keeps reports in lists (tests, embedding)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from migrationsuite.models import REPORT_FORMAT_VERSION, MigrationReport, RollbackReport
from migrationsuite.serialization import json_dumps, json_loads

logger = logging.getLogger(__name__)

SUPPORTED_REPORT_VERSIONS = frozenset({REPORT_FORMAT_VERSION})


class ReportFormatError(ValueError):
    """Raised when a report document has a missing or unsupported version."""


class JsonFileReportSink:
    """
    Writes reports as JSON files.

    File names carry the report kind, session id and end time down to the
    microsecond, e.g. ``migration-report-<session>-20240101T120000.000000Z.json``.
    Files are written to a temporary name first and renamed, so readers never
    see a partial report.

    Example:
        >>> sink = JsonFileReportSink("/var/log/migrations")
        >>> path = await sink.write_migration_report(report)
    """

    def __init__(self, directory: str | Path, *, indent: int = 2) -> None:
        self._directory = Path(directory)
        self._indent = indent

    @property
    def directory(self) -> Path:
        return self._directory

    async def write_migration_report(self, report: MigrationReport) -> str:
        """Persist a migration report; returns the file path."""
        stamp = report.ended_at or report.started_at
        name = f"migration-report-{report.session_id}-{_stamp(stamp)}.json"
        return await self._write(name, report.to_dict())

    async def write_rollback_report(self, report: RollbackReport) -> str:
        """Persist a rollback report; returns the file path."""
        name = f"rollback-report-{report.session_id}-{_stamp(report.ended_at)}.json"
        return await self._write(name, report.to_dict())

    async def _write(self, name: str, document: dict[str, Any]) -> str:
        path = self._directory / name
        content = json_dumps(document, indent=self._indent)
        await asyncio.to_thread(_write_atomic, path, content)
        logger.info("Report written to %s", path)
        return str(path)


def _write_atomic(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)


def _stamp(value: Any) -> str:
    return value.strftime("%Y%m%dT%H%M%S.%fZ") if value is not None else "unstarted"


class InMemoryReportSink:
    """Keeps written reports in memory."""

    def __init__(self) -> None:
        self.migration_reports: list[MigrationReport] = []
        self.rollback_reports: list[RollbackReport] = []

    async def write_migration_report(self, report: MigrationReport) -> str:
        self.migration_reports.append(report)
        return f"memory://migration/{report.session_id}/{len(self.migration_reports)}"

    async def write_rollback_report(self, report: RollbackReport) -> str:
        self.rollback_reports.append(report)
        return f"memory://rollback/{report.session_id}/{len(self.rollback_reports)}"

    @property
    def last_migration_report(self) -> MigrationReport | None:
        return self.migration_reports[-1] if self.migration_reports else None

    @property
    def last_rollback_report(self) -> RollbackReport | None:
        return self.rollback_reports[-1] if self.rollback_reports else None


def parse_report(content: str | bytes) -> dict[str, Any]:
    """
    Parse a report document and check its version.

    Raises:
        ReportFormatError: If the document is not a JSON object or its
            version is missing or unsupported.
    """
    document = json_loads(content)
    if not isinstance(document, dict):
        raise ReportFormatError("Report must be a JSON object")
    version = document.get("version")
    if version not in SUPPORTED_REPORT_VERSIONS:
        raise ReportFormatError(
            f"Unsupported report version {version!r}; "
            f"expected one of {', '.join(sorted(SUPPORTED_REPORT_VERSIONS))}"
        )
    return document


def read_report(path: str | Path) -> dict[str, Any]:
    """Read a report file written by JsonFileReportSink."""
    return parse_report(Path(path).read_text(encoding="utf-8"))


__all__ = [
    "SUPPORTED_REPORT_VERSIONS",
    "ReportFormatError",
    "JsonFileReportSink",
    "InMemoryReportSink",
    "parse_report",
    "read_report",
]
