"""
Interfaces the migration engine consumes.

The engine depends only on these narrow contracts, never on a concrete
database client. Table and column identifiers passed through them always
come from the closed entity registry (see ``migrationsuite.entities``).

Protocols:
- SourceReader: Typed, paginated reads from the legacy store
- TargetWriter: Reads plus bulk writes and maintenance on the target store
- BackupReader: Reads from a point-in-time backup of the target
- EventPublisher: Publishes structured progress/alert events
- ReportSink: Persists migration and rollback reports

Implementations live in ``migrationsuite.stores`` (in-memory and
SQLAlchemy), ``migrationsuite.events`` and ``migrationsuite.reports``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from migrationsuite.events import MigrationEvent
    from migrationsuite.models import MigrationReport, RollbackReport


@dataclass(frozen=True)
class DatabaseMetrics:
    """
    Point-in-time metrics of the target database.

    Attributes:
        active_connections: Connections currently open.
        connection_limit: Maximum connections allowed, if known.
        database_size_bytes: Storage used, if known.
        cache_hit_ratio: Buffer cache hit ratio (0-1), if known.
    """

    active_connections: int = 0
    connection_limit: int | None = None
    database_size_bytes: int | None = None
    cache_hit_ratio: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "active_connections": self.active_connections,
            "connection_limit": self.connection_limit,
            "database_size_bytes": self.database_size_bytes,
            "cache_hit_ratio": self.cache_hit_ratio,
        }


@runtime_checkable
class SourceReader(Protocol):
    """
    Read contract of the legacy store.

    Every method may raise StoreError when the underlying store fails.
    """

    async def ping(self) -> None:
        """
        Check connectivity.

        Raises:
            StoreError: If the store is unreachable.
        """
        ...

    async def table_exists(self, table: str) -> bool:
        """Check whether a table exists."""
        ...

    async def columns(self, table: str) -> frozenset[str]:
        """Get the column names of a table."""
        ...

    async def count(self, table: str) -> int:
        """Count the rows of a table."""
        ...

    async def count_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """
        Count rows whose ``column`` falls in ``[start, end]``.

        Args:
            table: Table to count.
            column: Timestamp column.
            start: Inclusive lower bound.
            end: Inclusive upper bound, or None for no upper bound.
        """
        ...

    async def fetch_page(
        self,
        table: str,
        order_by: Sequence[str],
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """
        Fetch one page of rows in a stable order.

        Args:
            table: Table to read.
            order_by: Ordering columns (ascending).
            limit: Maximum rows to return.
            offset: Rows to skip.

        Returns:
            Rows as dictionaries.
        """
        ...

    async def fetch_keys(
        self,
        table: str,
        key_column: str,
        keys: Sequence[Any],
        value_column: str = "id",
    ) -> dict[Any, Any]:
        """
        Resolve keys to values with one keyed query.

        Args:
            table: Table to search.
            key_column: Column matched against ``keys``.
            keys: Keys to resolve.
            value_column: Column returned for each match.

        Returns:
            Mapping of found key -> value. Missing keys are absent.
        """
        ...

    async def find_duplicates(self, sources: Sequence[tuple[str, str]]) -> dict[Any, int]:
        """
        Find values occurring more than once across (table, column) pairs.

        NULL values are ignored.

        Returns:
            Mapping of duplicated value -> occurrences.
        """
        ...

    async def missing_values(
        self,
        table: str,
        column: str,
        key_column: str,
        sample_size: int,
    ) -> tuple[int, list[Any]]:
        """
        Count rows whose ``column`` is NULL or empty.

        Returns:
            (count, sample of ``key_column`` values ordered ascending)
        """
        ...

    async def orphaned_references(
        self,
        child_table: str,
        foreign_key: str,
        parent_table: str,
        parent_key: str,
        key_column: str,
        sample_size: int,
    ) -> tuple[int, list[Any]]:
        """
        Count child rows with a non-NULL foreign key matching no parent.

        Returns:
            (count, sample of child ``key_column`` values ordered ascending)
        """
        ...


@runtime_checkable
class TargetWriter(SourceReader, Protocol):
    """
    Write contract of the target store.

    Bulk inserts are single statements, so a batch is either fully
    applied or not applied at all.
    """

    async def insert_batch(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        conflict_keys: Sequence[str] | None = None,
    ) -> int:
        """
        Insert records as one statement.

        Args:
            table: Target table.
            records: Records to insert.
            conflict_keys: Natural key columns; when given, rows that
                conflict on them are skipped (insert-or-ignore).

        Returns:
            Rows actually inserted.
        """
        ...

    async def delete_all(self, table: str) -> int:
        """Delete every row of a table; returns rows deleted."""
        ...

    async def delete_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """Delete rows whose ``column`` falls in ``[start, end]``; returns rows deleted."""
        ...

    async def reset_table(self, table: str) -> None:
        """Drop and recreate a table with its current definition."""
        ...

    async def terminate_connections(self) -> int:
        """Terminate other connections to the target; returns connections closed."""
        ...

    async def execute(self, statement: str) -> None:
        """Run a maintenance statement (index rebuild, analyze)."""
        ...

    async def database_metrics(self) -> DatabaseMetrics:
        """Collect connection and storage metrics."""
        ...


@runtime_checkable
class BackupReader(SourceReader, Protocol):
    """Read contract of a point-in-time backup of the target."""

    async def snapshot_time(self) -> datetime | None:
        """When the backup was taken, if known."""
        ...


@runtime_checkable
class EventPublisher(Protocol):
    """The only capability the engine needs from an event channel."""

    async def publish(self, event: MigrationEvent) -> None:
        """Publish one event."""
        ...


@runtime_checkable
class ReportSink(Protocol):
    """Destination for migration and rollback reports."""

    async def write_migration_report(self, report: MigrationReport) -> str:
        """Persist a migration report; returns where it was written."""
        ...

    async def write_rollback_report(self, report: RollbackReport) -> str:
        """Persist a rollback report; returns where it was written."""
        ...


__all__ = [
    "DatabaseMetrics",
    "SourceReader",
    "TargetWriter",
    "BackupReader",
    "EventPublisher",
    "ReportSink",
]
