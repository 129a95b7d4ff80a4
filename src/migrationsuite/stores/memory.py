"""
In-memory store implementation.

Implements the source reader, target writer and backup reader contracts
over plain dictionaries. Useful for testing, dry-run rehearsals and
development. Not suitable for production as all rows are lost when the
process terminates.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from migrationsuite.entities import ENTITY_SPECS, TARGET_TABLES
from migrationsuite.exceptions import StoreError
from migrationsuite.interfaces import DatabaseMetrics
from migrationsuite.stores._identifiers import check_column, check_columns, check_table

logger = logging.getLogger(__name__)


def _sort_value(value: Any) -> tuple[bool, Any]:
    # NULLs sort last, as with ORDER BY ... ASC in PostgreSQL
    return (value is None, value)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


class InMemoryStore:
    """
    In-memory implementation of SourceReader, TargetWriter and BackupReader.

    Tables only exist once created (explicitly or through the schema
    helpers). Rows are deep-copied on the way in and out, so callers can
    never mutate stored state by accident.

    Failure simulation for tests:
        - ``reachable = False`` makes every call raise StoreError

    Example:
        >>> source = InMemoryStore.with_source_schema()
        >>> source.seed("legacy_customers", rows)
        >>> target = InMemoryStore.with_target_schema()
        >>> await target.insert_batch("customers", records, ["customer_code"])

    Attributes:
        name: Label used in logs and errors.
        reachable: Whether calls succeed.
        active_connections: Value reported by database_metrics().
        connection_limit: Value reported by database_metrics().
    """

    def __init__(
        self,
        tables: Iterable[str] = (),
        *,
        name: str = "memory",
        snapshot_at: datetime | None = None,
    ) -> None:
        self.name = name
        self.reachable = True
        self.active_connections = 1
        self.connection_limit = 100
        self.executed: list[str] = []
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._declared_columns: dict[str, set[str]] = {}
        self._snapshot_at = snapshot_at
        self._lock = asyncio.Lock()
        for table in tables:
            self.create_table(table)

    @classmethod
    def with_source_schema(cls, *, name: str = "source") -> InMemoryStore:
        """Create a store holding every legacy table with its required columns."""
        store = cls(name=name)
        for spec in ENTITY_SPECS.values():
            for source in spec.sources:
                store.create_table(source.table, source.required_columns)
        return store

    @classmethod
    def with_target_schema(cls, *, name: str = "target") -> InMemoryStore:
        """Create a store holding every target table."""
        return cls(sorted(TARGET_TABLES), name=name)

    # -- test and setup helpers -------------------------------------------------

    def create_table(self, table: str, columns: Iterable[str] = ()) -> None:
        """Create an empty table, declaring optional columns."""
        check_table(table)
        self._tables.setdefault(table, [])
        self._declared_columns.setdefault(table, set()).update(check_columns(columns))

    def drop_table(self, table: str) -> None:
        """Remove a table and its rows."""
        self._tables.pop(table, None)
        self._declared_columns.pop(table, None)

    def seed(self, table: str, rows: Iterable[dict[str, Any]]) -> None:
        """Append rows to a table, creating it if needed."""
        self.create_table(table)
        self._tables[table].extend(copy.deepcopy(list(rows)))

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Get a copy of every row of a table, in insertion order."""
        return copy.deepcopy(self._rows(table))

    def clone(self, *, name: str | None = None, snapshot_at: datetime | None = None) -> InMemoryStore:
        """
        Copy the whole store, e.g. to take a backup of a target.

        Args:
            name: Name of the copy.
            snapshot_at: Snapshot time reported by the copy.
        """
        clone = InMemoryStore(name=name or f"{self.name}-copy", snapshot_at=snapshot_at)
        clone._tables = copy.deepcopy(self._tables)
        clone._declared_columns = copy.deepcopy(self._declared_columns)
        return clone

    # -- internals --------------------------------------------------------------

    def _ensure_reachable(self, operation: str) -> None:
        if not self.reachable:
            raise StoreError(operation, f"{self.name} store is unreachable")

    def _rows(self, table: str) -> list[dict[str, Any]]:
        check_table(table)
        if table not in self._tables:
            raise StoreError("read", "relation does not exist", table=table)
        return self._tables[table]

    # -- SourceReader -----------------------------------------------------------

    async def ping(self) -> None:
        """Check connectivity."""
        self._ensure_reachable("ping")

    async def table_exists(self, table: str) -> bool:
        """Check whether a table exists."""
        self._ensure_reachable("table_exists")
        return check_table(table) in self._tables

    async def columns(self, table: str) -> frozenset[str]:
        """Get declared columns plus every column present in stored rows."""
        self._ensure_reachable("columns")
        found = set(self._declared_columns.get(table, set()))
        for row in self._rows(table):
            found.update(row)
        return frozenset(found)

    async def count(self, table: str) -> int:
        """Count the rows of a table."""
        self._ensure_reachable("count")
        return len(self._rows(table))

    async def count_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """Count rows whose ``column`` falls in ``[start, end]``."""
        self._ensure_reachable("count_between")
        check_column(column)
        return sum(1 for row in self._rows(table) if self._in_window(row, column, start, end))

    @staticmethod
    def _in_window(row: dict[str, Any], column: str, start: datetime, end: datetime | None) -> bool:
        value = row.get(column)
        if value is None:
            return False
        return value >= start and (end is None or value <= end)

    async def fetch_page(
        self,
        table: str,
        order_by: Sequence[str],
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Fetch one page of rows in a stable order."""
        self._ensure_reachable("fetch_page")
        keys = check_columns(order_by)
        ordered = sorted(
            self._rows(table),
            key=lambda row: tuple(_sort_value(row.get(k)) for k in keys),
        )
        return copy.deepcopy(ordered[offset : offset + limit])

    async def fetch_keys(
        self,
        table: str,
        key_column: str,
        keys: Sequence[Any],
        value_column: str = "id",
    ) -> dict[Any, Any]:
        """Resolve keys to values."""
        self._ensure_reachable("fetch_keys")
        check_columns((key_column, value_column))
        wanted = {key for key in keys if key is not None}
        found: dict[Any, Any] = {}
        for row in self._rows(table):
            key = row.get(key_column)
            if key in wanted and key not in found:
                found[key] = row.get(value_column)
        return found

    async def find_duplicates(self, sources: Sequence[tuple[str, str]]) -> dict[Any, int]:
        """Find values occurring more than once across (table, column) pairs."""
        self._ensure_reachable("find_duplicates")
        counts: Counter[Any] = Counter()
        for table, column in sources:
            check_column(column)
            counts.update(
                row.get(column) for row in self._rows(table) if row.get(column) is not None
            )
        return {value: count for value, count in counts.items() if count > 1}

    async def missing_values(
        self,
        table: str,
        column: str,
        key_column: str,
        sample_size: int,
    ) -> tuple[int, list[Any]]:
        """Count rows whose ``column`` is NULL or empty."""
        self._ensure_reachable("missing_values")
        check_columns((column, key_column))
        keys = [row.get(key_column) for row in self._rows(table) if _is_missing(row.get(column))]
        return len(keys), sorted(keys, key=_sort_value)[:sample_size]

    async def orphaned_references(
        self,
        child_table: str,
        foreign_key: str,
        parent_table: str,
        parent_key: str,
        key_column: str,
        sample_size: int,
    ) -> tuple[int, list[Any]]:
        """Count child rows with a non-NULL foreign key matching no parent."""
        self._ensure_reachable("orphaned_references")
        check_columns((foreign_key, parent_key, key_column))
        parents = {row.get(parent_key) for row in self._rows(parent_table)}
        keys = [
            row.get(key_column)
            for row in self._rows(child_table)
            if row.get(foreign_key) is not None and row.get(foreign_key) not in parents
        ]
        return len(keys), sorted(keys, key=_sort_value)[:sample_size]

    # -- TargetWriter -----------------------------------------------------------

    async def insert_batch(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        conflict_keys: Sequence[str] | None = None,
    ) -> int:
        """Insert records atomically, skipping natural-key conflicts when asked."""
        self._ensure_reachable("insert_batch")
        async with self._lock:
            rows = self._rows(table)
            if not conflict_keys:
                rows.extend(copy.deepcopy(list(records)))
                return len(records)

            keys = check_columns(conflict_keys)
            existing = {tuple(row.get(k) for k in keys) for row in rows}
            accepted: list[dict[str, Any]] = []
            for record in records:
                natural_key = tuple(record.get(k) for k in keys)
                if natural_key in existing:
                    continue
                existing.add(natural_key)
                accepted.append(copy.deepcopy(record))
            rows.extend(accepted)
            return len(accepted)

    async def delete_all(self, table: str) -> int:
        """Delete every row of a table."""
        self._ensure_reachable("delete_all")
        async with self._lock:
            rows = self._rows(table)
            deleted = len(rows)
            rows.clear()
            return deleted

    async def delete_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """Delete rows whose ``column`` falls in ``[start, end]``."""
        self._ensure_reachable("delete_between")
        check_column(column)
        async with self._lock:
            rows = self._rows(table)
            kept = [row for row in rows if not self._in_window(row, column, start, end)]
            deleted = len(rows) - len(kept)
            rows[:] = kept
            return deleted

    async def reset_table(self, table: str) -> None:
        """Drop and recreate a table, keeping its declared columns."""
        self._ensure_reachable("reset_table")
        async with self._lock:
            self._rows(table).clear()

    async def terminate_connections(self) -> int:
        """No other connections exist in memory."""
        self._ensure_reachable("terminate_connections")
        return 0

    async def execute(self, statement: str) -> None:
        """Record a maintenance statement."""
        self._ensure_reachable("execute")
        self.executed.append(statement)

    async def database_metrics(self) -> DatabaseMetrics:
        """Report the configured connection figures."""
        self._ensure_reachable("database_metrics")
        return DatabaseMetrics(
            active_connections=self.active_connections,
            connection_limit=self.connection_limit,
            database_size_bytes=None,
            cache_hit_ratio=None,
        )

    # -- BackupReader -----------------------------------------------------------

    async def snapshot_time(self) -> datetime | None:
        """When the backup was taken, if known."""
        self._ensure_reachable("snapshot_time")
        return self._snapshot_at


__all__ = ["InMemoryStore"]
