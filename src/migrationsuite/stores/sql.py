"""
SQLAlchemy async store adapters.

Implements the store contracts with ``sqlalchemy.text()`` statements over
an AsyncEngine or AsyncConnection. Works with PostgreSQL (asyncpg) and
SQLite (aiosqlite).

Every identifier interpolated into a statement is checked against the
entity registry first; values are always bound parameters.

Dialect notes:
    - SQLite has no native timestamp type, so datetimes are bound as
      ``YYYY-MM-DD HH:MM:SS.ffffff`` UTC strings, which order correctly
      as text.
    - dict and list values (addresses, metadata, tier pricing) are bound
      as JSON strings on both dialects.

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>>
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/legacy")
    >>> source = SqlSourceReader(engine)
    >>> await source.count("legacy_customers")
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import MetaData, Table, bindparam, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrationsuite.interfaces import DatabaseMetrics
from migrationsuite.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_TABLE,
    Tracer,
    create_tracer,
)
from migrationsuite.serialization import json_dumps
from migrationsuite.stores._connection import execute_with_connection, store_errors
from migrationsuite.stores._identifiers import check_column, check_columns, check_table

logger = logging.getLogger(__name__)

SQLITE_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


def _order_clause(columns: Sequence[str]) -> str:
    return ", ".join(f"{_quote(c)} ASC NULLS LAST" for c in check_columns(columns))


class SqlSourceReader:
    """
    SQLAlchemy implementation of SourceReader.

    Example:
        >>> async with engine.connect() as conn:
        ...     reader = SqlSourceReader(conn)
        ...     page = await reader.fetch_page("legacy_products", ["created_at", "id"], 1000, 0)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the reader.

        Args:
            conn: Database connection or engine
            tracer: Optional tracer for tracing (if not provided, one will be created)
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn

    @property
    def dialect_name(self) -> str:
        """Name of the SQLAlchemy dialect (``postgresql`` or ``sqlite``)."""
        return self.conn.dialect.name

    @property
    def is_sqlite(self) -> bool:
        """Check whether the store is SQLite."""
        return self.dialect_name == "sqlite"

    def _span_attributes(self, operation: str, table: str | None = None) -> dict[str, Any]:
        attributes: dict[str, Any] = {
            ATTR_DB_SYSTEM: self.dialect_name,
            ATTR_DB_OPERATION: operation,
        }
        if table:
            attributes[ATTR_TABLE] = table
        return attributes

    def _bind(self, value: Any) -> Any:
        """Convert a Python value into what the driver accepts."""
        if isinstance(value, dict | list):
            return json_dumps(value)
        if not self.is_sqlite:
            return value
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(UTC).replace(tzinfo=None)
            return value.strftime(SQLITE_TIMESTAMP_FORMAT)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        return value

    async def ping(self) -> None:
        """Check connectivity."""
        with self._tracer.span("migrationsuite.store.ping", self._span_attributes("ping")):
            with store_errors("ping"):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    await conn.execute(text("SELECT 1"))

    async def table_exists(self, table: str) -> bool:
        """Check whether a table exists."""
        check_table(table)
        with self._tracer.span(
            "migrationsuite.store.table_exists",
            self._span_attributes("table_exists", table),
        ):
            with store_errors("table_exists", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    return await conn.run_sync(
                        lambda sync_conn: inspect(sync_conn).has_table(table)
                    )

    async def columns(self, table: str) -> frozenset[str]:
        """Get the column names of a table."""
        check_table(table)
        with self._tracer.span(
            "migrationsuite.store.columns",
            self._span_attributes("columns", table),
        ):
            with store_errors("columns", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    found = await conn.run_sync(
                        lambda sync_conn: inspect(sync_conn).get_columns(table)
                    )
            return frozenset(column["name"] for column in found)

    async def count(self, table: str) -> int:
        """Count the rows of a table."""
        check_table(table)
        with self._tracer.span(
            "migrationsuite.store.count",
            self._span_attributes("SELECT", table),
        ):
            with store_errors("count", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(text(f"SELECT COUNT(*) FROM {_quote(table)}"))
                    return int(result.scalar_one())

    async def count_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """Count rows whose ``column`` falls in ``[start, end]``."""
        check_table(table)
        where, params = self._window_clause(column, start, end)
        with self._tracer.span(
            "migrationsuite.store.count_between",
            self._span_attributes("SELECT", table),
        ):
            with store_errors("count_between", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(
                        text(f"SELECT COUNT(*) FROM {_quote(table)} WHERE {where}"),
                        params,
                    )
                    return int(result.scalar_one())

    def _window_clause(
        self,
        column: str,
        start: datetime,
        end: datetime | None,
    ) -> tuple[str, dict[str, Any]]:
        quoted = _quote(check_column(column))
        where = f"{quoted} >= :window_start"
        params = {"window_start": self._bind(start)}
        if end is not None:
            where += f" AND {quoted} <= :window_end"
            params["window_end"] = self._bind(end)
        return where, params

    async def fetch_page(
        self,
        table: str,
        order_by: Sequence[str],
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        """Fetch one page of rows in a stable order."""
        check_table(table)
        query = text(
            f"SELECT * FROM {_quote(table)} ORDER BY {_order_clause(order_by)} "
            "LIMIT :limit OFFSET :offset"
        )
        with self._tracer.span(
            "migrationsuite.store.fetch_page",
            self._span_attributes("SELECT", table),
        ):
            with store_errors("fetch_page", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, {"limit": limit, "offset": offset})
                    return [dict(row._mapping) for row in result]

    async def fetch_keys(
        self,
        table: str,
        key_column: str,
        keys: Sequence[Any],
        value_column: str = "id",
    ) -> dict[Any, Any]:
        """Resolve keys to values with one keyed query."""
        check_table(table)
        key_col, value_col = (_quote(c) for c in check_columns((key_column, value_column)))
        wanted = sorted({key for key in keys if key is not None}, key=str)
        if not wanted:
            return {}

        query = text(
            f"SELECT {key_col}, {value_col} FROM {_quote(table)} WHERE {key_col} IN :keys"
        ).bindparams(bindparam("keys", expanding=True))
        with self._tracer.span(
            "migrationsuite.store.fetch_keys",
            self._span_attributes("SELECT", table),
        ):
            with store_errors("fetch_keys", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, {"keys": wanted})
                    found: dict[Any, Any] = {}
                    for key, value in result.fetchall():
                        found.setdefault(key, value)
                    return found

    async def find_duplicates(self, sources: Sequence[tuple[str, str]]) -> dict[Any, int]:
        """Find values occurring more than once across (table, column) pairs."""
        selects = [
            f"SELECT {_quote(check_column(column))} AS value FROM {_quote(check_table(table))}"
            for table, column in sources
        ]
        query = text(
            "SELECT value, COUNT(*) AS occurrences FROM ("
            + " UNION ALL ".join(selects)
            + ") AS combined WHERE value IS NOT NULL "
            "GROUP BY value HAVING COUNT(*) > 1 ORDER BY value"
        )
        with self._tracer.span(
            "migrationsuite.store.find_duplicates",
            self._span_attributes("SELECT", ",".join(table for table, _ in sources)),
        ):
            with store_errors("find_duplicates"):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query)
                    return {row[0]: int(row[1]) for row in result.fetchall()}

    async def missing_values(
        self,
        table: str,
        column: str,
        key_column: str,
        sample_size: int,
    ) -> tuple[int, list[Any]]:
        """Count rows whose ``column`` is NULL or empty."""
        check_table(table)
        col, key_col = (_quote(c) for c in check_columns((column, key_column)))
        where = f"{col} IS NULL OR CAST({col} AS TEXT) = ''"
        with self._tracer.span(
            "migrationsuite.store.missing_values",
            self._span_attributes("SELECT", table),
        ):
            with store_errors("missing_values", table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    total = await conn.execute(
                        text(f"SELECT COUNT(*) FROM {_quote(table)} WHERE {where}")
                    )
                    sample = await conn.execute(
                        text(
                            f"SELECT {key_col} FROM {_quote(table)} WHERE {where} "
                            f"ORDER BY {key_col} ASC NULLS LAST LIMIT :limit"
                        ),
                        {"limit": sample_size},
                    )
                    return int(total.scalar_one()), [row[0] for row in sample.fetchall()]

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
        child, parent = _quote(check_table(child_table)), _quote(check_table(parent_table))
        fk, pk, key_col = (_quote(c) for c in check_columns((foreign_key, parent_key, key_column)))
        where = (
            f"c.{fk} IS NOT NULL AND NOT EXISTS "
            f"(SELECT 1 FROM {parent} p WHERE p.{pk} = c.{fk})"
        )
        with self._tracer.span(
            "migrationsuite.store.orphaned_references",
            self._span_attributes("SELECT", child_table),
        ):
            with store_errors("orphaned_references", child_table):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    total = await conn.execute(
                        text(f"SELECT COUNT(*) FROM {child} c WHERE {where}")
                    )
                    sample = await conn.execute(
                        text(
                            f"SELECT c.{key_col} FROM {child} c WHERE {where} "
                            f"ORDER BY c.{key_col} ASC LIMIT :limit"
                        ),
                        {"limit": sample_size},
                    )
                    return int(total.scalar_one()), [row[0] for row in sample.fetchall()]


class SqlTargetWriter(SqlSourceReader):
    """
    SQLAlchemy implementation of TargetWriter.

    Each bulk insert runs as one statement inside one transaction, so a
    batch is either fully applied or not at all.

    Example:
        >>> writer = SqlTargetWriter(engine)
        >>> inserted = await writer.insert_batch("customers", records, ["customer_code"])
    """

    async def insert_batch(
        self,
        table: str,
        records: Sequence[dict[str, Any]],
        conflict_keys: Sequence[str] | None = None,
    ) -> int:
        """
        Insert records as one statement.

        With ``conflict_keys``, rows conflicting on them are skipped
        (``ON CONFLICT ... DO NOTHING``); a unique index on those columns
        is required.

        Returns:
            Rows actually inserted.
        """
        check_table(table)
        if not records:
            return 0

        columns: list[str] = []
        for record in records:
            for column in record:
                if column not in columns:
                    columns.append(check_column(column))

        column_list = ", ".join(_quote(c) for c in columns)
        values = ", ".join(f":{c}" for c in columns)
        statement = f"INSERT INTO {_quote(table)} ({column_list}) VALUES ({values})"
        if conflict_keys:
            keys = ", ".join(_quote(c) for c in check_columns(conflict_keys))
            statement += f" ON CONFLICT ({keys}) DO NOTHING"

        params = [{c: self._bind(record.get(c)) for c in columns} for record in records]
        count_query = text(f"SELECT COUNT(*) FROM {_quote(table)}")

        with self._tracer.span(
            "migrationsuite.store.insert_batch",
            self._span_attributes("INSERT", table),
        ):
            with store_errors("insert_batch", table):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    # executemany rowcount is unreliable across drivers
                    before = (await conn.execute(count_query)).scalar_one()
                    await conn.execute(text(statement), params)
                    after = (await conn.execute(count_query)).scalar_one()
            inserted = int(after) - int(before)
            logger.debug("Inserted %d of %d records into %s", inserted, len(records), table)
            return inserted

    async def delete_all(self, table: str) -> int:
        """Delete every row of a table; returns rows deleted."""
        check_table(table)
        with self._tracer.span(
            "migrationsuite.store.delete_all",
            self._span_attributes("DELETE", table),
        ):
            with store_errors("delete_all", table):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(text(f"DELETE FROM {_quote(table)}"))
                    return max(0, result.rowcount)

    async def delete_between(
        self,
        table: str,
        column: str,
        start: datetime,
        end: datetime | None = None,
    ) -> int:
        """Delete rows whose ``column`` falls in ``[start, end]``; returns rows deleted."""
        check_table(table)
        where, params = self._window_clause(column, start, end)
        with self._tracer.span(
            "migrationsuite.store.delete_between",
            self._span_attributes("DELETE", table),
        ):
            with store_errors("delete_between", table):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(
                        text(f"DELETE FROM {_quote(table)} WHERE {where}"),
                        params,
                    )
                    return max(0, result.rowcount)

    async def reset_table(self, table: str) -> None:
        """Drop and recreate a table from its reflected definition."""
        check_table(table)

        def _recreate(sync_conn: Connection) -> None:
            reflected = Table(table, MetaData(), autoload_with=sync_conn)
            reflected.drop(sync_conn)
            reflected.create(sync_conn)

        with self._tracer.span(
            "migrationsuite.store.reset_table",
            self._span_attributes("DROP", table),
        ):
            with store_errors("reset_table", table):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.run_sync(_recreate)
            logger.info("Recreated table %s", table)

    async def terminate_connections(self) -> int:
        """
        Terminate other connections to the target database.

        Returns:
            Connections closed (always 0 on SQLite, which has no server).
        """
        if self.is_sqlite:
            return 0
        query = text("""
            SELECT pg_terminate_backend(pid)
            FROM pg_stat_activity
            WHERE datname = current_database()
              AND pid <> pg_backend_pid()
        """)
        with self._tracer.span(
            "migrationsuite.store.terminate_connections",
            self._span_attributes("terminate_connections"),
        ):
            with store_errors("terminate_connections"):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    result = await conn.execute(query)
                    terminated = sum(1 for row in result.fetchall() if row[0])
            logger.warning("Terminated %d connections to the target database", terminated)
            return terminated

    async def execute(self, statement: str) -> None:
        """Run a maintenance statement (index rebuild, analyze)."""
        with self._tracer.span(
            "migrationsuite.store.execute",
            self._span_attributes("execute"),
        ):
            with store_errors("execute"):
                async with execute_with_connection(self.conn, transactional=True) as conn:
                    await conn.execute(text(statement))

    async def database_metrics(self) -> DatabaseMetrics:
        """Collect connection and storage metrics."""
        with self._tracer.span(
            "migrationsuite.store.database_metrics",
            self._span_attributes("database_metrics"),
        ):
            with store_errors("database_metrics"):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    if self.is_sqlite:
                        return await self._sqlite_metrics(conn)
                    return await self._postgresql_metrics(conn)

    @staticmethod
    async def _sqlite_metrics(conn: AsyncConnection) -> DatabaseMetrics:
        page_count = (await conn.execute(text("PRAGMA page_count"))).scalar_one()
        page_size = (await conn.execute(text("PRAGMA page_size"))).scalar_one()
        return DatabaseMetrics(
            active_connections=1,
            connection_limit=None,
            database_size_bytes=int(page_count) * int(page_size),
        )

    @staticmethod
    async def _postgresql_metrics(conn: AsyncConnection) -> DatabaseMetrics:
        row = (
            await conn.execute(
                text("""
                    SELECT
                        (SELECT COUNT(*) FROM pg_stat_activity
                         WHERE datname = current_database()) AS active_connections,
                        current_setting('max_connections')::int AS connection_limit,
                        pg_database_size(current_database()) AS database_size,
                        (SELECT SUM(blks_hit)::float
                                / NULLIF(SUM(blks_hit) + SUM(blks_read), 0)
                         FROM pg_stat_database
                         WHERE datname = current_database()) AS cache_hit_ratio
                """)
            )
        ).one()
        return DatabaseMetrics(
            active_connections=int(row.active_connections),
            connection_limit=int(row.connection_limit),
            database_size_bytes=int(row.database_size),
            cache_hit_ratio=float(row.cache_hit_ratio) if row.cache_hit_ratio is not None else None,
        )


class SqlBackupReader(SqlSourceReader):
    """
    SQLAlchemy implementation of BackupReader.

    Reads from a point-in-time backup or replica of the target.
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        snapshot_at: datetime | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the backup reader.

        Args:
            conn: Database connection or engine of the backup
            snapshot_at: When the backup was taken, if known
            tracer: Optional tracer for tracing
            enable_tracing: Whether to enable OpenTelemetry tracing (default True)
        """
        super().__init__(conn, tracer=tracer, enable_tracing=enable_tracing)
        self._snapshot_at = snapshot_at

    async def snapshot_time(self) -> datetime | None:
        """When the backup was taken, if known."""
        return self._snapshot_at


__all__ = [
    "SQLITE_TIMESTAMP_FORMAT",
    "SqlSourceReader",
    "SqlTargetWriter",
    "SqlBackupReader",
]
