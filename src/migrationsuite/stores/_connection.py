"""
Connection handling helper for store adapters.

Accepts either an AsyncEngine or an AsyncConnection so adapters can run
standalone (engine) or inside a caller-managed transaction (connection).
"""

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from migrationsuite.exceptions import StoreError


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in transaction (begin).
                       If False, use bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self.conn, transactional=False) as conn:
        ...     result = await conn.execute(select_query, params)
        ...     return result.fetchall()

    Note:
        When passing an existing AsyncConnection, the transactional parameter
        has no effect - the caller owns the transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


@contextmanager
def store_errors(operation: str, table: str | None = None) -> Iterator[None]:
    """
    Translate SQLAlchemy failures into StoreError.

    Example:
        >>> with store_errors("count", table):
        ...     async with execute_with_connection(self.conn) as conn:
        ...         ...
    """
    try:
        yield
    except SQLAlchemyError as e:
        raise StoreError(operation, str(e), table=table) from e
