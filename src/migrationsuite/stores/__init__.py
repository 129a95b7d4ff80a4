"""
Store adapters implementing the source, target and backup contracts.

- InMemoryStore: dictionaries, for tests and rehearsals
- SqlSourceReader / SqlTargetWriter / SqlBackupReader: SQLAlchemy async
  (PostgreSQL via asyncpg, SQLite via aiosqlite)
"""

from migrationsuite.stores.memory import InMemoryStore
from migrationsuite.stores.sql import (
    SQLITE_TIMESTAMP_FORMAT,
    SqlBackupReader,
    SqlSourceReader,
    SqlTargetWriter,
)

__all__ = [
    "InMemoryStore",
    "SQLITE_TIMESTAMP_FORMAT",
    "SqlSourceReader",
    "SqlTargetWriter",
    "SqlBackupReader",
]
