"""
Identifier guards shared by store adapters.

Table names must belong to the entity registry and column names must be
plain snake_case identifiers, so nothing from outside the engine can be
spliced into a statement.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from migrationsuite.entities import KNOWN_TABLES

_COLUMN_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")


def check_table(table: str) -> str:
    """
    Validate a table name against the closed registry.

    Raises:
        ValueError: If the table is not a known source or target table.
    """
    if table not in KNOWN_TABLES:
        raise ValueError(f"Unknown table: {table!r}")
    return table


def check_column(column: str) -> str:
    """
    Validate a column identifier.

    Raises:
        ValueError: If the column is not a plain snake_case identifier.
    """
    if not _COLUMN_PATTERN.match(column):
        raise ValueError(f"Invalid column identifier: {column!r}")
    return column


def check_columns(columns: Iterable[str]) -> list[str]:
    """Validate several column identifiers."""
    return [check_column(column) for column in columns]


__all__ = ["check_table", "check_column", "check_columns"]
