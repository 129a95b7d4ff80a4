"""
Standard span and metric attributes for migrationsuite.

This module defines attribute constants used across all migration components
for consistent span naming and metrics labeling. Database attributes follow
OpenTelemetry semantic conventions.

Example:
    >>> from migrationsuite.observability.attributes import (
    ...     ATTR_ENTITY,
    ...     ATTR_BATCH_NUMBER,
    ... )
    >>>
    >>> with tracer.span(
    ...     "migrationsuite.batch_processor.write_batch",
    ...     {
    ...         ATTR_ENTITY: "customers",
    ...         ATTR_BATCH_NUMBER: 3,
    ...     },
    ... ):
    ...     pass
"""

# =============================================================================
# Session Attributes
# =============================================================================

ATTR_SESSION_ID = "migration.session.id"
"""Unique identifier of the migration session (UUID string)."""

ATTR_PHASE = "migration.phase"
"""Current session phase (e.g., 'migrating')."""

ATTR_DRY_RUN = "migration.dry_run"
"""Whether writes are skipped (boolean)."""

# =============================================================================
# Entity and Batch Attributes
# =============================================================================

ATTR_ENTITY = "migration.entity"
"""Entity being processed (e.g., 'customers')."""

ATTR_TABLE = "migration.table"
"""Source or target table involved (string)."""

ATTR_BATCH_NUMBER = "migration.batch.number"
"""1-based batch sequence number within an entity (integer)."""

ATTR_BATCH_SIZE = "migration.batch.size"
"""Configured rows per batch (integer)."""

ATTR_OFFSET = "migration.cursor.offset"
"""Cursor offset a page was read from (integer)."""

ATTR_ROWS_READ = "migration.rows.read"
"""Rows read from the source (integer)."""

ATTR_ROWS_WRITTEN = "migration.rows.written"
"""Rows written to the target (integer)."""

ATTR_ROWS_FAILED = "migration.rows.failed"
"""Rows counted as failed (integer)."""

ATTR_RECORDS_TOTAL = "migration.records.total"
"""Total source rows of an entity (integer)."""

# =============================================================================
# Validation Attributes
# =============================================================================

ATTR_GATE = "migration.validation.gate"
"""Validation gate (pre_migration, post_migration, rollback)."""

ATTR_FINDING_COUNT = "migration.validation.finding_count"
"""Number of findings produced by a gate (integer)."""

ATTR_CRITICAL_COUNT = "migration.validation.critical_count"
"""Number of critical findings produced by a gate (integer)."""

# =============================================================================
# Rollback Attributes
# =============================================================================

ATTR_ROLLBACK_TRIGGER = "migration.rollback.trigger"
"""Why a rollback was started (e.g., 'SYSTEM_ERROR')."""

ATTR_ROLLBACK_STRATEGY = "migration.rollback.strategy"
"""Rollback strategy (snapshot, selective, incremental, partial)."""

ATTR_ROLLBACK_STATUS = "migration.rollback.status"
"""Rollback outcome (completed, failed)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g., 'SELECT', 'INSERT')."""

# =============================================================================
# Retry Attributes
# =============================================================================

ATTR_RETRY_COUNT = "migration.retry.count"
"""Retries performed so far (integer)."""


__all__ = [
    "ATTR_SESSION_ID",
    "ATTR_PHASE",
    "ATTR_DRY_RUN",
    "ATTR_ENTITY",
    "ATTR_TABLE",
    "ATTR_BATCH_NUMBER",
    "ATTR_BATCH_SIZE",
    "ATTR_OFFSET",
    "ATTR_ROWS_READ",
    "ATTR_ROWS_WRITTEN",
    "ATTR_ROWS_FAILED",
    "ATTR_RECORDS_TOTAL",
    "ATTR_GATE",
    "ATTR_FINDING_COUNT",
    "ATTR_CRITICAL_COUNT",
    "ATTR_ROLLBACK_TRIGGER",
    "ATTR_ROLLBACK_STRATEGY",
    "ATTR_ROLLBACK_STATUS",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_RETRY_COUNT",
]
