"""
Observability utilities for migrationsuite.

This module provides the composition-based tracer and the standard attribute
definitions used for consistent spans across all migration components.

Example:
    >>> from migrationsuite.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, tracer=None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from migrationsuite.observability.attributes import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_CRITICAL_COUNT,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY,
    ATTR_FINDING_COUNT,
    ATTR_GATE,
    ATTR_OFFSET,
    ATTR_PHASE,
    ATTR_RECORDS_TOTAL,
    ATTR_RETRY_COUNT,
    ATTR_ROLLBACK_STATUS,
    ATTR_ROLLBACK_STRATEGY,
    ATTR_ROLLBACK_TRIGGER,
    ATTR_ROWS_FAILED,
    ATTR_ROWS_READ,
    ATTR_ROWS_WRITTEN,
    ATTR_SESSION_ID,
    ATTR_TABLE,
)
from migrationsuite.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
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
