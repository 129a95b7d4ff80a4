"""
Shared pytest fixtures for the migrationsuite tests.

This module provides:
- Store fixtures (source, target, backup) backed by InMemoryStore
- Event channel and report sink fixtures
- A fast migration configuration (no retry backoff)
- OpenTelemetry metrics fixtures (metric_reader)
- SQLite engine fixture (sqlite_engine) for the SQLAlchemy adapters
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from migrationsuite.events import InMemoryEventChannel
from migrationsuite.models import MigrationConfig
from migrationsuite.reports import InMemoryReportSink
from migrationsuite.stores import InMemoryStore

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "sqlite: tests requiring aiosqlite")


skip_if_no_aiosqlite = pytest.mark.skipif(
    not AIOSQLITE_AVAILABLE,
    reason="aiosqlite not installed",
)


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def source() -> InMemoryStore:
    """Legacy store with every legacy table created and empty."""
    return InMemoryStore.with_source_schema()


@pytest.fixture
def target() -> InMemoryStore:
    """Target store with every target table created and empty."""
    return InMemoryStore.with_target_schema()


@pytest.fixture
def channel() -> InMemoryEventChannel:
    """Event channel retaining published events."""
    return InMemoryEventChannel(history_size=10_000, enable_tracing=False)


@pytest.fixture
def sink() -> InMemoryReportSink:
    """Report sink keeping reports in memory."""
    return InMemoryReportSink()


@pytest.fixture
def fast_config() -> MigrationConfig:
    """Default configuration without retry backoff."""
    return MigrationConfig(retry_base_delay_ms=0, retry_max_delay_ms=0)


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> Any:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Yields:
        (reader, provider): the reader and a MeterProvider feeding it.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    yield reader, provider
    provider.shutdown()


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """
    Provide an AsyncEngine on a file-backed SQLite database.

    A file database is used so every pooled connection sees the same data.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'migration.db'}")
    yield engine
    await engine.dispose()
