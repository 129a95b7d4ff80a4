"""
Unit tests for BatchCursor.
"""

import pytest

from migrationsuite.cursor import BatchCursor
from migrationsuite.entities import get_spec
from migrationsuite.exceptions import MigrationStateError
from migrationsuite.stores import InMemoryStore
from tests.fixtures import customer_rows, supplier_rows, vendor_rows


@pytest.fixture
def supplier_source(source: InMemoryStore) -> InMemoryStore:
    source.seed("legacy_vendors", vendor_rows(3))
    source.seed("legacy_suppliers", supplier_rows(4))
    return source


class TestPrepare:
    """Tests for BatchCursor.prepare."""

    @pytest.mark.asyncio
    async def test_lays_segments_end_to_end(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)

        total = await cursor.prepare()

        assert total == 7
        vendors, suppliers = cursor.segments
        assert (vendors.source.table, vendors.start, vendors.count) == ("legacy_vendors", 0, 3)
        assert (suppliers.source.table, suppliers.start, suppliers.count) == (
            "legacy_suppliers",
            3,
            4,
        )

    @pytest.mark.asyncio
    async def test_missing_table_is_skipped(self, supplier_source: InMemoryStore) -> None:
        supplier_source.drop_table("legacy_vendors")
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)

        assert await cursor.prepare() == 4
        assert len(cursor.segments) == 1

    def test_segments_require_prepare(self, source: InMemoryStore) -> None:
        cursor = BatchCursor(source, get_spec("customers"), enable_tracing=False)

        assert cursor.is_prepared is False
        with pytest.raises(MigrationStateError):
            _ = cursor.segments

    @pytest.mark.asyncio
    async def test_total_is_frozen_at_prepare(self, source: InMemoryStore) -> None:
        source.seed("legacy_customers", customer_rows(5))
        cursor = BatchCursor(source, get_spec("customers"), enable_tracing=False)
        await cursor.prepare()

        source.seed("legacy_customers", customer_rows(5, start=6))

        assert cursor.total == 5
        page = await cursor.fetch(0, 100)
        assert len(page.rows) == 5


class TestFetch:
    """Tests for BatchCursor.fetch and pages."""

    @pytest.mark.asyncio
    async def test_page_crosses_tables(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)
        await cursor.prepare()

        page = await cursor.fetch(2, 3)

        assert page.span == 3
        assert [row.key for row in page.rows] == ["V-003", "S-1001", "S-1002"]
        assert [row.source.table for row in page.rows] == [
            "legacy_vendors",
            "legacy_suppliers",
            "legacy_suppliers",
        ]

    @pytest.mark.asyncio
    async def test_past_the_end_is_empty(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)
        await cursor.prepare()

        page = await cursor.fetch(7, 10)

        assert page.rows == ()
        assert page.span == 0

    @pytest.mark.asyncio
    async def test_invalid_limit(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)
        await cursor.prepare()

        with pytest.raises(ValueError):
            await cursor.fetch(0, 0)

    @pytest.mark.asyncio
    async def test_pages_cover_every_row_once(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)
        await cursor.prepare()

        pages = [page async for page in cursor.pages(0, 3)]

        assert [page.offset for page in pages] == [0, 3, 6]
        keys = [row.key for page in pages for row in page.rows]
        assert len(keys) == len(set(keys)) == 7

    @pytest.mark.asyncio
    async def test_pages_resume_from_offset(self, supplier_source: InMemoryStore) -> None:
        cursor = BatchCursor(supplier_source, get_spec("suppliers"), enable_tracing=False)
        await cursor.prepare()

        pages = [page async for page in cursor.pages(5, 10)]

        assert len(pages) == 1
        assert [row.key for row in pages[0].rows] == ["S-1003", "S-1004"]

    @pytest.mark.asyncio
    async def test_removed_rows_show_as_missing(self, source: InMemoryStore) -> None:
        source.seed("legacy_customers", customer_rows(4))
        cursor = BatchCursor(source, get_spec("customers"), enable_tracing=False)
        await cursor.prepare()
        await source.delete_all("legacy_customers")

        page = await cursor.fetch(0, 4)

        assert page.span == 4
        assert page.missing == 4
