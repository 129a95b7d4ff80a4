"""
Batch cursor: deterministic pagination over an entity's legacy tables.

An entity may be fed by several legacy tables (suppliers come from
``legacy_vendors`` then ``legacy_suppliers``). The cursor lays them end to
end as one stream addressed by a single global offset, which is all an
EntityMigrationState needs to resume.

Source counts are taken once, when the cursor is prepared. Every page is
capped by them, so rows inserted into the legacy tables during a run are
never picked up halfway through, and the sum of page spans always equals
the prepared total.

Example:
    >>> cursor = BatchCursor(source, SUPPLIERS)
    >>> total = await cursor.prepare()
    >>> page = await cursor.fetch(offset=0, limit=1000)
    >>> page.span, len(page.rows)
    (1000, 1000)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from migrationsuite.entities import EntitySpec, SourceTable
from migrationsuite.exceptions import MigrationStateError
from migrationsuite.interfaces import SourceReader
from migrationsuite.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ENTITY,
    ATTR_OFFSET,
    ATTR_RECORDS_TOTAL,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceSegment:
    """
    Range of global offsets served by one legacy table.

    Attributes:
        source: The legacy table.
        start: First global offset of the segment.
        count: Rows counted in the table when the cursor was prepared.
    """

    source: SourceTable
    start: int
    count: int

    @property
    def end(self) -> int:
        """Global offset just past the segment."""
        return self.start + self.count

    def contains(self, offset: int) -> bool:
        """Check whether a global offset falls inside the segment."""
        return self.start <= offset < self.end


@dataclass(frozen=True)
class SourceRow:
    """A legacy row together with the table it was read from."""

    source: SourceTable
    row: dict[str, Any]

    @property
    def key(self) -> Any:
        """Natural key of the row, falling back to its id."""
        key = self.row.get(self.source.key_column)
        return key if key is not None else self.row.get("id")


@dataclass(frozen=True)
class SourcePage:
    """
    One page of source rows.

    ``span`` is the number of global offsets the page covers. It exceeds
    ``len(rows)`` only when rows counted at prepare time had disappeared
    by the time the page was read.

    Attributes:
        offset: Global offset of the first row.
        span: Global offsets covered.
        rows: Rows read, in cursor order.
    """

    offset: int
    span: int
    rows: tuple[SourceRow, ...]

    @property
    def end_offset(self) -> int:
        """Global offset just past the page."""
        return self.offset + self.span

    @property
    def missing(self) -> int:
        """Rows counted at prepare time but absent when read."""
        return self.span - len(self.rows)


class BatchCursor:
    """
    Stateless pagination primitive over an entity's legacy tables.

    The only state is the segment layout computed by prepare(); fetch()
    itself depends only on its arguments.
    """

    def __init__(
        self,
        reader: SourceReader,
        spec: EntitySpec,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the cursor.

        Args:
            reader: Source store to read from.
            spec: Entity whose legacy tables are paginated.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._reader = reader
        self._spec = spec
        self._segments: tuple[SourceSegment, ...] | None = None

    @property
    def is_prepared(self) -> bool:
        """Check if source counts have been taken."""
        return self._segments is not None

    @property
    def segments(self) -> tuple[SourceSegment, ...]:
        """Segment layout (raises if the cursor is not prepared)."""
        if self._segments is None:
            raise MigrationStateError(
                "Cursor has not been prepared",
                entity=self._spec.name,
            )
        return self._segments

    @property
    def total(self) -> int:
        """Rows across every segment."""
        return sum(segment.count for segment in self.segments)

    async def prepare(self) -> int:
        """
        Count every legacy table once and lay out the segments.

        Tables missing from the source are skipped with a warning; the
        pre-migration gate reports them.

        Returns:
            Total rows to paginate.
        """
        with self._tracer.span(
            "migrationsuite.cursor.prepare",
            {ATTR_ENTITY: self._spec.name},
        ) as span:
            segments: list[SourceSegment] = []
            start = 0
            for source in self._spec.sources:
                if not await self._reader.table_exists(source.table):
                    logger.warning(
                        "Source table %s for %s does not exist, skipping",
                        source.table,
                        self._spec.name,
                    )
                    continue
                count = await self._reader.count(source.table)
                segments.append(SourceSegment(source=source, start=start, count=count))
                start += count

            self._segments = tuple(segments)
            if span is not None:
                span.set_attribute(ATTR_RECORDS_TOTAL, start)
            logger.debug(
                "Prepared cursor for %s: %s",
                self._spec.name,
                ", ".join(f"{s.source.table}={s.count}" for s in segments) or "no sources",
            )
            return start

    async def fetch(self, offset: int, limit: int) -> SourcePage:
        """
        Read one page starting at a global offset.

        A page may cross from one legacy table into the next.

        Args:
            offset: Global offset of the first row.
            limit: Maximum rows in the page.

        Returns:
            The page; empty once ``offset`` reaches the total.
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

        with self._tracer.span(
            "migrationsuite.cursor.fetch",
            {ATTR_ENTITY: self._spec.name, ATTR_OFFSET: offset, ATTR_BATCH_SIZE: limit},
        ):
            end = min(offset + limit, self.total)
            rows: list[SourceRow] = []
            position = offset

            for segment in self.segments:
                if position >= end:
                    break
                if not segment.contains(position):
                    continue
                wanted = min(end, segment.end) - position
                fetched = await self._reader.fetch_page(
                    segment.source.table,
                    segment.source.order_by,
                    wanted,
                    position - segment.start,
                )
                rows.extend(SourceRow(segment.source, row) for row in fetched[:wanted])
                if len(fetched) < wanted:
                    logger.warning(
                        "%s returned %d of %d rows at offset %d; rows were removed during the run",
                        segment.source.table,
                        len(fetched),
                        wanted,
                        position - segment.start,
                    )
                position += wanted

            return SourcePage(offset=offset, span=max(0, end - offset), rows=tuple(rows))

    async def pages(self, start_offset: int, page_size: int) -> AsyncIterator[SourcePage]:
        """
        Iterate pages from ``start_offset`` to the end.

        Args:
            start_offset: Global offset to resume from.
            page_size: Rows per page.

        Yields:
            SourcePage instances in cursor order.
        """
        offset = start_offset
        while offset < self.total:
            page = await self.fetch(offset, page_size)
            yield page
            offset = page.end_offset


__all__ = ["SourceSegment", "SourceRow", "SourcePage", "BatchCursor"]
