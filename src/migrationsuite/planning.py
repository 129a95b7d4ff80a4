"""
Timing estimates for a migration run.

Estimates use a benchmarked base rate per entity (seconds per 1000
records, see EntitySpec.base_seconds_per_thousand) and the configured
batch size.

Example:
    >>> estimate = estimate_migration_timing({"customers": 2500}, batch_size=1000)
    >>> estimate.entities[0].batches, estimate.entities[0].estimated_seconds
    (3, 75)
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from migrationsuite.entities import ENTITY_SPECS, Entity

DEFAULT_SECONDS_PER_THOUSAND = 20.0
"""Base rate for entities without a benchmark."""


@dataclass(frozen=True)
class EntityEstimate:
    """
    Estimate for one entity.

    Attributes:
        entity: Entity name.
        records: Source records counted.
        batches: Batches needed at the configured batch size.
        estimated_seconds: Estimated duration, rounded to whole seconds.
    """

    entity: str
    records: int
    batches: int
    estimated_seconds: int

    @property
    def estimated_minutes(self) -> int:
        return round(self.estimated_seconds / 60)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity": self.entity,
            "records": self.records,
            "batches": self.batches,
            "estimated_seconds": self.estimated_seconds,
            "estimated_minutes": self.estimated_minutes,
        }


@dataclass(frozen=True)
class TimingEstimate:
    """Estimates for every entity of a run plus totals."""

    entities: tuple[EntityEstimate, ...]
    batch_size: int

    @property
    def total_records(self) -> int:
        return sum(e.records for e in self.entities)

    @property
    def total_batches(self) -> int:
        return sum(e.batches for e in self.entities)

    @property
    def total_seconds(self) -> int:
        return sum(e.estimated_seconds for e in self.entities)

    def for_entity(self, entity: str) -> EntityEstimate | None:
        """Get the estimate of one entity."""
        return next((e for e in self.entities if e.entity == entity), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        seconds = self.total_seconds
        return {
            "batch_size": self.batch_size,
            "entities": [e.to_dict() for e in self.entities],
            "total": {
                "records": self.total_records,
                "batches": self.total_batches,
                "seconds": seconds,
                "minutes": round(seconds / 60),
                "hours": round(seconds / 3600, 1),
            },
        }


def _base_rate(entity: str) -> float:
    try:
        return ENTITY_SPECS[Entity(entity)].base_seconds_per_thousand
    except ValueError:
        return DEFAULT_SECONDS_PER_THOUSAND


def estimate_migration_timing(
    record_counts: Mapping[str, int],
    batch_size: int = 1000,
) -> TimingEstimate:
    """
    Estimate the duration of migrating the given record counts.

    Args:
        record_counts: Source records per entity name, in run order.
        batch_size: Records per batch.

    Returns:
        TimingEstimate with per-entity and total figures.

    Raises:
        ValueError: If batch_size < 1 or a count is negative.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    estimates = []
    for entity, count in record_counts.items():
        if count < 0:
            raise ValueError(f"record count for {entity} must be >= 0, got {count}")
        estimates.append(
            EntityEstimate(
                entity=entity,
                records=count,
                batches=math.ceil(count / batch_size),
                estimated_seconds=round(count / 1000 * _base_rate(entity)),
            )
        )
    return TimingEstimate(entities=tuple(estimates), batch_size=batch_size)


__all__ = [
    "DEFAULT_SECONDS_PER_THOUSAND",
    "EntityEstimate",
    "TimingEstimate",
    "estimate_migration_timing",
]
