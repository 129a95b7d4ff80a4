"""
Unit tests for migration timing estimates.
"""

import pytest

from migrationsuite.planning import DEFAULT_SECONDS_PER_THOUSAND, estimate_migration_timing


class TestEstimateMigrationTiming:
    """Tests for estimate_migration_timing."""

    def test_customers(self) -> None:
        estimate = estimate_migration_timing({"customers": 2500}, batch_size=1000)

        customers = estimate.for_entity("customers")
        assert customers is not None
        assert customers.batches == 3
        assert customers.estimated_seconds == 75
        assert customers.estimated_minutes == 1

    def test_totals_span_entities(self) -> None:
        estimate = estimate_migration_timing(
            {"customers": 1000, "suppliers": 2000, "products": 0}, batch_size=500
        )

        assert estimate.total_records == 3000
        assert estimate.total_batches == 6
        assert estimate.total_seconds == 30 + 70
        assert [e.entity for e in estimate.entities] == ["customers", "suppliers", "products"]

    def test_unknown_entity_uses_default_rate(self) -> None:
        estimate = estimate_migration_timing({"warehouses": 1000})

        assert estimate.entities[0].estimated_seconds == round(DEFAULT_SECONDS_PER_THOUSAND)

    def test_to_dict(self) -> None:
        document = estimate_migration_timing({"inventory": 3000}, batch_size=1000).to_dict()

        assert document["batch_size"] == 1000
        assert document["total"] == {
            "records": 3000,
            "batches": 3,
            "seconds": 120,
            "minutes": 2,
            "hours": 0.0,
        }

    def test_missing_entity(self) -> None:
        assert estimate_migration_timing({}).for_entity("customers") is None

    @pytest.mark.parametrize("batch_size", [0, -1])
    def test_invalid_batch_size(self, batch_size: int) -> None:
        with pytest.raises(ValueError):
            estimate_migration_timing({"customers": 10}, batch_size=batch_size)

    def test_negative_count(self) -> None:
        with pytest.raises(ValueError):
            estimate_migration_timing({"customers": -1})
