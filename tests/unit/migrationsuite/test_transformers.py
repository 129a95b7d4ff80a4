"""
Unit tests for record transformers.
"""

from datetime import UTC, datetime

import pytest

from migrationsuite.exceptions import RecordTransformError
from migrationsuite.transformers import (
    TransformContext,
    transform_customer,
    transform_inventory,
    transform_product,
    transform_supplier,
    transform_vendor,
)

MIGRATED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
LEGACY_CREATED = datetime(2020, 3, 4, tzinfo=UTC)


def context(entity: str, **kwargs) -> TransformContext:
    return TransformContext(entity=entity, migrated_at=MIGRATED_AT, **kwargs)


class TestTransformCustomer:
    """Tests for transform_customer."""

    def test_maps_fields_and_nests_address(self) -> None:
        record = transform_customer(
            {
                "id": 7,
                "customer_code": "C-7",
                "company_name": "Acme",
                "email": "ops@acme.test",
                "city": "Lyon",
                "credit_limit": 5000,
                "created_at": LEGACY_CREATED,
            },
            context("customers"),
        )
        assert record["id"] == 7
        assert record["address"]["city"] == "Lyon"
        assert record["metadata"]["legacy"]["credit_limit"] == 5000
        assert record["purchase_history"] == []

    def test_stamps_migration_time(self) -> None:
        record = transform_customer(
            {"id": 1, "customer_code": "C-1", "created_at": LEGACY_CREATED},
            context("customers"),
        )
        assert record["created_at"] == MIGRATED_AT
        assert record["updated_at"] == MIGRATED_AT
        assert record["source_created_at"] == LEGACY_CREATED
        assert record["metadata"]["migration_date"] == MIGRATED_AT.isoformat()

    @pytest.mark.parametrize("code", [None, ""])
    def test_missing_code_fails_the_row(self, code) -> None:
        with pytest.raises(RecordTransformError) as exc_info:
            transform_customer({"id": 3, "customer_code": code}, context("customers"))
        assert exc_info.value.record_key == 3


class TestSupplierConsolidation:
    """Tests for vendor and supplier transformers."""

    def test_vendor_becomes_approved_supplier(self) -> None:
        record = transform_vendor(
            {"id": 1, "vendor_code": "V-1", "company_name": "Bolt", "created_at": LEGACY_CREATED},
            context("suppliers"),
        )
        assert record["supplier_code"] == "V-1"
        assert record["supplier_type"] == "vendor"
        assert record["is_approved"] is True
        assert record["approved_at"] == LEGACY_CREATED
        assert record["metadata"]["legacy"]["original_type"] == "vendor"

    def test_supplier_keeps_approval_flag(self) -> None:
        record = transform_supplier(
            {"id": 2, "supplier_code": "S-2", "is_approved": False},
            context("suppliers"),
        )
        assert record["supplier_type"] == "supplier"
        assert record["is_approved"] is False

    def test_vendor_without_code_fails(self) -> None:
        with pytest.raises(RecordTransformError):
            transform_vendor({"id": 9}, context("suppliers"))


class TestLookups:
    """Tests for resolved foreign keys."""

    def test_optional_lookup_may_stay_unresolved(self) -> None:
        record = transform_product({"id": 1, "sku": "SKU-1"}, context("products"))
        assert record["supplier_id"] is None

    def test_resolved_lookup_is_used(self) -> None:
        record = transform_product(
            {"id": 1, "sku": "SKU-1", "price": 4.5},
            context("products", lookups={"supplier_id": 42}),
        )
        assert record["supplier_id"] == 42
        assert record["unit_price"] == 4.5

    def test_required_lookup_must_resolve(self) -> None:
        with pytest.raises(RecordTransformError, match="product_id"):
            transform_inventory(
                {"id": 5, "product_sku": "SKU-404"},
                context("inventory", required_lookups=frozenset({"product_id"})),
            )
