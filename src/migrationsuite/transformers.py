"""
Record transformers mapping legacy rows to target records.

Each transformer is a pure function taking one legacy row plus a
TransformContext (the migration timestamp and the foreign keys resolved
for that row) and returning one target record. Transformers never touch
I/O. A row that cannot be mapped raises RecordTransformError; the batch
processor drops it from its batch and counts it as failed.

Every target record carries:
    - ``created_at`` / ``updated_at``: the migration write time, so
      rollbacks bounded by ``created_at`` select exactly what a run wrote
    - ``source_created_at``: the legacy creation time

Example:
    >>> from datetime import UTC, datetime
    >>> context = TransformContext(entity="customers", migrated_at=datetime.now(UTC))
    >>> record = transform_customer({"id": 1, "customer_code": "C-1"}, context)
    >>> record["customer_code"]
    'C-1'
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from migrationsuite.exceptions import RecordTransformError

Row = Mapping[str, Any]
Record = dict[str, Any]


@dataclass(frozen=True)
class TransformContext:
    """
    Inputs a transformer needs beyond the legacy row itself.

    Attributes:
        entity: Entity being migrated.
        migrated_at: Migration write time stamped on every record.
        lookups: Foreign keys resolved for this row (field -> target id).
        required_lookups: Lookup fields that must resolve.
    """

    entity: str
    migrated_at: datetime
    lookups: Mapping[str, Any] = field(default_factory=dict)
    required_lookups: frozenset[str] = frozenset()

    def lookup(self, name: str, record_key: Any) -> Any:
        """
        Get a resolved foreign key.

        Args:
            name: Lookup field name (e.g. "supplier_id").
            record_key: Key of the row being transformed, for error context.

        Returns:
            The resolved target id, or None for an unresolved optional lookup.

        Raises:
            RecordTransformError: If a required lookup did not resolve.
        """
        value = self.lookups.get(name)
        if value is None and name in self.required_lookups:
            raise RecordTransformError(
                f"unresolved required reference {name}",
                record_key=record_key,
                entity=self.entity,
            )
        return value

    @property
    def migration_date(self) -> str:
        """Migration timestamp as stored in record metadata."""
        return self.migrated_at.isoformat()


TransformFn = Callable[[Row, TransformContext], Record]
"""Signature shared by all transformers."""


def _require(row: Row, column: str, context: TransformContext) -> Any:
    value = row.get(column)
    if value is None or value == "":
        raise RecordTransformError(
            f"missing {column}",
            record_key=row.get("id"),
            entity=context.entity,
        )
    return value


def _timestamps(row: Row, context: TransformContext) -> Record:
    return {
        "created_at": context.migrated_at,
        "updated_at": context.migrated_at,
        "source_created_at": row.get("created_at"),
    }


def transform_customer(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_customers`` row to a ``customers`` record."""
    return {
        "id": row.get("id"),
        "customer_code": _require(row, "customer_code", context),
        "company_name": row.get("company_name"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "address": {
            "line1": row.get("address_line_1"),
            "line2": row.get("address_line_2"),
            "city": row.get("city"),
            "state": row.get("state"),
            "country": row.get("country"),
            "postal_code": row.get("postal_code"),
        },
        "metadata": {
            "legacy": {
                "customer_type": row.get("customer_type"),
                "credit_limit": row.get("credit_limit"),
                "payment_terms": row.get("payment_terms"),
                "tax_id": row.get("tax_id"),
                "industry": row.get("industry"),
                "status": row.get("customer_status"),
            },
            "migration_date": context.migration_date,
            "contact_person": row.get("contact_person"),
        },
        # populated by a separate process
        "purchase_history": [],
        **_timestamps(row, context),
    }


def _supplier_common(row: Row, code: Any, context: TransformContext) -> Record:
    return {
        "id": row.get("id"),
        "supplier_code": code,
        "company_name": row.get("company_name"),
        "email": row.get("email"),
        "phone": row.get("phone"),
        "website": row.get("website"),
        "address": row.get("address_data") or {},
        "contact_details": row.get("contact_details") or {},
        "payment_terms": row.get("payment_terms") or {},
        "credit_limit": row.get("credit_limit"),
        "tax_id": row.get("tax_id"),
        "industry": row.get("industry"),
        "performance_rating": row.get("performance_rating") or 0,
        "lead_time_days": row.get("lead_time_days") or 0,
        "is_active": row.get("is_active") is not False,
    }


def transform_vendor(row: Row, context: TransformContext) -> Record:
    """
    Map a ``legacy_vendors`` row to a ``suppliers`` record.

    Vendors are consolidated into suppliers: the vendor code becomes the
    supplier code, the record is marked ``supplier_type='vendor'`` and is
    treated as approved since its legacy creation.
    """
    code = row.get("vendor_code") or row.get("supplier_code")
    if not code:
        raise RecordTransformError(
            "missing vendor_code",
            record_key=row.get("id"),
            entity=context.entity,
        )
    record = _supplier_common(row, code, context)
    record.update(
        {
            "supplier_type": "vendor",
            "metadata": {
                "legacy": {
                    "original_type": "vendor",
                    "vendor_type": row.get("vendor_type"),
                    "certification_data": row.get("certification_data"),
                    "contract_details": row.get("contract_details"),
                },
                "migration_date": context.migration_date,
            },
            "is_approved": True,
            "approved_at": row.get("created_at"),
            "approved_by": None,
            **_timestamps(row, context),
        }
    )
    return record


def transform_supplier(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_suppliers`` row to a ``suppliers`` record."""
    record = _supplier_common(row, _require(row, "supplier_code", context), context)
    record.update(
        {
            "supplier_type": row.get("supplier_type") or "supplier",
            "metadata": {
                "legacy": {"original_type": "supplier"},
                "migration_date": context.migration_date,
            },
            "is_approved": row.get("is_approved") is not False,
            "approved_at": row.get("approved_at"),
            "approved_by": row.get("approved_by"),
            **_timestamps(row, context),
        }
    )
    return record


def transform_product(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_products`` row to a ``products`` record."""
    sku = _require(row, "sku", context)
    return {
        "id": row.get("id"),
        "sku": sku,
        "name": row.get("name") or row.get("product_name"),
        "description": row.get("description"),
        "category": row.get("category"),
        "unit_price": row.get("unit_price") or row.get("price") or 0,
        "cost_price": row.get("cost_price") or row.get("cost") or 0,
        "supplier_id": context.lookup("supplier_id", sku),
        "is_active": row.get("is_active") is not False,
        "metadata": {
            "legacy": {
                "product_code": row.get("product_code"),
                "barcode": row.get("barcode"),
                "weight": row.get("weight"),
                "dimensions": row.get("dimensions"),
                "tags": row.get("tags"),
            },
            "migration_date": context.migration_date,
        },
        **_timestamps(row, context),
    }


def transform_inventory(row: Row, context: TransformContext) -> Record:
    """
    Map a ``legacy_inventory`` row to an ``inventory`` record.

    The product is resolved by SKU; rows whose product was not migrated
    fail instead of being silently dropped.
    """
    key = _require(row, "id", context)
    quantity_on_hand = row.get("quantity_on_hand") or row.get("quantity") or 0
    return {
        "id": key,
        "product_id": context.lookup("product_id", key),
        "warehouse_id": row.get("warehouse_id"),
        "location_id": row.get("location_id"),
        "quantity_on_hand": quantity_on_hand,
        "quantity_available": row.get("quantity_available") or row.get("quantity_on_hand") or 0,
        "quantity_reserved": row.get("quantity_reserved") or 0,
        "quantity_in_transit": row.get("quantity_in_transit") or 0,
        "last_stock_check": row.get("last_stock_check"),
        "last_movement": row.get("last_movement"),
        "stock_status": row.get("stock_status") or "in_stock",
        "reorder_point": row.get("reorder_point") or 0,
        "reorder_quantity": row.get("reorder_quantity") or 0,
        "max_stock_level": row.get("max_stock_level"),
        "min_stock_level": row.get("min_stock_level") or 0,
        "average_cost": row.get("average_cost"),
        "last_purchase_cost": row.get("last_purchase_cost"),
        "metadata": {
            "legacy": {
                "original_inventory_id": row.get("id"),
                "product_sku": row.get("product_sku"),
            },
            "migration_date": context.migration_date,
        },
        **_timestamps(row, context),
    }


def transform_price_list(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_price_lists`` row to a ``price_lists`` record."""
    key = _require(row, "id", context)
    return {
        "id": key,
        "supplier_id": context.lookup("supplier_id", key),
        "name": row.get("name") or row.get("price_list_name"),
        "effective_date": row.get("effective_date"),
        "expiry_date": row.get("expiry_date"),
        "status": row.get("status") or "active",
        "version": row.get("version") or "1.0",
        "parent_price_list_id": row.get("parent_price_list_id"),
        "upload_format": row.get("upload_format"),
        "original_file_path": row.get("original_file_path"),
        "original_file_name": row.get("original_file_name"),
        "validation_status": row.get("validation_status") or "validated",
        "validation_errors": row.get("validation_errors") or [],
        "approved_by": row.get("approved_by"),
        "approved_at": row.get("approved_at"),
        "item_count": row.get("item_count") or 0,
        "currencies_supported": row.get("currencies_supported") or ["USD"],
        **_timestamps(row, context),
    }


def transform_price_list_item(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_price_list_items`` row to a ``price_list_items`` record."""
    key = _require(row, "id", context)
    return {
        "id": key,
        "price_list_id": context.lookup("price_list_id", key),
        "sku": row.get("sku"),
        "description": row.get("description"),
        "unit_price": row.get("unit_price") or row.get("price"),
        "currency": row.get("currency") or "USD",
        "min_quantity": row.get("min_quantity") or 1,
        "discount_percent": row.get("discount_percent") or 0,
        "tier_pricing": row.get("tier_pricing") or [],
        **_timestamps(row, context),
    }


def transform_upload_history(row: Row, context: TransformContext) -> Record:
    """Map a ``legacy_upload_history`` row to an ``upload_history`` record."""
    key = _require(row, "id", context)
    return {
        "id": key,
        "supplier_id": context.lookup("supplier_id", key),
        "price_list_id": context.lookup("price_list_id", key),
        "file_name": row.get("file_name"),
        "file_type": row.get("file_type"),
        "file_size": row.get("file_size"),
        "status": row.get("status"),
        "item_count": row.get("item_count") or 0,
        "success_count": row.get("success_count") or 0,
        "error_count": row.get("error_count") or 0,
        "errors": row.get("errors") or [],
        "warnings": row.get("warnings") or [],
        "upload_date": row.get("upload_date"),
        "completed_at": row.get("completed_at"),
        "failed_at": row.get("failed_at"),
        "uploaded_by": row.get("uploaded_by"),
        "metadata": row.get("metadata") or {},
        **_timestamps(row, context),
    }


__all__ = [
    "Row",
    "Record",
    "TransformContext",
    "TransformFn",
    "transform_customer",
    "transform_vendor",
    "transform_supplier",
    "transform_product",
    "transform_inventory",
    "transform_price_list",
    "transform_price_list_item",
    "transform_upload_history",
]
