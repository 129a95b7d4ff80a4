"""
Shared test data for migrationsuite tests.

Provides builders for legacy source rows and helpers to seed in-memory
stores with a consistent legacy dataset.
"""

from tests.fixtures.legacy import (
    BASE_TIME,
    customer_rows,
    inventory_rows,
    price_list_item_rows,
    price_list_rows,
    product_rows,
    seed_full_dataset,
    supplier_rows,
    upload_history_rows,
    vendor_rows,
)

__all__ = [
    "BASE_TIME",
    "customer_rows",
    "vendor_rows",
    "supplier_rows",
    "product_rows",
    "inventory_rows",
    "price_list_rows",
    "price_list_item_rows",
    "upload_history_rows",
    "seed_full_dataset",
]
