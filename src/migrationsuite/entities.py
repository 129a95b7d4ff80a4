"""
Entity registry: the closed set of migrated entities and their tables.

Every table name the engine ever touches is declared here. Store adapters
refuse identifiers outside KNOWN_TABLES, and the dependency graph between
entities is checked before any I/O.

Entities and dependencies:
    customers
    suppliers          (legacy_vendors + legacy_suppliers)
    products           -> suppliers
    inventory          -> products
    price_lists        -> suppliers
    price_list_items   -> price_lists
    upload_history     -> suppliers, price_lists

Example:
    >>> from migrationsuite.entities import Entity, ENTITY_SPECS, topological_order
    >>> [spec.name for spec in topological_order(ENTITY_SPECS.values())][:3]
    ['customers', 'suppliers', 'products']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from migrationsuite.exceptions import DependencyCycleError, UnknownDependencyError
from migrationsuite.transformers import (
    TransformFn,
    transform_customer,
    transform_inventory,
    transform_price_list,
    transform_price_list_item,
    transform_product,
    transform_supplier,
    transform_upload_history,
    transform_vendor,
)

logger = logging.getLogger(__name__)


class Entity(Enum):
    """The business entities copied from the legacy schema."""

    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    PRODUCTS = "products"
    INVENTORY = "inventory"
    PRICE_LISTS = "price_lists"
    PRICE_LIST_ITEMS = "price_list_items"
    UPLOAD_HISTORY = "upload_history"


@dataclass(frozen=True)
class SourceTable:
    """
    One legacy table feeding an entity.

    Attributes:
        table: Legacy table name.
        sort_key: Stable ordering column for pagination.
        transform: Transformer for rows of this table.
        key_column: Column holding the row's natural key.
        required_columns: Columns that must exist for the table to migrate.
    """

    table: str
    sort_key: str
    transform: TransformFn
    key_column: str = "id"
    required_columns: tuple[str, ...] = ()

    @property
    def order_by(self) -> tuple[str, ...]:
        """Ordering columns; ``id`` breaks ties between equal sort keys."""
        if self.sort_key == "id":
            return ("id",)
        return (self.sort_key, "id")


@dataclass(frozen=True)
class LookupSpec:
    """
    A foreign key resolved against the target while migrating.

    Candidate matches are tried in order; the first one that finds a target
    row wins.

    Attributes:
        field: Target record field receiving the resolved value.
        target_table: Table searched.
        matches: (legacy column, target column) pairs tried in order.
        value_column: Target column whose value is returned.
        required: Whether an unresolved lookup fails the row.
    """

    field: str
    target_table: str
    matches: tuple[tuple[str, str], ...]
    value_column: str = "id"
    required: bool = False


@dataclass(frozen=True)
class Relationship:
    """
    A child -> parent reference checked for orphans.

    Attributes:
        child_table: Table holding the foreign key.
        foreign_key: Foreign key column.
        parent_table: Referenced table.
        parent_key: Referenced column.
        enforced: Orphans are critical when enforced, warnings otherwise.
    """

    child_table: str
    foreign_key: str
    parent_table: str
    parent_key: str = "id"
    enforced: bool = True

    @property
    def code(self) -> str:
        """Finding code for orphans of this relationship."""
        return f"ORPHANED_{self.child_table.upper()}"


@dataclass(frozen=True)
class EntitySpec:
    """
    Static description of how one entity migrates.

    Attributes:
        entity: The entity.
        target_table: Table written in the new schema.
        sources: Legacy tables, read in order as one concatenated stream.
        natural_key: Target column used for insert-or-ignore.
        dependencies: Entities that must complete first.
        lookups: Foreign keys resolved against the target.
        required_fields: Target fields that must be present (sample checks).
        relationships: References from this entity checked for orphans.
        base_seconds_per_thousand: Timing estimate base rate.
    """

    entity: Entity
    target_table: str
    sources: tuple[SourceTable, ...]
    natural_key: str = "id"
    dependencies: tuple[Entity, ...] = ()
    lookups: tuple[LookupSpec, ...] = ()
    required_fields: tuple[str, ...] = ()
    relationships: tuple[Relationship, ...] = ()
    base_seconds_per_thousand: float = 20.0

    @property
    def name(self) -> str:
        """Entity name (e.g. "customers")."""
        return self.entity.value

    @property
    def source_tables(self) -> tuple[str, ...]:
        """Names of the legacy tables feeding the entity."""
        return tuple(source.table for source in self.sources)

    @property
    def dependency_names(self) -> tuple[str, ...]:
        """Names of the entities this one depends on."""
        return tuple(dep.value for dep in self.dependencies)

    @property
    def required_lookups(self) -> frozenset[str]:
        """Lookup fields that must resolve."""
        return frozenset(lookup.field for lookup in self.lookups if lookup.required)


_SUPPLIER_MATCHES = (("supplier_code", "supplier_code"), ("supplier_id", "id"))

CUSTOMERS = EntitySpec(
    entity=Entity.CUSTOMERS,
    target_table="customers",
    sources=(
        SourceTable(
            "legacy_customers",
            "created_at",
            transform_customer,
            key_column="customer_code",
            required_columns=("id", "customer_code", "company_name", "email", "created_at"),
        ),
    ),
    natural_key="customer_code",
    required_fields=("customer_code", "company_name", "email"),
    base_seconds_per_thousand=30.0,
)

SUPPLIERS = EntitySpec(
    entity=Entity.SUPPLIERS,
    target_table="suppliers",
    sources=(
        SourceTable(
            "legacy_vendors",
            "created_at",
            transform_vendor,
            key_column="vendor_code",
            required_columns=("id", "vendor_code", "company_name", "created_at"),
        ),
        SourceTable(
            "legacy_suppliers",
            "created_at",
            transform_supplier,
            key_column="supplier_code",
            required_columns=("id", "supplier_code", "company_name", "created_at"),
        ),
    ),
    natural_key="supplier_code",
    required_fields=("supplier_code", "company_name", "email"),
    base_seconds_per_thousand=35.0,
)

PRODUCTS = EntitySpec(
    entity=Entity.PRODUCTS,
    target_table="products",
    sources=(
        SourceTable(
            "legacy_products",
            "created_at",
            transform_product,
            key_column="sku",
            required_columns=("id", "sku", "created_at"),
        ),
    ),
    natural_key="sku",
    dependencies=(Entity.SUPPLIERS,),
    lookups=(LookupSpec("supplier_id", "suppliers", _SUPPLIER_MATCHES),),
    required_fields=("sku", "name"),
    relationships=(Relationship("products", "supplier_id", "suppliers"),),
    base_seconds_per_thousand=25.0,
)

INVENTORY = EntitySpec(
    entity=Entity.INVENTORY,
    target_table="inventory",
    sources=(
        SourceTable(
            "legacy_inventory",
            "created_at",
            transform_inventory,
            required_columns=("id", "product_sku", "created_at"),
        ),
    ),
    dependencies=(Entity.PRODUCTS,),
    lookups=(LookupSpec("product_id", "products", (("product_sku", "sku"),), required=True),),
    required_fields=("product_id",),
    relationships=(Relationship("inventory", "product_id", "products"),),
    base_seconds_per_thousand=40.0,
)

PRICE_LISTS = EntitySpec(
    entity=Entity.PRICE_LISTS,
    target_table="price_lists",
    sources=(
        SourceTable(
            "legacy_price_lists",
            "created_at",
            transform_price_list,
            required_columns=("id", "created_at"),
        ),
    ),
    dependencies=(Entity.SUPPLIERS,),
    lookups=(LookupSpec("supplier_id", "suppliers", _SUPPLIER_MATCHES, required=True),),
    required_fields=("supplier_id", "name"),
    relationships=(Relationship("price_lists", "supplier_id", "suppliers"),),
    base_seconds_per_thousand=20.0,
)

PRICE_LIST_ITEMS = EntitySpec(
    entity=Entity.PRICE_LIST_ITEMS,
    target_table="price_list_items",
    sources=(
        SourceTable(
            "legacy_price_list_items",
            "created_at",
            transform_price_list_item,
            required_columns=("id", "price_list_id", "created_at"),
        ),
    ),
    dependencies=(Entity.PRICE_LISTS,),
    lookups=(
        LookupSpec("price_list_id", "price_lists", (("price_list_id", "id"),), required=True),
    ),
    required_fields=("price_list_id", "sku"),
    relationships=(Relationship("price_list_items", "price_list_id", "price_lists"),),
    base_seconds_per_thousand=15.0,
)

UPLOAD_HISTORY = EntitySpec(
    entity=Entity.UPLOAD_HISTORY,
    target_table="upload_history",
    sources=(
        SourceTable(
            "legacy_upload_history",
            "upload_date",
            transform_upload_history,
            required_columns=("id", "file_name", "upload_date"),
        ),
    ),
    dependencies=(Entity.SUPPLIERS, Entity.PRICE_LISTS),
    lookups=(
        LookupSpec("supplier_id", "suppliers", _SUPPLIER_MATCHES),
        LookupSpec("price_list_id", "price_lists", (("price_list_id", "id"),)),
    ),
    required_fields=("file_name",),
    relationships=(
        Relationship("upload_history", "supplier_id", "suppliers", enforced=False),
    ),
    base_seconds_per_thousand=10.0,
)

ENTITY_SPECS: dict[Entity, EntitySpec] = {
    spec.entity: spec
    for spec in (
        CUSTOMERS,
        SUPPLIERS,
        PRODUCTS,
        INVENTORY,
        PRICE_LISTS,
        PRICE_LIST_ITEMS,
        UPLOAD_HISTORY,
    )
}
"""Registry of every entity, in declaration order."""

SOURCE_TABLES: frozenset[str] = frozenset(
    source.table for spec in ENTITY_SPECS.values() for source in spec.sources
)
TARGET_TABLES: frozenset[str] = frozenset(spec.target_table for spec in ENTITY_SPECS.values())
KNOWN_TABLES: frozenset[str] = SOURCE_TABLES | TARGET_TABLES

RELATIONSHIPS: tuple[Relationship, ...] = tuple(
    relationship for spec in ENTITY_SPECS.values() for relationship in spec.relationships
)


def get_spec(entity: Entity | str) -> EntitySpec:
    """
    Look up the spec of an entity.

    Args:
        entity: Entity member or name.

    Returns:
        The registered EntitySpec.

    Raises:
        ValueError: If the name is not a known entity.
    """
    return ENTITY_SPECS[Entity(entity)]


def specs_for(entities: Iterable[Entity | str] | None = None) -> list[EntitySpec]:
    """
    Select registered specs, keeping declaration order.

    Args:
        entities: Entities to select; None selects all.

    Returns:
        The selected specs.
    """
    if entities is None:
        return list(ENTITY_SPECS.values())
    wanted = {Entity(e) for e in entities}
    return [spec for spec in ENTITY_SPECS.values() if spec.entity in wanted]


def topological_order(specs: Iterable[EntitySpec]) -> list[EntitySpec]:
    """
    Order specs so every entity comes after its dependencies.

    Ties are broken by the order specs were given in, so the result is
    deterministic.

    Args:
        specs: Entity specs to order.

    Returns:
        Specs in dependency order.

    Raises:
        UnknownDependencyError: If a dependency is not among the specs.
        DependencyCycleError: If the dependencies form a cycle.
    """
    ordered_input = list(specs)
    by_entity = {spec.entity: spec for spec in ordered_input}

    for spec in ordered_input:
        for dep in spec.dependencies:
            if dep not in by_entity:
                raise UnknownDependencyError(spec.name, dep.value)

    result: list[EntitySpec] = []
    placed: set[Entity] = set()
    remaining = list(ordered_input)

    while remaining:
        ready = next(
            (spec for spec in remaining if all(dep in placed for dep in spec.dependencies)),
            None,
        )
        if ready is None:
            raise DependencyCycleError(_find_cycle(remaining))
        result.append(ready)
        placed.add(ready.entity)
        remaining.remove(ready)

    logger.debug("Dependency order: %s", ", ".join(spec.name for spec in result))
    return result


def reverse_dependency_order(specs: Iterable[EntitySpec]) -> list[EntitySpec]:
    """Mirror of topological_order: children before their parents."""
    return list(reversed(topological_order(specs)))


def _find_cycle(specs: list[EntitySpec]) -> list[str]:
    by_entity = {spec.entity: spec for spec in specs}
    start = specs[0].entity
    path: list[Entity] = []
    current = start
    # every remaining spec has an unplaced dependency, so walking always loops
    while current not in path:
        path.append(current)
        current = next(dep for dep in by_entity[current].dependencies if dep in by_entity)
    cycle = path[path.index(current) :]
    return [entity.value for entity in cycle] + [current.value]


__all__ = [
    "Entity",
    "SourceTable",
    "LookupSpec",
    "Relationship",
    "EntitySpec",
    "ENTITY_SPECS",
    "SOURCE_TABLES",
    "TARGET_TABLES",
    "KNOWN_TABLES",
    "RELATIONSHIPS",
    "get_spec",
    "specs_for",
    "topological_order",
    "reverse_dependency_order",
]
