"""
Validation engine: the pre- and post-migration gates.

Validation is read-only and idempotent. Findings carry no timestamps and
are returned sorted, so validating unchanged data twice yields equal
lists.

Pre-migration gate:
    - Source and target stores are reachable
    - Legacy tables exist (missing ones are skipped, warning)
    - Required legacy columns exist (critical)
    - Target tables exist (critical)
    - Data-quality rules over legacy data (duplicate natural keys,
      missing required values)

Post-migration gate:
    - ``migrated == total`` for every entity (RECORD_COUNT_MISMATCH)
    - Sampled target rows carry their required business fields
      (INVALID_<ENTITY>_DATA)
    - No orphaned references (ORPHANED_<CHILD>)

Example:
    >>> engine = ValidationEngine(source, target, config)
    >>> findings = await engine.validate_pre_migration(specs)
    >>> [f.code for f in findings if f.is_critical]
    ['MISSING_SUPPLIER_NAME']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from migrationsuite.entities import (
    ENTITY_SPECS,
    RELATIONSHIPS,
    Entity,
    EntitySpec,
    Relationship,
    topological_order,
)
from migrationsuite.events import ValidationCompleted
from migrationsuite.exceptions import StoreError
from migrationsuite.interfaces import EventPublisher, SourceReader, TargetWriter
from migrationsuite.metrics import MigrationMetrics
from migrationsuite.models import (
    FindingKind,
    MigrationConfig,
    MigrationSession,
    Severity,
    ValidationFinding,
    ValidationGate,
)
from migrationsuite.observability import (
    ATTR_CRITICAL_COUNT,
    ATTR_FINDING_COUNT,
    ATTR_GATE,
    ATTR_SESSION_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

_SPECS_BY_TABLE: dict[str, EntitySpec] = {spec.target_table: spec for spec in ENTITY_SPECS.values()}


@dataclass(frozen=True)
class ColumnRef:
    """A legacy column checked by a data-quality rule."""

    table: str
    column: str
    key_column: str = "id"


@dataclass(frozen=True)
class DataQualityRule:
    """
    A check over legacy data run by the pre-migration gate.

    Attributes:
        code: Finding code (e.g. "DUPLICATE_CUSTOMER_CODES").
        kind: Finding kind.
        severity: Critical when the defect would break a write.
        entity: Entity the rule belongs to; skipped when not migrated.
        columns: Columns checked; duplicate rules consider them together.
        description: Message prefix.
    """

    code: str
    kind: FindingKind
    severity: Severity
    entity: Entity
    columns: tuple[ColumnRef, ...]
    description: str

    @property
    def is_duplicate_check(self) -> bool:
        """Check if the rule looks for duplicate values."""
        return self.kind == FindingKind.DUPLICATE_KEY


DATA_QUALITY_RULES: tuple[DataQualityRule, ...] = (
    DataQualityRule(
        code="DUPLICATE_CUSTOMER_CODES",
        kind=FindingKind.DUPLICATE_KEY,
        severity=Severity.CRITICAL,
        entity=Entity.CUSTOMERS,
        columns=(ColumnRef("legacy_customers", "customer_code"),),
        description="Duplicate customer codes would violate the customers unique key",
    ),
    DataQualityRule(
        code="DUPLICATE_SUPPLIER_CODES",
        kind=FindingKind.DUPLICATE_KEY,
        severity=Severity.CRITICAL,
        entity=Entity.SUPPLIERS,
        columns=(
            ColumnRef("legacy_vendors", "vendor_code"),
            ColumnRef("legacy_suppliers", "supplier_code"),
        ),
        description="Duplicate supplier codes across vendors and suppliers",
    ),
    DataQualityRule(
        code="DUPLICATE_PRODUCT_SKUS",
        kind=FindingKind.DUPLICATE_KEY,
        severity=Severity.CRITICAL,
        entity=Entity.PRODUCTS,
        columns=(ColumnRef("legacy_products", "sku"),),
        description="Duplicate product SKUs would violate the products unique key",
    ),
    DataQualityRule(
        code="MISSING_CUSTOMER_CODE",
        kind=FindingKind.MISSING_REQUIRED_FIELD,
        severity=Severity.CRITICAL,
        entity=Entity.CUSTOMERS,
        columns=(ColumnRef("legacy_customers", "customer_code"),),
        description="Customers without a customer code",
    ),
    DataQualityRule(
        code="MISSING_SUPPLIER_NAME",
        kind=FindingKind.MISSING_REQUIRED_FIELD,
        severity=Severity.CRITICAL,
        entity=Entity.SUPPLIERS,
        columns=(
            ColumnRef("legacy_vendors", "company_name", "vendor_code"),
            ColumnRef("legacy_suppliers", "company_name", "supplier_code"),
        ),
        description="Suppliers without a company name",
    ),
    DataQualityRule(
        code="MISSING_CUSTOMER_EMAILS",
        kind=FindingKind.MISSING_REQUIRED_FIELD,
        severity=Severity.WARNING,
        entity=Entity.CUSTOMERS,
        columns=(ColumnRef("legacy_customers", "email", "customer_code"),),
        description="Customers without an email address",
    ),
)
"""Data-quality rules of the pre-migration gate."""


def sort_findings(findings: Iterable[ValidationFinding]) -> list[ValidationFinding]:
    """Order findings deterministically (gate, entity, code, message)."""
    return sorted(findings, key=lambda finding: finding.sort_key())


def _sample(values: Iterable[Any], size: int) -> tuple[Any, ...]:
    return tuple(sorted(values, key=lambda value: (value is None, str(value)))[:size])


class ValidationEngine:
    """
    Runs the validation gates against the source and target stores.

    The engine never writes. Every gate returns a sorted list of
    ValidationFinding and, when a publisher and session id are known,
    publishes a ValidationCompleted event.
    """

    def __init__(
        self,
        source: SourceReader,
        target: TargetWriter,
        config: MigrationConfig | None = None,
        *,
        publisher: EventPublisher | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the validation engine.

        Args:
            source: Legacy store.
            target: New store (only its read methods are used).
            config: Migration configuration (sample size).
            publisher: Receives ValidationCompleted events.
            metrics: Metric instruments to record findings on.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._config = config or MigrationConfig()
        self._publisher = publisher
        self._metrics = metrics

    @property
    def sample_size(self) -> int:
        """Rows sampled per entity."""
        return self._config.validation_sample_size

    # -- pre-migration ----------------------------------------------------------

    async def validate_pre_migration(
        self,
        specs: Sequence[EntitySpec] | None = None,
        *,
        session_id: UUID | None = None,
    ) -> list[ValidationFinding]:
        """
        Run the pre-migration gate.

        Args:
            specs: Entities about to be migrated (all when omitted).
            session_id: Session to attribute the ValidationCompleted event to.

        Returns:
            Sorted findings. Any critical finding must halt the run.
        """
        specs = list(specs) if specs is not None else list(ENTITY_SPECS.values())
        gate = ValidationGate.PRE_MIGRATION

        with self._tracer.span(
            "migrationsuite.validation.pre_migration",
            {ATTR_GATE: gate.value, ATTR_SESSION_ID: str(session_id) if session_id else ""},
        ) as span:
            findings: list[ValidationFinding] = []

            source_ok = await self._check_reachable(self._source, "SOURCE_UNREACHABLE", findings)
            target_ok = await self._check_reachable(self._target, "TARGET_UNREACHABLE", findings)

            available: dict[str, frozenset[str]] = {}
            if source_ok:
                available = await self._check_source_schema(specs, findings)
            if target_ok:
                await self._check_target_schema(specs, findings)
            if source_ok:
                await self._check_data_quality(specs, available, findings)

            return await self._finish(gate, findings, session_id, span)

    async def _check_reachable(
        self,
        store: SourceReader,
        code: str,
        findings: list[ValidationFinding],
    ) -> bool:
        try:
            await store.ping()
        except StoreError as e:
            findings.append(self._unreachable(code, None, e))
            return False
        return True

    @staticmethod
    def _unreachable(
        code: str,
        table: str | None,
        error: StoreError,
        gate: ValidationGate = ValidationGate.PRE_MIGRATION,
    ) -> ValidationFinding:
        return ValidationFinding(
            kind=FindingKind.UNREACHABLE_STORE,
            code=code,
            severity=Severity.CRITICAL,
            gate=gate,
            entity=table,
            count=1,
            message=str(error),
        )

    async def _check_source_schema(
        self,
        specs: Sequence[EntitySpec],
        findings: list[ValidationFinding],
    ) -> dict[str, frozenset[str]]:
        """Check legacy tables and columns; returns columns of usable tables."""
        available: dict[str, frozenset[str]] = {}
        for spec in specs:
            for source in spec.sources:
                try:
                    if not await self._source.table_exists(source.table):
                        findings.append(
                            ValidationFinding(
                                kind=FindingKind.MISSING_TABLE,
                                code="MISSING_SOURCE_TABLE",
                                severity=Severity.WARNING,
                                gate=ValidationGate.PRE_MIGRATION,
                                entity=source.table,
                                count=1,
                                message=(
                                    f"Legacy table {source.table} does not exist; "
                                    f"{spec.name} will skip it"
                                ),
                            )
                        )
                        continue
                    columns = await self._source.columns(source.table)
                except StoreError as e:
                    findings.append(self._unreachable("SOURCE_UNREACHABLE", source.table, e))
                    continue

                missing = sorted(set(source.required_columns) - columns)
                if missing:
                    findings.append(
                        ValidationFinding(
                            kind=FindingKind.MISSING_COLUMN,
                            code="MISSING_SOURCE_COLUMN",
                            severity=Severity.CRITICAL,
                            gate=ValidationGate.PRE_MIGRATION,
                            entity=source.table,
                            count=len(missing),
                            message=(
                                f"Legacy table {source.table} lacks required columns: "
                                f"{', '.join(missing)}"
                            ),
                            sample_keys=tuple(missing),
                        )
                    )
                available[source.table] = columns
        return available

    async def _check_target_schema(
        self,
        specs: Sequence[EntitySpec],
        findings: list[ValidationFinding],
    ) -> None:
        for spec in specs:
            try:
                exists = await self._target.table_exists(spec.target_table)
            except StoreError as e:
                findings.append(self._unreachable("TARGET_UNREACHABLE", spec.target_table, e))
                continue
            if not exists:
                findings.append(
                    ValidationFinding(
                        kind=FindingKind.MISSING_TABLE,
                        code="MISSING_TARGET_TABLE",
                        severity=Severity.CRITICAL,
                        gate=ValidationGate.PRE_MIGRATION,
                        entity=spec.target_table,
                        count=1,
                        message=f"Target table {spec.target_table} does not exist",
                    )
                )

    async def _check_data_quality(
        self,
        specs: Sequence[EntitySpec],
        available: dict[str, frozenset[str]],
        findings: list[ValidationFinding],
    ) -> None:
        selected = {spec.entity for spec in specs}
        for rule in DATA_QUALITY_RULES:
            if rule.entity not in selected:
                continue
            columns = [
                ref
                for ref in rule.columns
                if ref.table in available
                and ref.column in available[ref.table]
                and ref.key_column in available[ref.table]
            ]
            if not columns:
                continue
            try:
                finding = await self._apply_rule(rule, columns)
            except StoreError as e:
                findings.append(self._unreachable("SOURCE_UNREACHABLE", columns[0].table, e))
                continue
            if finding is not None:
                findings.append(finding)

    async def _apply_rule(
        self,
        rule: DataQualityRule,
        columns: list[ColumnRef],
    ) -> ValidationFinding | None:
        if rule.is_duplicate_check:
            duplicates = await self._source.find_duplicates(
                [(ref.table, ref.column) for ref in columns]
            )
            if not duplicates:
                return None
            count = len(duplicates)
            sample = _sample(duplicates, self.sample_size)
            message = f"{rule.description}: {count} duplicated values"
        else:
            count = 0
            keys: list[Any] = []
            for ref in columns:
                missing, sample_keys = await self._source.missing_values(
                    ref.table, ref.column, ref.key_column, self.sample_size
                )
                count += missing
                keys.extend(sample_keys)
            if count == 0:
                return None
            sample = _sample(keys, self.sample_size)
            message = f"{rule.description}: {count} rows"

        return ValidationFinding(
            kind=rule.kind,
            code=rule.code,
            severity=rule.severity,
            gate=ValidationGate.PRE_MIGRATION,
            entity=rule.entity.value,
            count=count,
            message=message,
            sample_keys=sample,
        )

    # -- post-migration ---------------------------------------------------------

    async def validate_post_migration(
        self,
        session: MigrationSession,
        specs: Sequence[EntitySpec] | None = None,
    ) -> list[ValidationFinding]:
        """
        Run the post-migration gate.

        Args:
            session: Session whose entity counters are reconciled.
            specs: Entities to check (the session's entities when omitted).

        Returns:
            Sorted findings.
        """
        if specs is None:
            specs = [ENTITY_SPECS[Entity(name)] for name in session.entity_names]
        gate = ValidationGate.POST_MIGRATION

        with self._tracer.span(
            "migrationsuite.validation.post_migration",
            {ATTR_GATE: gate.value, ATTR_SESSION_ID: str(session.id)},
        ) as span:
            findings: list[ValidationFinding] = []
            findings.extend(self.count_findings(session, specs))

            for spec in specs:
                try:
                    if not await self._target.table_exists(spec.target_table):
                        findings.append(
                            ValidationFinding(
                                kind=FindingKind.MISSING_TABLE,
                                code="MISSING_TARGET_TABLE",
                                severity=Severity.CRITICAL,
                                gate=gate,
                                entity=spec.target_table,
                                count=1,
                                message=f"Target table {spec.target_table} does not exist",
                            )
                        )
                        continue
                    finding = await self._sample_finding(spec, gate)
                except StoreError as e:
                    findings.append(
                        self._unreachable("TARGET_UNREACHABLE", spec.target_table, e, gate)
                    )
                    continue
                if finding is not None:
                    findings.append(finding)

            relationships = [r for spec in specs for r in spec.relationships]
            findings.extend(await self.relationship_findings(gate, relationships))

            return await self._finish(gate, findings, session.id, span)

    @staticmethod
    def count_findings(
        session: MigrationSession,
        specs: Sequence[EntitySpec],
    ) -> list[ValidationFinding]:
        """Reconcile ``migrated`` against ``total`` for every entity."""
        findings: list[ValidationFinding] = []
        for spec in specs:
            state = session.state_for(spec.name)
            if state.migrated != state.total:
                findings.append(
                    ValidationFinding(
                        kind=FindingKind.RECORD_COUNT_MISMATCH,
                        code="RECORD_COUNT_MISMATCH",
                        severity=Severity.CRITICAL,
                        gate=ValidationGate.POST_MIGRATION,
                        entity=spec.name,
                        count=state.total - state.migrated,
                        message=(
                            f"{spec.name}: expected {state.total} records, "
                            f"migrated {state.migrated}"
                        ),
                    )
                )
        return findings

    async def _sample_finding(
        self,
        spec: EntitySpec,
        gate: ValidationGate,
    ) -> ValidationFinding | None:
        """Sample target rows and flag missing required business fields."""
        if not spec.required_fields:
            return None
        rows = await self._target.fetch_page(
            spec.target_table, [spec.natural_key], self.sample_size, 0
        )
        invalid = [
            row
            for row in rows
            if any(row.get(column) in (None, "") for column in spec.required_fields)
        ]
        if not invalid:
            return None

        missing_fields = sorted(
            {column for row in invalid for column in spec.required_fields if row.get(column) in (None, "")}
        )
        return ValidationFinding(
            kind=FindingKind.INVALID_DATA,
            code=f"INVALID_{spec.name.upper()}_DATA",
            severity=Severity.WARNING,
            gate=gate,
            entity=spec.name,
            count=len(invalid),
            message=(
                f"{len(invalid)} of {len(rows)} sampled {spec.name} rows lack "
                f"{', '.join(missing_fields)}"
            ),
            sample_keys=_sample((row.get(spec.natural_key) for row in invalid), self.sample_size),
        )

    async def relationship_findings(
        self,
        gate: ValidationGate,
        relationships: Sequence[Relationship] | None = None,
    ) -> list[ValidationFinding]:
        """
        Check child tables for references to missing parents.

        Args:
            gate: Gate the findings are attributed to.
            relationships: Relationships to check (all when omitted).

        Returns:
            One ORPHANED_<CHILD> finding per relationship with orphans,
            critical when the relationship is enforced.
        """
        relationships = RELATIONSHIPS if relationships is None else relationships
        findings: list[ValidationFinding] = []
        for relationship in relationships:
            child_spec = _SPECS_BY_TABLE.get(relationship.child_table)
            key_column = child_spec.natural_key if child_spec else "id"
            try:
                if not (
                    await self._target.table_exists(relationship.child_table)
                    and await self._target.table_exists(relationship.parent_table)
                ):
                    continue
                count, sample = await self._target.orphaned_references(
                    relationship.child_table,
                    relationship.foreign_key,
                    relationship.parent_table,
                    relationship.parent_key,
                    key_column,
                    self.sample_size,
                )
            except StoreError as e:
                findings.append(
                    self._unreachable("TARGET_UNREACHABLE", relationship.child_table, e, gate)
                )
                continue
            if count == 0:
                continue
            findings.append(
                ValidationFinding(
                    kind=FindingKind.ORPHANED_REFERENCE,
                    code=relationship.code,
                    severity=Severity.CRITICAL if relationship.enforced else Severity.WARNING,
                    gate=gate,
                    entity=relationship.child_table,
                    count=count,
                    message=(
                        f"{count} {relationship.child_table} rows reference a missing "
                        f"{relationship.parent_table}.{relationship.parent_key} "
                        f"via {relationship.foreign_key}"
                    ),
                    sample_keys=tuple(sample),
                )
            )
        return sort_findings(findings)

    async def find_problematic_tables(
        self,
        tables: Iterable[str] | None = None,
    ) -> list[str]:
        """
        Detect target tables that need restoring.

        A table is problematic when it holds orphaned rows of an enforced
        relationship or sampled rows missing required fields.

        Args:
            tables: Candidate tables (every target table when omitted).

        Returns:
            Problematic tables in dependency order.
        """
        candidates = set(tables) if tables is not None else set(_SPECS_BY_TABLE)
        specs = [spec for spec in topological_order(ENTITY_SPECS.values()) if spec.target_table in candidates]

        problematic: set[str] = set()
        relationships = [r for spec in specs for r in spec.relationships if r.enforced]
        for finding in await self.relationship_findings(ValidationGate.ROLLBACK, relationships):
            if finding.kind == FindingKind.ORPHANED_REFERENCE and finding.entity:
                problematic.add(finding.entity)

        for spec in specs:
            try:
                if not await self._target.table_exists(spec.target_table):
                    continue
                if await self._sample_finding(spec, ValidationGate.ROLLBACK) is not None:
                    problematic.add(spec.target_table)
            except StoreError as e:
                logger.warning("Could not sample %s: %s", spec.target_table, e)

        ordered = [spec.target_table for spec in specs if spec.target_table in problematic]
        logger.info("Problematic tables: %s", ", ".join(ordered) or "none")
        return ordered

    # -- shared -----------------------------------------------------------------

    async def _finish(
        self,
        gate: ValidationGate,
        findings: list[ValidationFinding],
        session_id: UUID | None,
        span: Any,
    ) -> list[ValidationFinding]:
        ordered = sort_findings(findings)
        critical = [f for f in ordered if f.is_critical]

        if span is not None:
            span.set_attribute(ATTR_FINDING_COUNT, len(ordered))
            span.set_attribute(ATTR_CRITICAL_COUNT, len(critical))

        if self._metrics:
            for severity in Severity:
                self._metrics.record_findings(
                    gate.value,
                    severity.value,
                    sum(1 for f in ordered if f.severity == severity),
                )

        for finding in ordered:
            logger.log(
                logging.ERROR if finding.is_critical else logging.WARNING,
                "%s finding %s on %s: %s",
                gate.value,
                finding.code,
                finding.entity,
                finding.message,
            )
        logger.info(
            "%s validation finished: %d findings (%d critical)",
            gate.value,
            len(ordered),
            len(critical),
        )

        if self._publisher is not None and session_id is not None:
            await self._publisher.publish(
                ValidationCompleted(
                    session_id=session_id,
                    gate=gate,
                    finding_count=len(ordered),
                    critical_count=len(critical),
                    codes=tuple(f.code for f in ordered),
                )
            )
        return ordered


__all__ = [
    "ColumnRef",
    "DataQualityRule",
    "DATA_QUALITY_RULES",
    "sort_findings",
    "ValidationEngine",
]
