"""
migrationsuite - Batch migration engine for legacy relational data.

This library provides:
- Dependency-ordered migration of legacy entities into a new schema
- Resumable batch cursor and per-record transformation with isolation
- Validation gates before and after migration
- Snapshot, selective, incremental and partial rollback strategies
- Progress monitoring with alerts, trends and status snapshots
- Versioned JSON migration and rollback reports
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("migration-suite")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from migrationsuite.batch_processor import BatchProcessor, RunControl
from migrationsuite.cursor import BatchCursor, SourcePage, SourceRow, SourceSegment
from migrationsuite.entities import (
    ENTITY_SPECS,
    RELATIONSHIPS,
    TARGET_TABLES,
    Entity,
    EntitySpec,
    Relationship,
    get_spec,
    reverse_dependency_order,
    specs_for,
    topological_order,
)
from migrationsuite.events import (
    AlertRaised,
    BatchCompleted,
    EntityStatusChanged,
    InMemoryEventChannel,
    MigrationEvent,
    PhaseChanged,
    ProgressTick,
    RollbackCompleted,
    RollbackStarted,
    StatusSnapshotPublished,
    ValidationCompleted,
)
from migrationsuite.exceptions import (
    BackupIntegrityError,
    BatchTimeoutError,
    BatchWriteError,
    DependencyCycleError,
    EntityMigrationError,
    ErrorHandler,
    FailureThresholdExceededError,
    InvalidRollbackStrategyError,
    MigrationAbortedError,
    MigrationCancelledError,
    MigrationError,
    MigrationStateError,
    OrchestrationError,
    PipelineTimeoutError,
    RecordTransformError,
    RetryConfig,
    RollbackError,
    RollbackVerificationError,
    StoreError,
    UnknownDependencyError,
)
from migrationsuite.interfaces import (
    BackupReader,
    DatabaseMetrics,
    EventPublisher,
    ReportSink,
    SourceReader,
    TargetWriter,
)
from migrationsuite.metrics import MigrationMetrics
from migrationsuite.models import (
    REPORT_FORMAT_VERSION,
    BatchResult,
    EntityMigrationState,
    EntityStatus,
    ErrorRecord,
    FindingKind,
    MigrationConfig,
    MigrationPhase,
    MigrationReport,
    MigrationSession,
    MigrationStats,
    OverallStatus,
    RecordFailure,
    RollbackCheckpoint,
    RollbackReport,
    RollbackStatus,
    RollbackStrategyKind,
    RollbackTrigger,
    SessionStatus,
    Severity,
    TableRollbackResult,
    TimeWindow,
    ValidationFinding,
    ValidationGate,
)
from migrationsuite.monitor import (
    Alert,
    AlertThresholds,
    AlertType,
    MonitorConfig,
    ProgressMonitor,
)
from migrationsuite.orchestrator import MigrationOrchestrator
from migrationsuite.planning import TimingEstimate, estimate_migration_timing
from migrationsuite.reports import (
    InMemoryReportSink,
    JsonFileReportSink,
    ReportFormatError,
    parse_report,
    read_report,
)
from migrationsuite.rollback import (
    IncrementalRollback,
    PartialRollback,
    RollbackConfig,
    RollbackEngine,
    RollbackStrategy,
    SelectiveRollback,
    SnapshotRollback,
)
from migrationsuite.stores import (
    InMemoryStore,
    SqlBackupReader,
    SqlSourceReader,
    SqlTargetWriter,
)
from migrationsuite.validation import DATA_QUALITY_RULES, DataQualityRule, ValidationEngine

__all__ = [
    "__version__",
    # Orchestration
    "MigrationOrchestrator",
    "BatchProcessor",
    "RunControl",
    "BatchCursor",
    "SourcePage",
    "SourceRow",
    "SourceSegment",
    # Entities
    "Entity",
    "EntitySpec",
    "Relationship",
    "ENTITY_SPECS",
    "RELATIONSHIPS",
    "TARGET_TABLES",
    "get_spec",
    "specs_for",
    "topological_order",
    "reverse_dependency_order",
    # Models
    "REPORT_FORMAT_VERSION",
    "MigrationConfig",
    "MigrationSession",
    "MigrationPhase",
    "MigrationStats",
    "MigrationReport",
    "EntityMigrationState",
    "EntityStatus",
    "BatchResult",
    "RecordFailure",
    "ErrorRecord",
    "SessionStatus",
    "OverallStatus",
    "ValidationFinding",
    "ValidationGate",
    "FindingKind",
    "Severity",
    "RollbackTrigger",
    "RollbackStrategyKind",
    "RollbackStatus",
    "RollbackReport",
    "RollbackCheckpoint",
    "TableRollbackResult",
    "TimeWindow",
    # Validation
    "ValidationEngine",
    "DataQualityRule",
    "DATA_QUALITY_RULES",
    # Rollback
    "RollbackEngine",
    "RollbackConfig",
    "RollbackStrategy",
    "SnapshotRollback",
    "SelectiveRollback",
    "IncrementalRollback",
    "PartialRollback",
    # Monitoring
    "ProgressMonitor",
    "MonitorConfig",
    "AlertThresholds",
    "AlertType",
    "Alert",
    "MigrationMetrics",
    # Planning and reports
    "TimingEstimate",
    "estimate_migration_timing",
    "JsonFileReportSink",
    "InMemoryReportSink",
    "ReportFormatError",
    "parse_report",
    "read_report",
    # Events
    "MigrationEvent",
    "InMemoryEventChannel",
    "ProgressTick",
    "BatchCompleted",
    "EntityStatusChanged",
    "PhaseChanged",
    "ValidationCompleted",
    "AlertRaised",
    "StatusSnapshotPublished",
    "RollbackStarted",
    "RollbackCompleted",
    # Contracts
    "SourceReader",
    "TargetWriter",
    "BackupReader",
    "EventPublisher",
    "ReportSink",
    "DatabaseMetrics",
    # Stores
    "InMemoryStore",
    "SqlSourceReader",
    "SqlTargetWriter",
    "SqlBackupReader",
    # Exceptions
    "MigrationError",
    "OrchestrationError",
    "DependencyCycleError",
    "UnknownDependencyError",
    "MigrationStateError",
    "RecordTransformError",
    "StoreError",
    "BatchWriteError",
    "BatchTimeoutError",
    "EntityMigrationError",
    "FailureThresholdExceededError",
    "PipelineTimeoutError",
    "MigrationCancelledError",
    "MigrationAbortedError",
    "RollbackError",
    "InvalidRollbackStrategyError",
    "BackupIntegrityError",
    "RollbackVerificationError",
    "ErrorHandler",
    "RetryConfig",
]
