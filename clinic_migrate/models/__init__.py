"""Data models for clinic migrations."""

from .migration import (
    IngestStrategy,
    MigrationRun,
    Phase,
    PhaseRule,
    PHASE_RULES,
    RunStatus,
    SourceVendor,
)
from .record import (
    AccessMethod,
    AgentAuditEntry,
    EntityDiscovery,
    RawRecord,
    StagingRecord,
    StagingStatus,
    ValidationIssue,
)
from .mapping import (
    EntityMapping,
    FieldMapping,
    MappingSpec,
    RuleKind,
    validate_mapping_spec,
)
from .progress import (
    ConnectResult,
    DiscoverResult,
    MappingResult,
    PromoteResult,
    RunProgress,
    TransformResult,
    ValidateResult,
)

__all__ = [
    "IngestStrategy",
    "MigrationRun",
    "Phase",
    "PhaseRule",
    "PHASE_RULES",
    "RunStatus",
    "SourceVendor",
    "AccessMethod",
    "AgentAuditEntry",
    "EntityDiscovery",
    "RawRecord",
    "StagingRecord",
    "StagingStatus",
    "ValidationIssue",
    "EntityMapping",
    "FieldMapping",
    "MappingSpec",
    "RuleKind",
    "validate_mapping_spec",
    "ConnectResult",
    "DiscoverResult",
    "MappingResult",
    "PromoteResult",
    "RunProgress",
    "TransformResult",
    "ValidateResult",
]
