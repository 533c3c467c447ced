"""Mapping spec models: how source fields become canonical fields."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime

from .canonical import CANONICAL_ENTITIES

APPROVAL_CONFIDENCE_THRESHOLD = 0.8


class RuleKind(str, Enum):
    """Supported mapping rule kinds."""
    RENAME = "rename"  # Copy the value as-is
    COERCE = "coerce"  # Convert to a canonical type
    DEFAULT = "default"  # Constant used when the source is missing
    DERIVED = "derived"  # Computed from one or more source fields


COERCE_TYPES = (
    "string",
    "trim",
    "upper",
    "lower",
    "date",
    "datetime",
    "decimal",
    "integer",
    "boolean",
    "phone",
    "email",
)

DERIVED_OPS = (
    "split_name",
    "concat",
    "coalesce",
    "enum_map",
    "hash_token",
)


@dataclass
class FieldMapping:
    """Mapping between a source field and a canonical field."""
    source_field: Optional[str]  # None for constant defaults and multi-field derivations
    target_field: str
    rule: RuleKind = RuleKind.RENAME
    config: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    notes: str = ""

    @property
    def requires_approval(self) -> bool:
        return self.confidence < APPROVAL_CONFIDENCE_THRESHOLD

    @property
    def source_fields(self) -> List[str]:
        """All source fields this mapping reads."""
        fields = list(self.config.get("source_fields", []))
        if self.source_field and self.source_field not in fields:
            fields.insert(0, self.source_field)
        return fields

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "rule": self.rule.value,
            "confidence": self.confidence,
            "requires_approval": self.requires_approval,
        }
        if self.config:
            result["config"] = self.config
        if self.notes:
            result["notes"] = self.notes
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        return cls(
            source_field=data.get("source_field"),
            target_field=data.get("target_field", ""),
            rule=RuleKind(data.get("rule", "rename")),
            config=data.get("config", {}),
            confidence=float(data.get("confidence", 1.0)),
            notes=data.get("notes", ""),
        )


@dataclass
class EntityMapping:
    """Mapping from one vendor entity to one canonical entity type."""
    source_entity: str
    target_entity: str
    field_mappings: List[FieldMapping] = field(default_factory=list)
    notes: str = ""

    @property
    def requires_approval(self) -> List[str]:
        """Target fields whose mapping confidence is below the threshold."""
        return [m.target_field for m in self.field_mappings if m.requires_approval]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_entity": self.source_entity,
            "target_entity": self.target_entity,
            "field_mappings": [m.to_dict() for m in self.field_mappings],
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityMapping":
        """Create from dictionary representation."""
        return cls(
            source_entity=data.get("source_entity", data.get("target_entity", "")),
            target_entity=data.get("target_entity", ""),
            field_mappings=[FieldMapping.from_dict(m) for m in data.get("field_mappings", [])],
            notes=data.get("notes", ""),
        )


@dataclass
class MappingSpec:
    """An immutable, versioned mapping for one run."""
    run_id: str
    version: int
    source_vendor: str
    entity_mappings: Dict[str, EntityMapping] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    created_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None

    @property
    def is_approved(self) -> bool:
        return self.approved_at is not None

    def get_entity_mapping(self, entity_type: str) -> Optional[EntityMapping]:
        """Get the mapping targeting a canonical entity type."""
        return self.entity_mappings.get(entity_type)

    def mappings_to_dict(self) -> Dict[str, Any]:
        """Serialize the field mapping content only."""
        return {name: m.to_dict() for name, m in self.entity_mappings.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "version": self.version,
            "source_vendor": self.source_vendor,
            "entity_mappings": self.mappings_to_dict(),
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "approved_by": self.approved_by,
        }

    @staticmethod
    def mappings_from_dict(data: Dict[str, Any]) -> Dict[str, EntityMapping]:
        """Parse {target_entity: entity mapping dict}."""
        mappings = {}
        for name, mapping_data in data.items():
            mapping = EntityMapping.from_dict({"target_entity": name, **mapping_data})
            mappings[mapping.target_entity] = mapping
        return mappings


def validate_mapping_spec(spec: MappingSpec) -> List[str]:
    """
    Check a mapping spec before it is stored.

    Args:
        spec: Mapping spec to check

    Returns:
        List of problems; empty when the spec is usable
    """
    errors = []

    if spec.version < 1:
        errors.append("version must be >= 1")
    if not spec.source_vendor:
        errors.append("source_vendor is required")
    if not spec.entity_mappings:
        errors.append("at least one entity mapping is required")

    for name, mapping in spec.entity_mappings.items():
        if mapping.target_entity not in CANONICAL_ENTITIES:
            errors.append(f"{name}: unknown target entity '{mapping.target_entity}'")
            continue

        canonical_fields = CANONICAL_ENTITIES[mapping.target_entity].fields
        for fm in mapping.field_mappings:
            where = f"{name}.{fm.target_field}"
            if fm.target_field not in canonical_fields:
                errors.append(f"{where}: not a canonical field of {mapping.target_entity}")
            if not 0.0 <= fm.confidence <= 1.0:
                errors.append(f"{where}: confidence must be between 0 and 1")

            if fm.rule in (RuleKind.RENAME, RuleKind.COERCE) and not fm.source_field:
                errors.append(f"{where}: {fm.rule.value} needs a source_field")
            if fm.rule == RuleKind.COERCE and fm.config.get("to") not in COERCE_TYPES:
                errors.append(f"{where}: unsupported coercion '{fm.config.get('to')}'")
            if fm.rule == RuleKind.DEFAULT and "value" not in fm.config:
                errors.append(f"{where}: default needs a constant 'value'")
            if fm.rule == RuleKind.DERIVED:
                op = fm.config.get("op")
                if op not in DERIVED_OPS:
                    errors.append(f"{where}: derived op '{op}' is not allowed")
                elif not fm.source_fields:
                    errors.append(f"{where}: derived op '{op}' needs source fields")

    return errors
