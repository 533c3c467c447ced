"""Record models for extracted and staged migration data."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime


def get_path(data: Any, path: Optional[str], default: Any = None) -> Any:
    """Resolve a dot-notation path through dicts and list indexes."""
    if not path:
        return default
    if isinstance(data, dict) and path in data:
        return data[path]

    value = data
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit():
            idx = int(part)
            value = value[idx] if idx < len(value) else None
        else:
            return default
        if value is None:
            return default
    return value


class StagingStatus(str, Enum):
    """Status of a staging record."""
    PENDING = "pending"
    TRANSFORMED = "transformed"
    VALIDATED = "validated"
    PROMOTED = "promoted"
    REJECTED = "rejected"


class AccessMethod(str, Enum):
    """How a connector reaches an entity type."""
    API = "api"
    NAVIGATION = "navigation"
    FILE = "file"


@dataclass
class EntityDiscovery:
    """An entity type a connector found on the source platform."""
    entity_type: str
    available: bool
    access_method: AccessMethod
    estimated_count: Optional[int] = None
    source_entity: Optional[str] = None  # Vendor-native name, e.g. "clients"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "available": self.available,
            "access_method": self.access_method.value,
            "estimated_count": self.estimated_count,
            "source_entity": self.source_entity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntityDiscovery":
        """Create from dictionary representation."""
        return cls(
            entity_type=data["entity_type"],
            available=bool(data.get("available", True)),
            access_method=AccessMethod(data.get("access_method", "api")),
            estimated_count=data.get("estimated_count"),
            source_entity=data.get("source_entity"),
        )


@dataclass
class RawRecord:
    """A vendor-shaped record as produced by a connector."""
    source_id: str
    entity_type: str
    data: Dict[str, Any]
    extracted_at: datetime = field(default_factory=datetime.utcnow)

    def get_field(self, path: str, default: Any = None) -> Any:
        """Get a field value by dot-notation path (e.g., 'name.0.family')."""
        return get_path(self.data, path, default)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_id": self.source_id,
            "entity_type": self.entity_type,
            "data": self.data,
            "extracted_at": self.extracted_at.isoformat(),
        }


@dataclass
class StagingRecord:
    """A provenance-tagged draft canonical record."""
    run_id: str
    entity_type: str
    source_id: str
    status: StagingStatus = StagingStatus.PENDING
    raw_data: Dict[str, Any] = field(default_factory=dict)
    payload: Optional[Dict[str, Any]] = None
    canonical_id: Optional[str] = None
    checksum: Optional[str] = None
    error_detail: Optional[str] = None
    source_entity: Optional[str] = None
    extracted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "status": self.status.value,
            "payload": self.payload,
            "canonical_id": self.canonical_id,
            "checksum": self.checksum,
            "error_detail": self.error_detail,
            "source_entity": self.source_entity,
            "extracted_at": self.extracted_at.isoformat() if self.extracted_at else None,
        }


@dataclass
class ValidationIssue:
    """A validation problem found on a staged record."""
    code: str
    entity_type: str
    source_id: str
    field: str
    message: str
    severity: str = "error"  # error, warning
    value: Optional[Any] = None
    suggested_fix: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "entity_type": self.entity_type,
            "source_id": self.source_id,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "value": self.value,
            "suggested_fix": self.suggested_fix,
        }


@dataclass
class AgentAuditEntry:
    """One request made to the browser navigation agent."""
    action: str
    entity_type: Optional[str] = None
    url: Optional[str] = None
    record_count: int = 0
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "url": self.url,
            "entity_type": self.entity_type,
            "record_count": self.record_count,
            "duration_ms": self.duration_ms,
        }


def summarize_issues(issues: List[ValidationIssue]) -> Dict[str, int]:
    """Count issues by code."""
    counts: Dict[str, int] = {}
    for issue in issues:
        counts[issue.code] = counts.get(issue.code, 0) + 1
    return counts
