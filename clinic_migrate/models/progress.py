"""Typed per-phase results stored on the run under phase keys."""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from datetime import datetime

from .migration import Phase


@dataclass
class ConnectResult:
    """Outcome of the connect phase."""
    strategy: str
    connector: str
    attempts: int = 1
    connected_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectResult":
        return cls(**data)


@dataclass
class DiscoverResult:
    """Outcome of the discover phase: what exists and what was staged."""
    strategy: str
    entities: List[Dict[str, Any]] = field(default_factory=list)
    extracted: Dict[str, int] = field(default_factory=dict)  # entity type -> records staged
    skipped: List[str] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)

    @property
    def total_extracted(self) -> int:
        return sum(self.extracted.values())

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["total_extracted"] = self.total_extracted
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiscoverResult":
        return cls(
            strategy=data.get("strategy", ""),
            entities=data.get("entities", []),
            extracted=data.get("extracted", {}),
            skipped=data.get("skipped", []),
            artifacts=data.get("artifacts", []),
        )


@dataclass
class MappingResult:
    """Outcome of generate_mapping (or an operator proposal)."""
    version: int
    entity_types: List[str] = field(default_factory=list)
    requires_approval: Dict[str, List[str]] = field(default_factory=dict)
    unmapped_fields: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingResult":
        return cls(**data)


@dataclass
class TransformResult:
    """Outcome of the transform phase."""
    mapping_version: int
    counts: Dict[str, Dict[str, int]] = field(default_factory=dict)  # entity -> status -> n
    failures: Dict[str, int] = field(default_factory=dict)
    duplicates: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformResult":
        return cls(**data)


@dataclass
class ValidateResult:
    """Outcome of the validate phase."""
    passed: bool
    report: Dict[str, Any] = field(default_factory=dict)
    sampling_packet: Dict[str, Any] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidateResult":
        return cls(**data)


@dataclass
class PromoteResult:
    """Outcome of the promote phase."""
    promoted: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, int] = field(default_factory=dict)  # already promoted elsewhere
    batches: int = 0
    reconciliation: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_promoted(self) -> int:
        return sum(self.promoted.values())

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["total_promoted"] = self.total_promoted
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromoteResult":
        return cls(
            promoted=data.get("promoted", {}),
            skipped=data.get("skipped", {}),
            batches=data.get("batches", 0),
            reconciliation=data.get("reconciliation", {}),
        )


PROGRESS_KEYS = {
    Phase.CONNECT: ("connectResult", ConnectResult),
    Phase.DISCOVER: ("discoverResult", DiscoverResult),
    Phase.GENERATE_MAPPING: ("mappingResult", MappingResult),
    Phase.TRANSFORM: ("transformResult", TransformResult),
    Phase.VALIDATE: ("validateResult", ValidateResult),
    Phase.PROMOTE: ("promoteResult", PromoteResult),
}


class RunProgress:
    """
    Phase-keyed result store.

    Serialized as {"connectResult": {...}, "transformResult": {...}, ...}
    so callers can read e.g. progress["transformResult"]["counts"].
    """

    def __init__(self, results: Optional[Dict[Phase, Any]] = None):
        self._results: Dict[Phase, Any] = dict(results or {})

    def get(self, phase: Phase) -> Optional[Any]:
        return self._results.get(phase)

    def set(self, phase: Phase, result: Any) -> None:
        expected = PROGRESS_KEYS[phase][1]
        if not isinstance(result, expected):
            raise TypeError(f"{phase.value} expects {expected.__name__}, got {type(result).__name__}")
        self._results[phase] = result

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            PROGRESS_KEYS[phase][0]: result.to_dict()
            for phase, result in self._results.items()
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunProgress":
        """Create from dictionary representation."""
        data = data or {}
        results = {}
        for phase, (key, result_cls) in PROGRESS_KEYS.items():
            if key in data:
                payload = {k: v for k, v in data[key].items() if k not in ("total_extracted", "total_promoted")}
                results[phase] = result_cls.from_dict(payload)
        return cls(results)
