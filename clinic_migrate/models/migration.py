"""Migration run models and the run state machine table."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from enum import Enum
from datetime import datetime


class RunStatus(str, Enum):
    """Status of a migration run."""
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    DISCOVERING = "Discovering"
    DISCOVERED = "Discovered"
    MAPPING_IN_PROGRESS = "MappingInProgress"
    MAPPING_REVIEW = "MappingReview"
    MIGRATING = "Migrating"
    PAUSED = "Paused"
    VERIFYING = "Verifying"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class Phase(str, Enum):
    """Phases a caller may request through run_phase."""
    CONNECT = "connect"
    DISCOVER = "discover"
    GENERATE_MAPPING = "generateMapping"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    PROMOTE = "promote"

    @classmethod
    def parse(cls, value: Any) -> "Phase":
        """Accept enum members, wire names and snake_case names."""
        if isinstance(value, Phase):
            return value
        text = str(value).strip()
        for phase in cls:
            if text in (phase.value, phase.name.lower()):
                return phase
        raise ValueError(f"Unknown phase: {value}")


class IngestStrategy(str, Enum):
    """How raw records are pulled from the source platform."""
    API = "api"
    BROWSER = "browser"
    UPLOAD = "upload"


class SourceVendor(str, Enum):
    """Source platforms with first-class support."""
    BOULEVARD = "boulevard"
    AESTHETICS_RECORD = "aesthetics_record"
    CSV_UPLOAD = "csv_upload"
    MOCK = "mock"


@dataclass(frozen=True)
class PhaseRule:
    """One row of the run transition table."""
    phase: Phase
    allowed_from: Tuple[RunStatus, ...]
    on_success: RunStatus
    on_failure: RunStatus
    in_progress: Optional[RunStatus] = None  # Status held while the handler runs


# Phase -> rule. on_failure equal to the allowed status means "stays".
PHASE_RULES: Dict[Phase, PhaseRule] = {
    Phase.CONNECT: PhaseRule(
        phase=Phase.CONNECT,
        allowed_from=(RunStatus.CONNECTING,),
        on_success=RunStatus.CONNECTED,
        on_failure=RunStatus.FAILED,
    ),
    Phase.DISCOVER: PhaseRule(
        phase=Phase.DISCOVER,
        allowed_from=(RunStatus.CONNECTED,),
        in_progress=RunStatus.DISCOVERING,
        on_success=RunStatus.DISCOVERED,
        on_failure=RunStatus.FAILED,
    ),
    Phase.GENERATE_MAPPING: PhaseRule(
        phase=Phase.GENERATE_MAPPING,
        allowed_from=(RunStatus.DISCOVERED,),
        in_progress=RunStatus.MAPPING_IN_PROGRESS,
        on_success=RunStatus.MAPPING_REVIEW,
        on_failure=RunStatus.FAILED,
    ),
    Phase.TRANSFORM: PhaseRule(
        phase=Phase.TRANSFORM,
        allowed_from=(RunStatus.MAPPING_REVIEW,),
        on_success=RunStatus.MIGRATING,
        on_failure=RunStatus.MAPPING_REVIEW,
    ),
    Phase.VALIDATE: PhaseRule(
        phase=Phase.VALIDATE,
        allowed_from=(RunStatus.MIGRATING,),
        on_success=RunStatus.VERIFYING,
        on_failure=RunStatus.MIGRATING,
    ),
    Phase.PROMOTE: PhaseRule(
        phase=Phase.PROMOTE,
        allowed_from=(RunStatus.VERIFYING,),
        on_success=RunStatus.COMPLETED,
        on_failure=RunStatus.PAUSED,
    ),
}

# In-progress statuses resume to the status their phase starts from.
RESUME_TARGETS: Dict[RunStatus, RunStatus] = {
    RunStatus.DISCOVERING: RunStatus.CONNECTED,
    RunStatus.MAPPING_IN_PROGRESS: RunStatus.DISCOVERED,
}


@dataclass
class MigrationRun:
    """A migration attempt for one clinic from one source vendor."""
    id: str
    clinic_id: str
    source_vendor: str
    status: RunStatus = RunStatus.CONNECTING
    ingest_strategy: Optional[IngestStrategy] = None
    current_phase: Optional[str] = None
    source_profile: Dict[str, Any] = field(default_factory=dict)
    mapping_spec_version: int = 0
    mapping_approved_at: Optional[datetime] = None
    mapping_approved_by: Optional[str] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    paused_from: Optional[RunStatus] = None
    cancel_requested: bool = False
    active_phase: Optional[str] = None
    started_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def mapping_approved(self) -> bool:
        return self.mapping_approved_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (source profile redacted)."""
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "source_vendor": self.source_vendor,
            "status": self.status.value,
            "ingest_strategy": self.ingest_strategy.value if self.ingest_strategy else None,
            "current_phase": self.current_phase,
            "mapping_spec_version": self.mapping_spec_version,
            "mapping_approved_at": self.mapping_approved_at.isoformat() if self.mapping_approved_at else None,
            "mapping_approved_by": self.mapping_approved_by,
            "progress": self.progress,
            "paused_from": self.paused_from.value if self.paused_from else None,
            "cancel_requested": self.cancel_requested,
            "active_phase": self.active_phase,
            "started_by": self.started_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }
