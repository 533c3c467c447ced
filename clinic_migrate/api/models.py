"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RunStatusEnum(str, Enum):
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


class PhaseEnum(str, Enum):
    CONNECT = "connect"
    DISCOVER = "discover"
    GENERATE_MAPPING = "generateMapping"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    PROMOTE = "promote"


# Request Models
class UploadedFile(BaseModel):
    name: str
    path: Optional[str] = None
    locator: Optional[str] = None
    entity_type: Optional[str] = None


class SourceProfile(BaseModel):
    credentials: Dict[str, Any] = Field(default_factory=dict)
    source_url: Optional[str] = None
    uploaded_files: List[UploadedFile] = Field(default_factory=list)
    api_base_url: Optional[str] = None
    agent_url: Optional[str] = None


class RunCreate(BaseModel):
    vendor: str
    source_profile: SourceProfile = Field(default_factory=SourceProfile)


class FieldMappingModel(BaseModel):
    source_field: Optional[str] = None
    target_field: str
    rule: str = "rename"
    config: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0
    notes: str = ""


class EntityMappingModel(BaseModel):
    source_entity: str
    target_entity: str
    field_mappings: List[FieldMappingModel]
    notes: str = ""


class MappingProposal(BaseModel):
    entity_mappings: Dict[str, EntityMappingModel]


class RecordRejection(BaseModel):
    entity_type: str
    source_id: str
    reason: Optional[str] = None


# Response Models
class RunResponse(BaseModel):
    id: str
    clinic_id: str
    source_vendor: str
    status: RunStatusEnum
    ingest_strategy: Optional[str] = None
    current_phase: Optional[str] = None
    mapping_spec_version: int = 0
    mapping_approved_at: Optional[str] = None
    mapping_approved_by: Optional[str] = None
    progress: Dict[str, Any] = Field(default_factory=dict)
    paused_from: Optional[str] = None
    cancel_requested: bool = False
    active_phase: Optional[str] = None
    started_by: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    created_at: str


class RunListResponse(BaseModel):
    runs: List[RunResponse]
    total: int


class PhaseResponse(BaseModel):
    run: RunResponse
    phase: PhaseEnum
    status: RunStatusEnum
    succeeded: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class ApprovalResponse(BaseModel):
    approvedAt: str
    version: int


class MappingResponse(BaseModel):
    run_id: str
    version: int
    source_vendor: str
    entity_mappings: Dict[str, Any]
    created_at: str
    created_by: Optional[str] = None
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    requires_approval: Dict[str, List[str]] = Field(default_factory=dict)


class ReportResponse(BaseModel):
    run: RunResponse
    validationReport: Optional[Dict[str, Any]] = None
    auditTrail: List[Dict[str, Any]] = Field(default_factory=list)
    ledger: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    reconciliation: Dict[str, Any] = Field(default_factory=dict)
    artifacts: List[Dict[str, Any]] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
