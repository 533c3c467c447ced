"""Migration run endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from ...errors import AuthorizationError
from ...orchestrator import MigrationOrchestrator
from ..deps import Actor, get_orchestrator, require_actor
from ..models import (
    ApprovalResponse,
    MappingProposal,
    MappingResponse,
    PhaseEnum,
    PhaseResponse,
    RecordRejection,
    ReportResponse,
    RunCreate,
    RunListResponse,
    RunResponse,
)

router = APIRouter()


@router.post("", response_model=RunResponse)
def create_run(
    data: RunCreate,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Start a migration run for the caller's clinic."""
    if not actor.clinic_id:
        raise AuthorizationError("Missing X-Clinic-Id header")
    run = orchestrator.start_run(
        actor.clinic_id,
        data.vendor,
        data.source_profile.model_dump(exclude_none=True),
        actor_id=actor.actor_id,
    )
    return run.to_dict()


@router.get("", response_model=RunListResponse)
def list_runs(
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """List runs visible to the caller."""
    runs = [run.to_dict() for run in orchestrator.list_runs(actor.clinic_id)]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
def get_run(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Get a specific run."""
    return orchestrator.get_run(run_id, actor.clinic_id).to_dict()


@router.post("/{run_id}/phases/{phase}", response_model=PhaseResponse)
def run_phase(
    run_id: str,
    phase: PhaseEnum,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Execute one phase. Handled failures come back with succeeded=false."""
    outcome = orchestrator.run_phase(run_id, phase.value, actor_id=actor.actor_id, clinic_id=actor.clinic_id)
    return outcome.to_dict()


@router.get("/{run_id}/mapping", response_model=MappingResponse)
def get_mapping(
    run_id: str,
    version: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Get the current (or a given) mapping version."""
    spec = orchestrator.get_mapping(run_id, version, actor.clinic_id)
    return _mapping_response(spec)


@router.put("/{run_id}/mapping", response_model=MappingResponse)
def propose_mapping(
    run_id: str,
    data: MappingProposal,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Store an edited mapping as a new version."""
    entity_mappings = {name: m.model_dump() for name, m in data.entity_mappings.items()}
    spec = orchestrator.propose_mapping(run_id, entity_mappings, actor.actor_id, actor.clinic_id)
    return _mapping_response(spec)


@router.post("/{run_id}/mapping/approve", response_model=ApprovalResponse)
def approve_mapping(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Approve the current mapping version."""
    return orchestrator.approve_mapping(run_id, actor.actor_id, actor.clinic_id)


@router.post("/{run_id}/pause", response_model=RunResponse)
def pause_run(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Pause a run (deferred to the next boundary while a phase runs)."""
    return orchestrator.pause(run_id, actor.actor_id, actor.clinic_id).to_dict()


@router.post("/{run_id}/resume", response_model=RunResponse)
def resume_run(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Resume a paused run."""
    return orchestrator.resume(run_id, actor.actor_id, actor.clinic_id).to_dict()


@router.post("/{run_id}/records/reject")
def reject_record(
    run_id: str,
    data: RecordRejection,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Reject a staged record before promotion."""
    return orchestrator.reject_record(
        run_id, data.entity_type, data.source_id, actor.actor_id, data.reason, actor.clinic_id
    )


@router.get("/{run_id}/report", response_model=ReportResponse)
def get_report(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
):
    """Run summary, validation report, audit trail, ledger and reconciliation."""
    return orchestrator.get_report(run_id, actor.clinic_id)


@router.delete("/{run_id}")
def cleanup_run(
    run_id: str,
    actor: Actor = Depends(require_actor),
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Delete a run and everything it owns."""
    deleted = orchestrator.cleanup_run(run_id, actor.actor_id, actor.clinic_id)
    return {"status": "deleted", "deleted": deleted}


def _mapping_response(spec) -> Dict[str, Any]:
    data = spec.to_dict()
    data["requires_approval"] = {
        name: m.requires_approval for name, m in spec.entity_mappings.items() if m.requires_approval
    }
    return data
