"""Request dependencies: the orchestrator and the permission guard."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request

from ..config import MigrationSettings
from ..errors import AuthorizationError
from ..orchestrator import MigrationOrchestrator


@dataclass
class Actor:
    """Caller identity established by the permission guard."""
    actor_id: str
    clinic_id: Optional[str] = None


def require_actor(
    x_actor_id: Optional[str] = Header(None),
    x_clinic_id: Optional[str] = Header(None),
) -> Actor:
    """Permission guard: every call needs an actor; the clinic header scopes runs."""
    if not x_actor_id:
        raise AuthorizationError("Missing X-Actor-Id header")
    return Actor(actor_id=x_actor_id, clinic_id=x_clinic_id)


def get_orchestrator(request: Request) -> MigrationOrchestrator:
    """Return the app's orchestrator, building it from the environment on first use."""
    if request.app.state.orchestrator is None:
        request.app.state.orchestrator = MigrationOrchestrator.from_settings(MigrationSettings.from_env())
    return request.app.state.orchestrator
