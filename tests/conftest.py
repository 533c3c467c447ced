"""Shared fixtures: a file-backed database, a local artifact store and a scripted connector."""

from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest

from clinic_migrate.config import MigrationSettings
from clinic_migrate.connectors.base import BaseConnector
from clinic_migrate.connectors.registry import ConnectorRegistry
from clinic_migrate.errors import VendorConnectionError
from clinic_migrate.models.migration import IngestStrategy, MigrationRun
from clinic_migrate.models.record import AccessMethod, EntityDiscovery, RawRecord
from clinic_migrate.orchestrator import MigrationOrchestrator
from clinic_migrate.services.retry import RetryPolicy
from clinic_migrate.storage.artifacts import LocalArtifactStore
from clinic_migrate.storage.db import Database

CLINIC = "clinic-1"
ACTOR = "ops@clinic-1"


def sample_datasets() -> Dict[str, List[Dict[str, Any]]]:
    """Two patients and one appointment that pass validation once mapped."""
    return {
        "patient": [
            {
                "id": "p1",
                "firstName": "Ada",
                "lastName": "Lovelace",
                "email": "Ada@Example.com",
                "phone": "(555) 123-4567",
                "dob": "1990-01-15",
            },
            {
                "id": "p2",
                "firstName": "Grace",
                "lastName": "Hopper",
                "email": "grace@example.com",
                "phone": "555-987-6543",
                "dob": "03/04/1985",
            },
        ],
        "appointment": [
            {
                "id": "a1",
                "patientId": "p1",
                "provider": "Dr. Smith",
                "startTime": "2024-03-01T10:00:00",
                "status": "Booked",
            },
        ],
    }


class FakeSource:
    """What the scripted connector serves, and how it misbehaves."""

    def __init__(self):
        self.datasets: Dict[str, List[Dict[str, Any]]] = sample_datasets()
        self.page_size = 1
        self.login_failures = 0
        self.login_error: Optional[Exception] = None
        self.extract_error: Optional[Exception] = None
        self.on_page: Optional[Callable[[str, int], None]] = None
        self.logins = 0
        self.credentials: Optional[Dict[str, Any]] = None


class FakeConnector(BaseConnector):
    """Connector serving in-memory pages, one entity type at a time."""

    strategy = IngestStrategy.UPLOAD

    def __init__(self, vendor: str, source: FakeSource, retry_policy: Optional[RetryPolicy] = None):
        super().__init__(vendor, retry_policy)
        self.source = source

    def login(self, credentials: Dict[str, Any]) -> None:
        self.source.credentials = credentials
        self.call_vendor(self._login_once)

    def _login_once(self) -> None:
        self.source.logins += 1
        if self.source.login_error is not None:
            raise self.source.login_error
        if self.source.login_failures > 0:
            self.source.login_failures -= 1
            raise VendorConnectionError("vendor temporarily unavailable")

    def discover_entities(self) -> List[EntityDiscovery]:
        return [
            EntityDiscovery(
                entity_type=entity_type,
                available=True,
                access_method=AccessMethod.FILE,
                estimated_count=len(records),
                source_entity=f"{entity_type}s",
            )
            for entity_type, records in self.source.datasets.items()
        ]

    def extract_entity(self, entity_type: str) -> Iterator[RawRecord]:
        records = self.source.datasets.get(entity_type, [])
        size = self.source.page_size
        for page, start in enumerate(range(0, len(records), size)):
            self.check_cancelled()
            if self.source.extract_error is not None:
                raise self.source.extract_error
            if self.source.on_page is not None:
                self.source.on_page(entity_type, page)
            for index, data in enumerate(records[start:start + size]):
                yield self.create_record(entity_type, data, page=page, index=index)


@pytest.fixture
def settings(tmp_path) -> MigrationSettings:
    return MigrationSettings(
        database_url=f"sqlite:///{tmp_path / 'migrations.db'}",
        artifact_dir=str(tmp_path / "artifacts"),
        connector_timeout=5.0,
        batch_size=2,
        sample_size=10,
        encryption_key="ab" * 32,
    )


@pytest.fixture
def database(settings) -> Iterator[Database]:
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def artifact_store(settings) -> LocalArtifactStore:
    return LocalArtifactStore(settings.artifact_dir)


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def registry(fake_source) -> ConnectorRegistry:
    registry = ConnectorRegistry()

    def factory(run: MigrationRun, retry_policy: RetryPolicy) -> BaseConnector:
        return FakeConnector(run.source_vendor, fake_source, retry_policy)

    registry.register(IngestStrategy.UPLOAD, factory)
    return registry


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, backoff_factor=0.0, timeout=None, sleep=lambda seconds: None)


@pytest.fixture
def orchestrator(settings, database, artifact_store, registry, retry_policy) -> MigrationOrchestrator:
    return MigrationOrchestrator(settings, database, artifact_store, registry, retry_policy=retry_policy)


@pytest.fixture
def run(orchestrator) -> MigrationRun:
    """A fresh run in Connecting that resolves to the upload strategy."""
    return orchestrator.start_run(CLINIC, "csv_upload", {}, actor_id=ACTOR)


def drive_to(orchestrator: MigrationOrchestrator, run_id: str, phases: List[str], approve: bool = True):
    """Run phases in order, approving the mapping before transform."""
    outcome = None
    for phase in phases:
        if phase == "transform" and approve and not orchestrator.get_run(run_id).mapping_approved:
            orchestrator.approve_mapping(run_id, ACTOR)
        outcome = orchestrator.run_phase(run_id, phase, actor_id=ACTOR)
        assert outcome.succeeded, outcome.error.to_dict()
    return outcome


FULL_PIPELINE = ["connect", "discover", "generateMapping", "transform", "validate", "promote"]
