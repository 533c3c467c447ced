"""Staging store, ledger, mapping specs and artifact storage."""

from datetime import datetime

import pytest

from clinic_migrate.errors import NotFoundError, PreconditionError
from clinic_migrate.models.mapping import EntityMapping, FieldMapping
from clinic_migrate.models.migration import RunStatus
from clinic_migrate.models.record import RawRecord, StagingStatus
from clinic_migrate.storage.artifacts import ArtifactKind
from clinic_migrate.storage.db import RunRow
from clinic_migrate.storage.repositories import (
    Ledger,
    MappingSpecStore,
    RunRepository,
    StagingStore,
)


@pytest.fixture
def run_id(database):
    with database.transaction() as session:
        row = RunRow(clinic_id="clinic-1", source_vendor="mock", status=RunStatus.CONNECTING.value)
        session.add(row)
        session.flush()
        return row.id


@pytest.fixture
def staging():
    return StagingStore(Ledger())


def raw(source_id, **data):
    return RawRecord(source_id=source_id, entity_type="patient", data={"id": source_id, **data})


class TestStagingStore:
    """Upserts, status changes and ledger bookkeeping."""

    def test_upsert_is_keyed_by_source_id(self, database, run_id, staging):
        with database.transaction() as session:
            staging.upsert_raw(session, run_id, raw("p1", name="Ada"), "clients")
            staging.upsert_raw(session, run_id, raw("p1", name="Ada"), "clients")
            staging.upsert_raw(session, run_id, raw("p2", name="Grace"), "clients")

        with database.transaction() as session:
            assert len(staging.list_rows(session, run_id)) == 2
            assert staging.ledger.summary(session, run_id) == {"patient": {"pending": 2}}

    def test_changed_raw_data_resets_transformed_row(self, database, run_id, staging):
        with database.transaction() as session:
            row = staging.upsert_raw(session, run_id, raw("p1", name="Ada"))
            staging.set_status(session, row, StagingStatus.TRANSFORMED)
            staging.upsert_raw(session, run_id, raw("p1", name="Ada L."))
            assert row.status == StagingStatus.PENDING.value
            assert staging.ledger.summary(session, run_id) == {"patient": {"pending": 1}}

    def test_promoted_rows_never_regress(self, database, run_id, staging):
        with database.transaction() as session:
            row = staging.upsert_raw(session, run_id, raw("p1"))
            staging.set_status(session, row, StagingStatus.VALIDATED)
            assert staging.compare_and_set(session, row, StagingStatus.VALIDATED, StagingStatus.PROMOTED)

            staging.upsert_raw(session, run_id, raw("p1", name="changed"))
            assert row.status == StagingStatus.PROMOTED.value

            with pytest.raises(PreconditionError):
                staging.set_status(session, row, StagingStatus.REJECTED)

    def test_compare_and_set_loses_when_status_moved(self, database, run_id, staging):
        with database.transaction() as session:
            row = staging.upsert_raw(session, run_id, raw("p1"))
            staging.set_status(session, row, StagingStatus.VALIDATED)
            assert staging.compare_and_set(session, row, StagingStatus.VALIDATED, StagingStatus.PROMOTED)
            assert not staging.compare_and_set(session, row, StagingStatus.VALIDATED, StagingStatus.PROMOTED)
            assert staging.ledger.summary(session, run_id) == {"patient": {"promoted": 1}}

    def test_ledger_matches_direct_counts(self, database, run_id, staging):
        with database.transaction() as session:
            rows = [staging.upsert_raw(session, run_id, raw(f"p{i}")) for i in range(5)]
            staging.set_status(session, rows[0], StagingStatus.TRANSFORMED)
            staging.set_status(session, rows[1], StagingStatus.REJECTED, "duplicate of p0")
            staging.set_status(session, rows[2], StagingStatus.VALIDATED)
            staging.set_status(session, rows[2], StagingStatus.VALIDATED)

        with database.transaction() as session:
            summary = staging.ledger.summary(session, run_id)
            assert summary == staging.counts(session, run_id)
            assert sum(summary["patient"].values()) == 5

    def test_source_ids_by_status(self, database, run_id, staging):
        with database.transaction() as session:
            rows = [staging.upsert_raw(session, run_id, raw(f"p{i}")) for i in range(3)]
            staging.set_status(session, rows[0], StagingStatus.TRANSFORMED)

        with database.transaction() as session:
            assert staging.source_ids(session, run_id, [StagingStatus.TRANSFORMED]) == {"patient": {"p0"}}
            assert staging.source_ids(session, run_id, [StagingStatus.PROMOTED]) == {}

    def test_ledger_underflow_is_an_error(self, database, run_id):
        with pytest.raises(RuntimeError):
            with database.transaction() as session:
                Ledger().apply(session, run_id, "patient", StagingStatus.PENDING, StagingStatus.TRANSFORMED)


class TestRunRepository:
    """Phase claims."""

    def test_claim_is_exclusive(self, database, run_id):
        runs = RunRepository()
        with database.transaction() as session:
            assert runs.claim_phase(session, run_id, "connect", [RunStatus.CONNECTING])
            assert not runs.claim_phase(session, run_id, "connect", [RunStatus.CONNECTING])

        with database.transaction() as session:
            runs.release_phase(session, run_id)
        with database.transaction() as session:
            assert runs.claim_phase(session, run_id, "connect", [RunStatus.CONNECTING])

    def test_claim_checks_status_and_sets_in_progress(self, database, run_id):
        runs = RunRepository()
        with database.transaction() as session:
            assert not runs.claim_phase(session, run_id, "discover", [RunStatus.CONNECTED], RunStatus.DISCOVERING)

        with database.transaction() as session:
            session.get(RunRow, run_id).status = RunStatus.CONNECTED.value
        with database.transaction() as session:
            assert runs.claim_phase(session, run_id, "discover", [RunStatus.CONNECTED], RunStatus.DISCOVERING)
        with database.transaction() as session:
            row = runs.get_row(session, run_id)
            assert row.status == RunStatus.DISCOVERING.value
            assert row.active_phase == "discover"

    def test_clinic_scoping(self, database, run_id):
        with database.transaction() as session:
            with pytest.raises(NotFoundError):
                RunRepository().get_row(session, run_id, clinic_id="clinic-2")


class TestMappingSpecStore:
    """Versioned specs and approval."""

    def mappings(self):
        return {
            "patient": EntityMapping("clients", "patient", [FieldMapping("first", "firstName")]),
        }

    def test_versions_increment(self, database, run_id):
        specs = MappingSpecStore()
        with database.transaction() as session:
            assert specs.create(session, run_id, "mock", self.mappings()).version == 1
            assert specs.create(session, run_id, "mock", self.mappings()).version == 2
            assert [s.version for s in specs.list_versions(session, run_id)] == [1, 2]

    def test_round_trip_keeps_field_mappings(self, database, run_id):
        specs = MappingSpecStore()
        with database.transaction() as session:
            specs.create(session, run_id, "mock", self.mappings(), created_by="ops")
        with database.transaction() as session:
            spec = specs.get(session, run_id, 1)
        assert spec.created_by == "ops"
        assert spec.get_entity_mapping("patient").field_mappings[0].source_field == "first"

    def test_approval_is_check_and_set(self, database, run_id):
        specs = MappingSpecStore()
        with database.transaction() as session:
            specs.create(session, run_id, "mock", self.mappings())
            assert specs.approve(session, run_id, 1, "ops", datetime.utcnow())
            assert not specs.approve(session, run_id, 1, "ops", datetime.utcnow())

    def test_invalid_spec_rejected(self, database, run_id):
        bad = {"patient": EntityMapping("clients", "patient", [FieldMapping(None, "firstName")])}
        with pytest.raises(PreconditionError):
            with database.transaction() as session:
                MappingSpecStore().create(session, run_id, "mock", bad)

    def test_missing_version(self, database, run_id):
        with database.transaction() as session:
            with pytest.raises(NotFoundError):
                MappingSpecStore().get(session, run_id, 7)


class TestLocalArtifactStore:
    """Content-addressed blobs."""

    def test_put_and_get(self, artifact_store):
        ref = artifact_store.put_json(ArtifactKind.REPORT, {"b": 1, "a": [1, 2]})

        assert ref.locator.startswith("local://report/")
        assert ref.kind == ArtifactKind.REPORT
        assert artifact_store.get_json(ref.locator) == {"a": [1, 2], "b": 1}

    def test_identical_content_same_locator(self, artifact_store):
        first = artifact_store.put(ArtifactKind.RAW_EXTRACT, b"same")
        second = artifact_store.put(ArtifactKind.RAW_EXTRACT, b"same")
        assert first == second
        assert first.size == 4

    def test_unknown_or_escaping_locators(self, artifact_store):
        with pytest.raises(FileNotFoundError):
            artifact_store.get("local://report/00/missing")
        with pytest.raises(FileNotFoundError):
            artifact_store.get("local://../../etc/passwd")
        with pytest.raises(FileNotFoundError):
            artifact_store.get("s3://bucket/key")
