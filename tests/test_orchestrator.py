"""Run lifecycle tests: transitions, approval gate, pause/resume, faults and audit."""

import json

import pytest

from clinic_migrate.errors import (
    NotFoundError,
    PreconditionError,
    ValidationFailure,
    VendorConnectionError,
)
from clinic_migrate.models.migration import IngestStrategy, RunStatus
from clinic_migrate.models.record import StagingStatus
from clinic_migrate.orchestrator import MigrationOrchestrator
from clinic_migrate.storage.db import RunRow
from clinic_migrate.storage.repositories import live_record_count

from conftest import ACTOR, CLINIC, FULL_PIPELINE, drive_to


def events(orchestrator, run_id, action):
    return [e for e in orchestrator.get_report(run_id)["auditTrail"] if e["action"] == action]


def staged(orchestrator, run_id, entity_type, source_id):
    with orchestrator.database.transaction() as session:
        row = orchestrator.staging.get(session, run_id, entity_type, source_id)
        return orchestrator.staging.to_model(row)


class TestStartRun:
    """Run creation and strategy resolution."""

    def test_start_run_is_connecting_with_audit(self, orchestrator, run):
        assert run.status == RunStatus.CONNECTING
        assert run.ingest_strategy == IngestStrategy.UPLOAD
        assert run.clinic_id == CLINIC

        started = events(orchestrator, run.id, "run_started")
        assert len(started) == 1
        assert started[0]["actor_id"] == ACTOR

    def test_strategy_follows_source_profile(self, orchestrator):
        api_run = orchestrator.start_run(CLINIC, "Boulevard", {"credentials": {"api_key": "k"}})
        upload_run = orchestrator.start_run(
            CLINIC, "boulevard", {"credentials": {"api_key": "k"}, "uploaded_files": [{"name": "clients.csv"}]}
        )

        assert api_run.source_vendor == "boulevard"
        assert api_run.ingest_strategy == IngestStrategy.API
        assert upload_run.ingest_strategy == IngestStrategy.UPLOAD

    def test_start_run_needs_vendor(self, orchestrator):
        with pytest.raises(PreconditionError):
            orchestrator.start_run(CLINIC, "  ")

    def test_credentials_are_encrypted_at_rest(self, orchestrator, fake_source):
        secrets = {"api_key": "sk-live-123", "password": "hunter2"}
        run = orchestrator.start_run(CLINIC, "csv_upload", {"credentials": secrets}, actor_id=ACTOR)

        with orchestrator.database.transaction() as session:
            stored = json.dumps(session.get(RunRow, run.id).source_profile)
        assert "credentials_encrypted" in stored
        assert "sk-live-123" not in stored
        assert "hunter2" not in stored

        assert orchestrator.run_phase(run.id, "connect", actor_id=ACTOR).succeeded
        assert fake_source.credentials == secrets

    def test_credentials_need_an_encryption_key(self, settings, database, artifact_store, registry, retry_policy):
        settings.encryption_key = None
        keyless = MigrationOrchestrator(settings, database, artifact_store, registry, retry_policy=retry_policy)

        with pytest.raises(PreconditionError, match="ENCRYPTION_KEY"):
            keyless.start_run(CLINIC, "csv_upload", {"credentials": {"api_key": "k"}})
        assert keyless.start_run(CLINIC, "csv_upload", {}).status == RunStatus.CONNECTING

    def test_credentials_sealed_under_another_key_fail_connect(
        self, orchestrator, settings, database, artifact_store, registry, retry_policy, fake_source
    ):
        run = orchestrator.start_run(CLINIC, "csv_upload", {"credentials": {"api_key": "k"}})
        settings.encryption_key = "cd" * 32
        rotated = MigrationOrchestrator(settings, database, artifact_store, registry, retry_policy=retry_policy)

        outcome = rotated.run_phase(run.id, "connect", actor_id=ACTOR)

        assert outcome.run.status == RunStatus.FAILED
        assert outcome.error.message == "Stored credentials could not be decrypted"
        assert fake_source.logins == 0


class TestPhaseTransitions:
    """Happy path and precondition handling."""

    def test_full_pipeline_completes(self, orchestrator, run):
        outcome = drive_to(orchestrator, run.id, FULL_PIPELINE)

        assert outcome.run.status == RunStatus.COMPLETED
        assert outcome.run.completed_at is not None
        assert outcome.run.active_phase is None
        assert outcome.result.promoted == {"patient": 2, "appointment": 1}
        assert outcome.result.reconciliation["status"] == "complete"

        with orchestrator.database.transaction() as session:
            assert live_record_count(session, run.id) == 3

    def test_phase_results_stored_under_phase_keys(self, orchestrator, run):
        drive_to(orchestrator, run.id, FULL_PIPELINE)
        progress = orchestrator.get_run(run.id).progress

        assert set(progress) == {
            "connectResult", "discoverResult", "mappingResult",
            "transformResult", "validateResult", "promoteResult",
        }
        assert progress["discoverResult"]["extracted"] == {"patient": 2, "appointment": 1}
        assert progress["transformResult"]["counts"]["patient"] == {"transformed": 2}
        assert progress["validateResult"]["passed"] is True

    def test_one_audit_event_per_phase_invocation(self, orchestrator, run):
        drive_to(orchestrator, run.id, FULL_PIPELINE)

        phase_events = events(orchestrator, run.id, "run_phase")
        assert [e["phase"] for e in phase_events] == FULL_PIPELINE
        assert all(e["actor_id"] == ACTOR for e in phase_events)
        assert all(e["metadata"]["succeeded"] for e in phase_events)

    def test_disallowed_phase_raises_without_audit(self, orchestrator, run):
        with pytest.raises(PreconditionError):
            orchestrator.run_phase(run.id, "promote", actor_id=ACTOR)

        assert events(orchestrator, run.id, "run_phase") == []
        assert orchestrator.get_run(run.id).status == RunStatus.CONNECTING

    def test_unknown_phase_is_a_precondition_error(self, orchestrator, run):
        with pytest.raises(PreconditionError):
            orchestrator.run_phase(run.id, "teleport")

    def test_unknown_run_not_found(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.run_phase("missing", "connect")

    def test_other_clinic_cannot_see_run(self, orchestrator, run):
        with pytest.raises(NotFoundError):
            orchestrator.get_run(run.id, clinic_id="clinic-2")
        with pytest.raises(NotFoundError):
            orchestrator.run_phase(run.id, "connect", clinic_id="clinic-2")

    def test_snake_case_phase_names_accepted(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover"])
        outcome = orchestrator.run_phase(run.id, "generate_mapping", actor_id=ACTOR)
        assert outcome.run.status == RunStatus.MAPPING_REVIEW


class TestMappingApproval:
    """The approval gate between generateMapping and transform."""

    def test_transform_requires_approval(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping"])

        with pytest.raises(PreconditionError, match="approved"):
            orchestrator.run_phase(run.id, "transform", actor_id=ACTOR)
        assert orchestrator.get_run(run.id).status == RunStatus.MAPPING_REVIEW

    def test_approve_is_not_idempotent(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping"])

        approval = orchestrator.approve_mapping(run.id, ACTOR)
        assert approval["version"] == 1
        assert approval["approvedAt"]

        with pytest.raises(PreconditionError, match="already approved"):
            orchestrator.approve_mapping(run.id, ACTOR)

        assert len(events(orchestrator, run.id, "mapping_approved")) == 1
        spec = orchestrator.get_mapping(run.id)
        assert spec.is_approved
        assert spec.approved_by == ACTOR

    def test_approve_outside_review_rejected(self, orchestrator, run):
        with pytest.raises(PreconditionError):
            orchestrator.approve_mapping(run.id, ACTOR)

    def test_proposed_mapping_needs_fresh_approval(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping"])
        orchestrator.approve_mapping(run.id, ACTOR)

        current = orchestrator.get_mapping(run.id)
        spec = orchestrator.propose_mapping(run.id, current.mappings_to_dict(), "reviewer")

        assert spec.version == 2
        run_after = orchestrator.get_run(run.id)
        assert run_after.mapping_spec_version == 2
        assert not run_after.mapping_approved
        assert orchestrator.get_mapping(run.id, version=1).is_approved

        assert orchestrator.approve_mapping(run.id, ACTOR)["version"] == 2

    def test_invalid_proposal_rejected(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping"])
        bad = {
            "patient": {
                "source_entity": "patients",
                "target_entity": "patient",
                "field_mappings": [{"source_field": "x", "target_field": "shoeSize"}],
            }
        }
        with pytest.raises(PreconditionError, match="shoeSize"):
            orchestrator.propose_mapping(run.id, bad, ACTOR)
        assert orchestrator.get_run(run.id).mapping_spec_version == 1

    def test_generated_mapping_is_confident_for_known_fields(self, orchestrator, run):
        outcome = drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping"])

        assert outcome.result.version == 1
        assert outcome.result.entity_types == ["appointment", "patient"]
        assert outcome.result.requires_approval == {}
        assert outcome.result.unmapped_fields == {"patient": ["id"], "appointment": ["id"]}


class TestSinglePhaseInFlight:
    """At most one phase runs per run."""

    def test_claim_rejected_while_phase_active(self, orchestrator, run):
        with orchestrator.database.transaction() as session:
            session.get(RunRow, run.id).active_phase = "connect"

        with pytest.raises(PreconditionError, match="already running"):
            orchestrator.run_phase(run.id, "connect", actor_id=ACTOR)

        current = orchestrator.get_run(run.id)
        assert current.active_phase == "connect"
        assert current.status == RunStatus.CONNECTING

    def test_nested_request_during_discover_rejected(self, orchestrator, run, fake_source):
        drive_to(orchestrator, run.id, ["connect"])
        rejected = []

        def try_again(entity_type, page):
            try:
                orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)
            except PreconditionError as e:
                rejected.append(e)

        fake_source.on_page = try_again
        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)

        assert outcome.succeeded
        assert len(rejected) == 3
        assert len(events(orchestrator, run.id, "run_phase")) == 2

    def test_claim_released_after_failure(self, orchestrator, run, fake_source):
        fake_source.login_error = VendorConnectionError("bad password", retryable=False)
        orchestrator.run_phase(run.id, "connect", actor_id=ACTOR)
        assert orchestrator.get_run(run.id).active_phase is None


class TestPauseResume:
    """Pausing idle runs, page and batch boundaries, and resuming."""

    def test_pause_idle_run_and_resume(self, orchestrator, run):
        paused = orchestrator.pause(run.id, ACTOR)
        assert paused.status == RunStatus.PAUSED
        assert paused.paused_from == RunStatus.CONNECTING

        with pytest.raises(PreconditionError):
            orchestrator.run_phase(run.id, "connect")

        resumed = orchestrator.resume(run.id, ACTOR)
        assert resumed.status == RunStatus.CONNECTING
        assert resumed.paused_from is None

        assert [e["action"] for e in orchestrator.get_report(run.id)["auditTrail"]][-2:] == ["pause", "resume"]

    def test_pause_twice_rejected(self, orchestrator, run):
        orchestrator.pause(run.id, ACTOR)
        with pytest.raises(PreconditionError):
            orchestrator.pause(run.id, ACTOR)

    def test_resume_requires_paused(self, orchestrator, run):
        with pytest.raises(PreconditionError):
            orchestrator.resume(run.id, ACTOR)

    def test_terminal_run_cannot_pause(self, orchestrator, run):
        drive_to(orchestrator, run.id, FULL_PIPELINE)
        with pytest.raises(PreconditionError):
            orchestrator.pause(run.id, ACTOR)

    def test_pause_stops_discover_at_page_boundary(self, orchestrator, run, fake_source):
        drive_to(orchestrator, run.id, ["connect"])

        def pause_on_first_page(entity_type, page):
            if entity_type == "patient" and page == 0:
                orchestrator.pause(run.id, ACTOR)

        fake_source.on_page = pause_on_first_page
        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)

        assert not outcome.succeeded
        assert outcome.error.code == "cancelled"
        assert outcome.run.status == RunStatus.PAUSED
        assert outcome.run.paused_from == RunStatus.DISCOVERING
        assert outcome.run.active_phase is None
        assert events(orchestrator, run.id, "pause")[0]["metadata"]["in_flight"] == "discover"

        assert orchestrator.resume(run.id, ACTOR).status == RunStatus.CONNECTED

        fake_source.on_page = None
        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)
        assert outcome.run.status == RunStatus.DISCOVERED
        with orchestrator.database.transaction() as session:
            summary = orchestrator.ledger.summary(session, run.id)
        assert summary == {"patient": {"pending": 2}, "appointment": {"pending": 1}}

    def test_records_extracted_before_a_pause_are_staged(self, orchestrator, run, fake_source):
        drive_to(orchestrator, run.id, ["connect"])

        def pause_on_first_page(entity_type, page):
            if entity_type == "patient" and page == 0:
                orchestrator.pause(run.id, ACTOR)

        fake_source.on_page = pause_on_first_page
        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)

        assert outcome.run.status == RunStatus.PAUSED
        assert staged(orchestrator, run.id, "patient", "p1").status == StagingStatus.PENDING
        with orchestrator.database.transaction() as session:
            assert orchestrator.ledger.summary(session, run.id) == {"patient": {"pending": 1}}

    def test_pause_after_last_boundary_still_pauses(self, orchestrator, run, fake_source):
        drive_to(orchestrator, run.id, ["connect"])

        def pause_on_last_page(entity_type, page):
            if entity_type == "appointment":
                orchestrator.pause(run.id, ACTOR)

        fake_source.on_page = pause_on_last_page
        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)

        assert outcome.succeeded
        assert outcome.run.status == RunStatus.PAUSED
        assert outcome.run.paused_from == RunStatus.DISCOVERED
        assert "discoverResult" in outcome.run.progress

        assert orchestrator.resume(run.id, ACTOR).status == RunStatus.DISCOVERED
        fake_source.on_page = None
        assert orchestrator.run_phase(run.id, "generateMapping").run.status == RunStatus.MAPPING_REVIEW

    def test_pause_between_promote_batches_resumes_without_duplicates(self, orchestrator, run, monkeypatch):
        drive_to(orchestrator, run.id, FULL_PIPELINE[:-1])

        original = orchestrator._raise_if_cancelled
        calls = []

        def pause_before_second_batch(run_id):
            calls.append(run_id)
            if len(calls) == 2:
                orchestrator.pause(run_id, ACTOR)
            original(run_id)

        monkeypatch.setattr(orchestrator, "_raise_if_cancelled", pause_before_second_batch)
        outcome = orchestrator.run_phase(run.id, "promote", actor_id=ACTOR)

        assert outcome.error.code == "cancelled"
        assert outcome.run.status == RunStatus.PAUSED
        assert outcome.run.paused_from == RunStatus.VERIFYING
        with orchestrator.database.transaction() as session:
            assert live_record_count(session, run.id, "patient") == 2
            assert live_record_count(session, run.id, "appointment") == 0

        monkeypatch.setattr(orchestrator, "_raise_if_cancelled", original)
        assert orchestrator.resume(run.id, ACTOR).status == RunStatus.VERIFYING
        outcome = orchestrator.run_phase(run.id, "promote", actor_id=ACTOR)

        assert outcome.run.status == RunStatus.COMPLETED
        assert outcome.result.promoted == {"appointment": 1}
        with orchestrator.database.transaction() as session:
            assert live_record_count(session, run.id, "patient") == 2
            assert live_record_count(session, run.id) == 3


class TestFaults:
    """Retries, vendor failures and sanitized system errors."""

    def test_retries_audited_with_system_actor(self, orchestrator, run, fake_source):
        fake_source.login_failures = 2
        outcome = orchestrator.run_phase(run.id, "connect", actor_id=ACTOR)

        assert outcome.succeeded
        assert outcome.result.attempts == 3
        retries = events(orchestrator, run.id, "retry")
        assert [e["metadata"]["attempt"] for e in retries] == [2, 3]
        assert all(e["actor_id"] is None for e in retries)
        assert all(e["phase"] == "connect" for e in retries)

    def test_exhausted_retries_fail_the_run(self, orchestrator, run, fake_source):
        fake_source.login_failures = 10
        outcome = orchestrator.run_phase(run.id, "connect", actor_id=ACTOR)

        assert outcome.error.code == "vendor_connection_error"
        assert outcome.run.status == RunStatus.FAILED
        assert fake_source.logins == 3
        assert len(events(orchestrator, run.id, "retry")) == 2

        phase_event = events(orchestrator, run.id, "run_phase")[0]
        assert phase_event["metadata"]["succeeded"] is False
        assert phase_event["metadata"]["error"]["code"] == "vendor_connection_error"

    def test_non_retryable_error_fails_immediately(self, orchestrator, run, fake_source):
        fake_source.login_error = VendorConnectionError("bad password", retryable=False)
        outcome = orchestrator.run_phase(run.id, "connect", actor_id=ACTOR)

        assert outcome.run.status == RunStatus.FAILED
        assert fake_source.logins == 1
        assert events(orchestrator, run.id, "retry") == []

    def test_unexpected_error_is_sanitized(self, orchestrator, run, fake_source):
        drive_to(orchestrator, run.id, ["connect"])
        fake_source.extract_error = RuntimeError("password=hunter2 at db01")

        outcome = orchestrator.run_phase(run.id, "discover", actor_id=ACTOR)

        assert outcome.error.code == "system_error"
        assert "hunter2" not in outcome.error.message
        assert "RuntimeError" in outcome.error.message
        assert outcome.run.status == RunStatus.FAILED
        assert "hunter2" not in outcome.run.error_message

    def test_failed_run_accepts_no_more_phases(self, orchestrator, run, fake_source):
        fake_source.login_error = VendorConnectionError("bad password", retryable=False)
        orchestrator.run_phase(run.id, "connect")

        with pytest.raises(PreconditionError):
            orchestrator.run_phase(run.id, "discover")

    def test_mapping_without_staged_records_fails(self, orchestrator, run, fake_source):
        fake_source.datasets = {}
        drive_to(orchestrator, run.id, ["connect", "discover"])

        outcome = orchestrator.run_phase(run.id, "generateMapping", actor_id=ACTOR)
        assert outcome.error is not None
        assert outcome.run.status == RunStatus.FAILED


class TestTransformAndValidate:
    """Staging status changes driven by transform and validate."""

    def test_duplicates_are_rejected(self, orchestrator, run, fake_source):
        fake_source.datasets["patient"].append({
            "id": "p3", "firstName": "Ada", "lastName": "L.", "email": "ada@example.com",
        })
        outcome = drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping", "transform"])

        assert outcome.result.duplicates == {"patient": 1}
        record = staged(orchestrator, run.id, "patient", "p3")
        assert record.status == StagingStatus.REJECTED
        assert record.error_detail == "duplicate of p1"

    def test_untransformable_rows_stay_pending(self, orchestrator, run, fake_source):
        fake_source.datasets["patient"].append({
            "id": "p3", "firstName": "Alan", "lastName": "Turing", "dob": "not a date",
        })
        outcome = drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping", "transform"])

        assert outcome.result.failures == {"patient": 1}
        record = staged(orchestrator, run.id, "patient", "p3")
        assert record.status == StagingStatus.PENDING
        assert "dateOfBirth" in record.error_detail

        outcome = orchestrator.run_phase(run.id, "validate", actor_id=ACTOR)
        assert outcome.succeeded
        assert outcome.result.report["patient"]["untransformed"] == 1

    def test_transform_is_idempotent(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping", "transform"])

        def snapshot():
            with orchestrator.database.transaction() as session:
                rows = orchestrator.staging.list_rows(session, run.id)
                return {
                    (r.entity_type, r.source_id): (r.status, r.payload, r.canonical_id, r.checksum)
                    for r in rows
                }, orchestrator.ledger.summary(session, run.id)

        before = snapshot()
        orchestrator._transform(orchestrator.get_run(run.id), ACTOR)
        assert snapshot() == before

    def test_payloads_are_canonical(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping", "transform"])

        patient = staged(orchestrator, run.id, "patient", "p2").payload
        assert patient["email"] == "grace@example.com"
        assert patient["phone"] == "+15559876543"
        assert patient["dateOfBirth"] == "1985-03-04"
        assert patient["sourceId"] == "p2"

        appointment = staged(orchestrator, run.id, "appointment", "a1").payload
        assert appointment["status"] == "scheduled"
        assert appointment["patientSourceId"] == "p1"
        assert appointment["providerName"] == "Dr. Smith"

    def test_failed_validation_keeps_run_migrating(self, orchestrator, run, fake_source):
        fake_source.datasets["appointment"].append({
            "id": "a2", "patientId": "p9", "provider": "Dr. Who",
            "startTime": "2024-03-02T09:00:00", "status": "confirmed",
        })
        drive_to(orchestrator, run.id, ["connect", "discover", "generateMapping", "transform"])

        outcome = orchestrator.run_phase(run.id, "validate", actor_id=ACTOR)

        assert isinstance(outcome.error, ValidationFailure)
        assert outcome.error.failed_entities == {"appointment": 1}
        assert outcome.run.status == RunStatus.MIGRATING
        assert outcome.run.progress["validateResult"]["passed"] is False

        orphan = staged(orchestrator, run.id, "appointment", "a2")
        assert orphan.status == StagingStatus.TRANSFORMED
        assert "V005" in orphan.error_detail
        assert staged(orchestrator, run.id, "appointment", "a1").status == StagingStatus.VALIDATED

        rejected = orchestrator.reject_record(run.id, "appointment", "a2", ACTOR, reason="orphan")
        assert rejected["status"] == "rejected"

        assert orchestrator.run_phase(run.id, "validate", actor_id=ACTOR).run.status == RunStatus.VERIFYING
        outcome = orchestrator.run_phase(run.id, "promote", actor_id=ACTOR)

        reconciliation = outcome.result.reconciliation
        assert reconciliation["entities"]["appointment"]["rejectedCount"] == 1
        assert reconciliation["entities"]["appointment"]["matchRate"] == 1.0
        assert reconciliation["status"] == "complete"

    def test_validation_artifacts_stored(self, orchestrator, run, artifact_store):
        drive_to(orchestrator, run.id, FULL_PIPELINE[:-1])
        artifacts = {a["key"]: a for a in orchestrator.get_report(run.id)["artifacts"]}

        assert {"raw/patient.json", "raw/appointment.json", "validation_report.json",
                "sampling_packet.json"} <= set(artifacts)

        report = artifact_store.get_json(artifacts["validation_report.json"]["locator"])
        assert report["runId"] == run.id
        assert report["passed"] is True

        packet = artifact_store.get_json(artifacts["sampling_packet.json"]["locator"])
        assert packet["totalRecords"] == 3
        assert len(packet["sample"]) == 3

    def test_reject_unknown_record(self, orchestrator, run):
        with pytest.raises(NotFoundError):
            orchestrator.reject_record(run.id, "patient", "nobody", ACTOR)

    def test_reject_twice_refused(self, orchestrator, run):
        drive_to(orchestrator, run.id, ["connect", "discover"])
        orchestrator.reject_record(run.id, "patient", "p2", ACTOR)
        with pytest.raises(PreconditionError):
            orchestrator.reject_record(run.id, "patient", "p2", ACTOR)


class TestLedgerAndCleanup:
    """Ledger consistency, reporting and run deletion."""

    def test_ledger_matches_staging_at_every_phase(self, orchestrator, run):
        for phase in FULL_PIPELINE:
            drive_to(orchestrator, run.id, [phase])
            with orchestrator.database.transaction() as session:
                assert orchestrator.ledger.summary(session, run.id) == orchestrator.staging.counts(session, run.id)

    def test_report_contents(self, orchestrator, run):
        drive_to(orchestrator, run.id, FULL_PIPELINE)
        report = orchestrator.get_report(run.id)

        assert report["run"]["status"] == "Completed"
        assert report["ledger"] == {"patient": {"promoted": 2}, "appointment": {"promoted": 1}}
        assert report["validationReport"]["patient"]["checked"] == 2
        assert report["reconciliation"]["completeness"] == 1.0
        assert report["auditTrail"][0]["action"] == "run_started"

    def test_cleanup_keeps_live_records(self, orchestrator, run):
        drive_to(orchestrator, run.id, FULL_PIPELINE)

        deleted = orchestrator.cleanup_run(run.id, ACTOR)

        assert deleted["staging"] == 3
        assert deleted["audit_events"] > 0
        with pytest.raises(NotFoundError):
            orchestrator.get_run(run.id)
        with orchestrator.database.transaction() as session:
            assert live_record_count(session, run.id) == 3
