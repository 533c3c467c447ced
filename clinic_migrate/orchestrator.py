"""Migration orchestrator - drives a run through its phases."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from .config import MigrationSettings
from .connectors.base import BaseConnector
from .connectors.registry import ConnectorRegistry
from .crypto import CredentialCipher
from .errors import (
    ExtractionCancelled,
    MigrationError,
    MigrationSystemError,
    NotFoundError,
    PreconditionError,
    ValidationFailure,
    VendorConnectionError,
)
from .models.canonical import PROMOTION_ORDER, canonical_id, payload_checksum
from .models.mapping import EntityMapping, MappingSpec
from .models.migration import (
    PHASE_RULES,
    RESUME_TARGETS,
    MigrationRun,
    Phase,
    PhaseRule,
    RunStatus,
)
from .models.progress import (
    ConnectResult,
    DiscoverResult,
    MappingResult,
    PromoteResult,
    RunProgress,
    TransformResult,
    ValidateResult,
)
from .models.record import EntityDiscovery, StagingStatus
from .services.deduplicator import Deduplicator
from .services.mapping_generator import MappingGenerator
from .services.promoter import Promoter
from .services.reconciler import Reconciler
from .services.retry import RetryPolicy
from .services.strategy import resolve_profile
from .services.transformer import TransformEngine
from .services.validator import RecordValidator, StagedItem
from .storage.artifacts import ArtifactKind, ArtifactStore, LocalArtifactStore
from .storage.db import Database, RunRow
from .storage.repositories import (
    ArtifactIndex,
    AuditLog,
    Ledger,
    MappingSpecStore,
    RunRepository,
    StagingStore,
    delete_run_records,
    live_record_count,
    live_source_ids,
)

logger = logging.getLogger(__name__)

MAPPING_SAMPLE_SIZE = 50


@dataclass
class PhaseOutcome:
    """What run_phase hands back: the run after the call plus result or error."""
    run: MigrationRun
    phase: Phase
    result: Optional[Any] = None
    error: Optional[Union[MigrationError, ValidationFailure]] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run": self.run.to_dict(),
            "phase": self.phase.value,
            "status": self.run.status.value,
            "succeeded": self.succeeded,
            "result": self.result.to_dict() if self.result is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
        }


class RetryRecorder:
    """on_retry hook that audits each system retry with a null actor."""

    def __init__(self, orchestrator: "MigrationOrchestrator", run_id: str, phase: Phase):
        self.orchestrator = orchestrator
        self.run_id = run_id
        self.phase = phase
        self.count = 0

    def __call__(self, retry_number: int, error: VendorConnectionError) -> None:
        self.count += 1
        with self.orchestrator.database.transaction() as session:
            self.orchestrator.audit.append(
                session,
                self.run_id,
                "retry",
                phase=self.phase.value,
                actor_id=None,
                metadata={"attempt": retry_number + 1, "error": error.message},
            )


class MigrationOrchestrator:
    """
    Orchestrates a clinic migration run.

    Handles:
    - Strategy resolution at run start
    - Phase execution with one phase in flight per run
    - Staging, transform, validation and promotion
    - Mapping approval gate
    - Pause and resume at page / batch boundaries
    - Ledger, audit trail and artifacts
    - Reporting and cleanup
    """

    def __init__(
        self,
        settings: MigrationSettings,
        database: Database,
        artifact_store: ArtifactStore,
        registry: ConnectorRegistry,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Runtime settings
            database: Database holding run state
            artifact_store: Blob store for extracts, reports and packets
            registry: Connector registry used to build connectors per run
            retry_policy: Override for the settings-derived retry policy
        """
        self.settings = settings
        self.database = database
        self.artifact_store = artifact_store
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.max_retries,
            backoff_factor=settings.backoff_factor,
            timeout=settings.connector_timeout,
        )
        self.cipher = CredentialCipher.from_key_string(settings.encryption_key) if settings.encryption_key else None

        self.runs = RunRepository()
        self.ledger = Ledger()
        self.staging = StagingStore(self.ledger)
        self.specs = MappingSpecStore()
        self.audit = AuditLog()
        self.artifacts = ArtifactIndex()

        self.mapping_generator = MappingGenerator()
        self.transformer = TransformEngine(masking_secret=settings.masking_secret)
        self.deduplicator = Deduplicator()
        self.validator = RecordValidator(sample_size=settings.sample_size)
        self.promoter = Promoter(self.staging, batch_size=settings.batch_size)
        self.reconciler = Reconciler()

        self._handlers: Dict[Phase, Callable[[MigrationRun, Optional[str]], Any]] = {
            Phase.CONNECT: self._connect,
            Phase.DISCOVER: self._discover,
            Phase.GENERATE_MAPPING: self._generate_mapping,
            Phase.TRANSFORM: self._transform,
            Phase.VALIDATE: self._validate,
            Phase.PROMOTE: self._promote,
        }

    @classmethod
    def from_settings(
        cls,
        settings: MigrationSettings,
        registry: Optional[ConnectorRegistry] = None
    ) -> "MigrationOrchestrator":
        """Build an orchestrator with a database, local artifact store and default connectors."""
        database = Database(settings.database_url)
        database.create_all()
        artifact_store = LocalArtifactStore(settings.artifact_dir)
        return cls(
            settings,
            database,
            artifact_store,
            registry or ConnectorRegistry.default(settings, artifact_store),
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(
        self,
        clinic_id: str,
        vendor: Any,
        source_profile: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None
    ) -> MigrationRun:
        """
        Create a run in Connecting with its ingestion strategy resolved.

        Args:
            clinic_id: Tenant that owns the run
            vendor: Source vendor identifier
            source_profile: {credentials, source_url, uploaded_files, ...}
            actor_id: Who started the run

        Returns:
            The new MigrationRun
        """
        vendor_key = str(getattr(vendor, "value", vendor) or "").strip().lower()
        if not clinic_id or not vendor_key:
            raise PreconditionError("A run needs a clinic and a source vendor")

        profile = dict(source_profile or {})
        strategy = resolve_profile(vendor_key, profile)

        credentials = profile.pop("credentials", None)
        if credentials:
            if self.cipher is None:
                raise PreconditionError("Storing vendor credentials needs CLINIC_MIGRATE_ENCRYPTION_KEY to be set")
            profile["credentials_encrypted"] = self.cipher.encrypt(credentials)

        with self.database.transaction() as session:
            row = RunRow(
                clinic_id=clinic_id,
                source_vendor=vendor_key,
                status=RunStatus.CONNECTING.value,
                ingest_strategy=strategy.value,
                source_profile=profile,
                progress={},
                started_by=actor_id,
                created_at=datetime.utcnow(),
            )
            session.add(row)
            session.flush()
            self.audit.append(
                session, row.id, "run_started", actor_id=actor_id,
                metadata={"vendor": vendor_key, "strategy": strategy.value},
            )
            run = self.runs.to_model(row)

        logger.info(f"Started run {run.id} for clinic {clinic_id}: {vendor_key} via {strategy.value}")
        return run

    def run_phase(
        self,
        run_id: str,
        phase: Union[Phase, str],
        actor_id: Optional[str] = None,
        clinic_id: Optional[str] = None
    ) -> PhaseOutcome:
        """
        Execute one phase of a run.

        Args:
            run_id: Run to drive
            phase: Phase to execute
            actor_id: Caller, recorded on the audit event
            clinic_id: Tenant scope; another clinic's run is not found

        Returns:
            PhaseOutcome with the phase result, or the handled error

        Raises:
            NotFoundError: Unknown run
            PreconditionError: Status does not allow the phase, or a phase is in flight
        """
        try:
            phase = Phase.parse(phase)
        except ValueError as e:
            raise PreconditionError(str(e))
        rule = PHASE_RULES[phase]

        run, start_status = self._claim(run_id, phase, rule, clinic_id)
        logger.info(f"=== {phase.value.upper()} ({run_id}) ===")

        finished = False
        try:
            outcome = self._execute(run, phase, rule, start_status, actor_id)
            finished = True
            return outcome
        finally:
            if not finished:
                with self.database.transaction() as session:
                    self.runs.release_phase(session, run_id)

    def _claim(
        self,
        run_id: str,
        phase: Phase,
        rule: PhaseRule,
        clinic_id: Optional[str]
    ):
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            current = RunStatus(row.status)
            if current not in rule.allowed_from:
                raise PreconditionError.expected_status(phase.value, current, rule.allowed_from)
            if phase == Phase.TRANSFORM and row.mapping_approved_at is None:
                raise PreconditionError(
                    f"Cannot transform until mapping version {row.mapping_spec_version} is approved",
                    {"mapping_spec_version": row.mapping_spec_version},
                )
            if row.active_phase is not None or not self.runs.claim_phase(
                session, run_id, phase.value, rule.allowed_from, rule.in_progress
            ):
                raise PreconditionError(
                    f"Cannot {phase.value}: another phase is already running for run {run_id}",
                    {"active_phase": row.active_phase},
                )
            session.refresh(row)
            if row.started_at is None:
                row.started_at = datetime.utcnow()
            return self.runs.to_model(row), RunStatus(row.status)

    def _execute(
        self,
        run: MigrationRun,
        phase: Phase,
        rule: PhaseRule,
        start_status: RunStatus,
        actor_id: Optional[str]
    ) -> PhaseOutcome:
        try:
            result = self._handlers[phase](run, actor_id)
        except ExtractionCancelled as e:
            logger.info(f"Run {run.id}: {phase.value} paused")
            return self._finish(run.id, phase, actor_id, RunStatus.PAUSED, error=e, paused_from=start_status)
        except MigrationError as e:
            logger.error(f"Run {run.id}: {phase.value} failed: {e.message}")
            return self._finish(run.id, phase, actor_id, rule.on_failure, error=e, paused_from=start_status)
        except Exception as e:
            logger.error(f"Run {run.id}: {phase.value} failed: {e}", exc_info=True)
            error = MigrationSystemError.from_exception(phase.value, e)
            return self._finish(run.id, phase, actor_id, rule.on_failure, error=error, paused_from=start_status)

        if phase == Phase.VALIDATE and not result.passed:
            failure = ValidationFailure(result.report)
            logger.warning(f"Run {run.id}: {failure.message}")
            return self._finish(run.id, phase, actor_id, rule.on_failure, result=result, error=failure)

        return self._finish(run.id, phase, actor_id, rule.on_success, result=result, paused_from=rule.on_success)

    def _finish(
        self,
        run_id: str,
        phase: Phase,
        actor_id: Optional[str],
        new_status: RunStatus,
        result: Optional[Any] = None,
        error: Optional[Union[MigrationError, ValidationFailure]] = None,
        paused_from: Optional[RunStatus] = None
    ) -> PhaseOutcome:
        """Persist status, progress and the phase audit event; release the run."""
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id)

            if error is None and row.cancel_requested and not new_status.is_terminal:
                # A pause that arrived after the last boundary still applies.
                new_status = RunStatus.PAUSED

            if new_status == RunStatus.PAUSED:
                row.paused_from = (paused_from or RunStatus(row.status)).value
            row.status = new_status.value
            row.error_message = error.message if error is not None else None
            if result is not None:
                progress = RunProgress.from_dict(row.progress)
                progress.set(phase, result)
                row.progress = progress.to_dict()
            if new_status == RunStatus.COMPLETED:
                row.completed_at = datetime.utcnow()

            metadata: Dict[str, Any] = {"status": new_status.value, "succeeded": error is None}
            if error is not None:
                metadata["error"] = error.to_dict()
            self.audit.append(session, run_id, "run_phase", phase=phase.value, actor_id=actor_id, metadata=metadata)

            row.active_phase = None
            row.cancel_requested = False
            row.updated_at = datetime.utcnow()
            session.flush()
            run = self.runs.to_model(row)

        logger.info(f"Run {run_id}: {phase.value} -> {new_status.value}")
        return PhaseOutcome(run=run, phase=phase, result=result, error=error)

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _open_connector(self, run: MigrationRun, phase: Phase) -> Tuple[BaseConnector, RetryRecorder]:
        """Build the run's connector, wire retry auditing and pause checks, and log in."""
        recorder = RetryRecorder(self, run.id, phase)
        connector = self.registry.create(run, self.retry_policy)
        connector.on_retry = recorder
        connector.set_cancel_check(lambda: self._cancel_requested(run.id))
        if connector.supports_parallel:
            connector.max_concurrent_calls = max(1, self.settings.parallel_workers)
        try:
            connector.login(self._credentials(run))
        except Exception:
            connector.close()
            raise
        return connector, recorder

    def _credentials(self, run: MigrationRun) -> Dict[str, Any]:
        """Decrypt the run's stored vendor credentials."""
        token = run.source_profile.get("credentials_encrypted")
        if not token:
            return {}
        if self.cipher is None:
            raise MigrationError("Run has stored credentials but no encryption key is configured")
        return self.cipher.decrypt(token)

    def _connect(self, run: MigrationRun, actor_id: Optional[str]) -> ConnectResult:
        connector, recorder = self._open_connector(run, Phase.CONNECT)
        connector.close()
        return ConnectResult(
            strategy=run.ingest_strategy.value,
            connector=type(connector).__name__,
            attempts=recorder.count + 1,
        )

    def _discover(self, run: MigrationRun, actor_id: Optional[str]) -> DiscoverResult:
        connector, _ = self._open_connector(run, Phase.DISCOVER)
        try:
            discoveries = connector.discover_entities()
            available = [d for d in discoveries if d.available]
            result = DiscoverResult(
                strategy=run.ingest_strategy.value,
                entities=[d.to_dict() for d in discoveries],
                skipped=[d.entity_type for d in discoveries if not d.available],
            )
            logger.info(f"Run {run.id}: discovered {len(available)} available entity type(s)")

            workers = max(1, self.settings.parallel_workers)
            if connector.supports_parallel and workers > 1 and len(available) > 1:
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    counts = list(executor.map(lambda d: self._extract_into_staging(run, connector, d), available))
            else:
                counts = [self._extract_into_staging(run, connector, d) for d in available]
            result.extracted = {d.entity_type: n for d, n in zip(available, counts)}

            extra = connector.artifacts()
            with self.database.transaction() as session:
                for name, payload in extra.items():
                    ref = self.artifact_store.put_json(ArtifactKind.RAW_EXTRACT, payload)
                    self.artifacts.record(session, run.id, name, ref)
                    result.artifacts.append(name)
            result.artifacts = sorted(set(result.artifacts) | {f"raw/{e}.json" for e in result.extracted})
            for warning in connector.warnings:
                logger.warning(f"Run {run.id}: {warning}")
        finally:
            connector.close()

        logger.info(f"Run {run.id}: staged {result.total_extracted} raw record(s)")
        return result

    def _extract_into_staging(self, run: MigrationRun, connector: BaseConnector, discovery: EntityDiscovery) -> int:
        """Stage one entity type. Work for one (run, entity type) stays on one thread."""
        entity_type = discovery.entity_type
        raw_extract: List[Dict[str, Any]] = []
        pending = []

        def flush() -> None:
            with self.database.transaction() as session:
                for record in pending:
                    self.staging.upsert_raw(session, run.id, record, discovery.source_entity)
            pending.clear()

        try:
            for record in connector.extract_entity(entity_type):
                pending.append(record)
                raw_extract.append(record.to_dict())
                if len(pending) >= self.settings.batch_size:
                    flush()
        finally:
            # Records already extracted are staged even when a pause stops the loop.
            if pending:
                flush()

        ref = self.artifact_store.put_json(ArtifactKind.RAW_EXTRACT, raw_extract)
        with self.database.transaction() as session:
            self.artifacts.record(session, run.id, f"raw/{entity_type}.json", ref)

        logger.info(f"Run {run.id}: extracted {len(raw_extract)} {entity_type} record(s)")
        return len(raw_extract)

    def _generate_mapping(self, run: MigrationRun, actor_id: Optional[str]) -> MappingResult:
        with self.database.transaction() as session:
            samples: Dict[str, List[Dict[str, Any]]] = {}
            source_entities: Dict[str, str] = {}
            for entity_type in self.staging.entity_types(session, run.id):
                rows = self.staging.list_rows(session, run.id, entity_type, limit=MAPPING_SAMPLE_SIZE)
                samples[entity_type] = [row.raw_data for row in rows]
                if rows and rows[0].source_entity:
                    source_entities[entity_type] = rows[0].source_entity

        if not samples:
            raise MigrationError("No staged records to draft a mapping from")

        entity_mappings, unmapped = self.mapping_generator.generate(samples, source_entities)
        with self.database.transaction() as session:
            spec = self.specs.create(session, run.id, run.source_vendor, entity_mappings, created_by=actor_id)
            self._set_mapping_version(session, run.id, spec.version)

        return MappingResult(
            version=spec.version,
            entity_types=sorted(entity_mappings),
            requires_approval={
                e: m.requires_approval for e, m in entity_mappings.items() if m.requires_approval
            },
            unmapped_fields=unmapped,
        )

    def _transform(self, run: MigrationRun, actor_id: Optional[str]) -> TransformResult:
        with self.database.transaction() as session:
            spec = self.specs.get(session, run.id, run.mapping_spec_version)
            entity_types = self._ordered(self.staging.entity_types(session, run.id))

        result = TransformResult(mapping_version=spec.version)
        for entity_type in entity_types:
            self._raise_if_cancelled(run.id)
            mapping = spec.get_entity_mapping(entity_type)
            with self.database.transaction() as session:
                failures, duplicates = self._transform_entity(session, run, entity_type, mapping)
            if failures:
                result.failures[entity_type] = failures
            if duplicates:
                result.duplicates[entity_type] = duplicates

        with self.database.transaction() as session:
            result.counts = self.ledger.summary(session, run.id)
        return result

    def _transform_entity(
        self,
        session: Session,
        run: MigrationRun,
        entity_type: str,
        mapping: Optional[EntityMapping]
    ) -> Tuple[int, int]:
        """Transform pending/transformed rows of one entity type. Returns (failures, duplicates)."""
        rows = self.staging.list_rows(
            session, run.id, entity_type, [StagingStatus.PENDING, StagingStatus.TRANSFORMED]
        )
        if mapping is None:
            for row in rows:
                self.staging.set_status(session, row, StagingStatus.PENDING, f"No mapping for entity type {entity_type}")
            logger.warning(f"Run {run.id}: no mapping for {entity_type}; {len(rows)} record(s) left pending")
            return len(rows), 0

        failures = 0
        transformed = []
        for row in rows:
            outcome = self.transformer.transform_record(row.raw_data or {}, mapping, row.source_id)
            if not outcome.success:
                self.staging.set_status(session, row, StagingStatus.PENDING, "; ".join(outcome.errors))
                failures += 1
                continue
            transformed.append((row, outcome.payload))

        duplicates = self.deduplicator.find_duplicates(
            entity_type, [(row.source_id, payload) for row, payload in transformed]
        )
        for row, payload in transformed:
            row.payload = payload
            row.canonical_id = canonical_id(run.clinic_id, run.source_vendor, entity_type, row.source_id)
            row.checksum = payload_checksum(payload)
            if row.source_id in duplicates:
                self.staging.set_status(
                    session, row, StagingStatus.REJECTED, f"duplicate of {duplicates[row.source_id]}"
                )
            else:
                self.staging.set_status(session, row, StagingStatus.TRANSFORMED)

        logger.info(
            f"Run {run.id}: transformed {len(transformed) - len(duplicates)} {entity_type} record(s), "
            f"{failures} failed, {len(duplicates)} duplicate(s)"
        )
        return failures, len(duplicates)

    def _validate(self, run: MigrationRun, actor_id: Optional[str]) -> ValidateResult:
        checkable = [StagingStatus.TRANSFORMED, StagingStatus.VALIDATED]
        with self.database.transaction() as session:
            records: Dict[str, List[StagedItem]] = {}
            for row in self.staging.list_rows(session, run.id, statuses=checkable):
                records.setdefault(row.entity_type, []).append(
                    StagedItem(source_id=row.source_id, payload=row.payload or {}, canonical_id=row.canonical_id)
                )
            known_refs = self.staging.source_ids(session, run.id, checkable + [StagingStatus.PROMOTED])
            for entity_type, ids in live_source_ids(session, run.clinic_id, run.source_vendor).items():
                known_refs.setdefault(entity_type, set()).update(ids)
            untransformed = self.ledger.summary(session, run.id)

        outcome = self.validator.validate(records, known_refs)
        report = outcome["report"]
        for entity_type, summary in report.items():
            summary["untransformed"] = untransformed.get(entity_type, {}).get(StagingStatus.PENDING.value, 0)

        with self.database.transaction() as session:
            for entity_type, items in records.items():
                errors = outcome["record_errors"].get(entity_type, {})
                for row in self.staging.list_rows(session, run.id, entity_type, checkable):
                    if row.source_id in errors:
                        self.staging.set_status(session, row, StagingStatus.TRANSFORMED, errors[row.source_id])
                    else:
                        self.staging.set_status(session, row, StagingStatus.VALIDATED)

        packet = self.validator.build_sampling_packet(records, seed=run.id)
        report_ref = self.artifact_store.put_json(ArtifactKind.REPORT, {
            "runId": run.id,
            "passed": outcome["passed"],
            "entities": report,
            "issueCounts": outcome["issue_counts"],
        })
        packet_ref = self.artifact_store.put_json(ArtifactKind.SAMPLING_PACKET, packet)
        with self.database.transaction() as session:
            self.artifacts.record(session, run.id, "validation_report.json", report_ref)
            self.artifacts.record(session, run.id, "sampling_packet.json", packet_ref)

        summary_packet = {k: v for k, v in packet.items() if k != "sample"}
        summary_packet["locator"] = packet_ref.locator
        return ValidateResult(
            passed=outcome["passed"],
            report=report,
            sampling_packet=summary_packet,
            artifacts=["validation_report.json", "sampling_packet.json"],
        )

    def _promote(self, run: MigrationRun, actor_id: Optional[str]) -> PromoteResult:
        result = self.promoter.promote(self.database, run, cancel_check=lambda: self._raise_if_cancelled(run.id))
        result.reconciliation = self._reconcile(run)
        return result

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    def approve_mapping(
        self,
        run_id: str,
        actor_id: Optional[str],
        clinic_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Approve the run's current mapping spec version.

        Not idempotent: a second approval of the same version is rejected,
        re-approval needs a new mapping version.

        Returns:
            {"approvedAt": iso timestamp, "version": int}

        Raises:
            PreconditionError: Not in MappingReview, no mapping, or already approved
        """
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            current = RunStatus(row.status)
            if current != RunStatus.MAPPING_REVIEW:
                raise PreconditionError.expected_status("approve mapping", current, [RunStatus.MAPPING_REVIEW])
            version = row.mapping_spec_version
            if version <= 0:
                raise PreconditionError("Cannot approve mapping: run has no mapping spec", {"version": version})

            approved_at = datetime.utcnow()
            if row.mapping_approved_at is not None or not self.specs.approve(
                session, run_id, version, actor_id, approved_at
            ):
                raise PreconditionError(
                    f"Mapping version {version} is already approved; propose a new version to re-approve",
                    {"version": version},
                )
            row.mapping_approved_at = approved_at
            row.mapping_approved_by = actor_id
            self.audit.append(
                session, run_id, "mapping_approved", phase=Phase.GENERATE_MAPPING.value,
                actor_id=actor_id, metadata={"version": version},
            )

        logger.info(f"Run {run_id}: mapping v{version} approved by {actor_id}")
        return {"approvedAt": approved_at.isoformat(), "version": version}

    def propose_mapping(
        self,
        run_id: str,
        entity_mappings: Dict[str, Any],
        actor_id: Optional[str],
        clinic_id: Optional[str] = None
    ) -> MappingSpec:
        """
        Store an operator-edited mapping as a new version, clearing approval.

        Args:
            entity_mappings: canonical entity type -> EntityMapping or its dict form
        """
        mappings = {
            key: value if isinstance(value, EntityMapping) else EntityMapping.from_dict(value)
            for key, value in (entity_mappings or {}).items()
        }
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            current = RunStatus(row.status)
            if current != RunStatus.MAPPING_REVIEW or row.active_phase is not None:
                raise PreconditionError.expected_status("propose mapping", current, [RunStatus.MAPPING_REVIEW])
            spec = self.specs.create(session, run_id, row.source_vendor, mappings, created_by=actor_id)
            self._set_mapping_version(session, run_id, spec.version)
            self.audit.append(
                session, run_id, "mapping_proposed", phase=Phase.GENERATE_MAPPING.value,
                actor_id=actor_id, metadata={"version": spec.version},
            )

        logger.info(f"Run {run_id}: mapping v{spec.version} proposed by {actor_id}")
        return spec

    def pause(self, run_id: str, actor_id: Optional[str], clinic_id: Optional[str] = None) -> MigrationRun:
        """
        Pause a run.

        An idle run moves to Paused at once. A run with a phase in flight
        gets its cancellation flag set and pauses at the next page or batch
        boundary.

        Raises:
            PreconditionError: Run is terminal or already paused
        """
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            current = RunStatus(row.status)
            if current.is_terminal or current == RunStatus.PAUSED:
                raise PreconditionError.expected_status(
                    "pause", current,
                    [s for s in RunStatus if not s.is_terminal and s != RunStatus.PAUSED],
                )
            in_flight = row.active_phase
            if in_flight is not None:
                row.cancel_requested = True
            else:
                row.paused_from = current.value
                row.status = RunStatus.PAUSED.value
            self.audit.append(
                session, run_id, "pause", phase=in_flight or row.current_phase,
                actor_id=actor_id, metadata={"from": current.value, "in_flight": in_flight},
            )
            session.flush()
            run = self.runs.to_model(row)

        logger.info(f"Run {run_id}: pause requested by {actor_id} ({'deferred' if in_flight else 'immediate'})")
        return run

    def resume(self, run_id: str, actor_id: Optional[str], clinic_id: Optional[str] = None) -> MigrationRun:
        """
        Resume a paused run to the status it was paused from.

        In-progress statuses go back to the status their phase starts from,
        so the interrupted phase can be requested again.
        """
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            current = RunStatus(row.status)
            if current != RunStatus.PAUSED or row.active_phase is not None:
                raise PreconditionError.expected_status("resume", current, [RunStatus.PAUSED])
            if row.paused_from is None:
                raise PreconditionError(f"Run {run_id} has no status to resume to")
            paused_from = RunStatus(row.paused_from)
            target = RESUME_TARGETS.get(paused_from, paused_from)
            row.status = target.value
            row.paused_from = None
            row.error_message = None
            self.audit.append(
                session, run_id, "resume", phase=row.current_phase,
                actor_id=actor_id, metadata={"to": target.value},
            )
            session.flush()
            run = self.runs.to_model(row)

        logger.info(f"Run {run_id}: resumed to {target.value} by {actor_id}")
        return run

    def reject_record(
        self,
        run_id: str,
        entity_type: str,
        source_id: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        clinic_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Explicitly reject a staged record that has not been promoted.

        Raises:
            NotFoundError: No such staged record
            PreconditionError: Record already promoted or rejected, or run finished
        """
        with self.database.transaction() as session:
            run_row = self.runs.get_row(session, run_id, clinic_id)
            if RunStatus(run_row.status).is_terminal:
                raise PreconditionError(f"Cannot reject records of a {run_row.status} run")
            row = self.staging.get(session, run_id, entity_type, source_id)
            if row is None:
                raise NotFoundError(
                    f"Staged record not found: {entity_type} {source_id}",
                    {"entity_type": entity_type, "source_id": source_id},
                )
            if row.status == StagingStatus.REJECTED.value:
                raise PreconditionError(f"{entity_type} {source_id} is already rejected")
            previous = row.status
            self.staging.set_status(session, row, StagingStatus.REJECTED, reason or "rejected by operator")
            self.audit.append(
                session, run_id, "reject", phase=run_row.current_phase, actor_id=actor_id,
                metadata={"entityType": entity_type, "sourceId": source_id, "from": previous, "reason": reason},
            )
            record = self.staging.to_model(row).to_dict()

        logger.info(f"Run {run_id}: {entity_type} {source_id} rejected by {actor_id}")
        return record

    def cleanup_run(self, run_id: str, actor_id: Optional[str], clinic_id: Optional[str] = None) -> Dict[str, int]:
        """
        Delete a run and everything it owns. Live canonical records stay.

        Returns:
            Rows deleted per table
        """
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            if row.active_phase is not None:
                raise PreconditionError(f"Cannot clean up run {run_id} while {row.active_phase} is running")
            deleted = delete_run_records(session, run_id)

        logger.info(f"Run {run_id} cleaned up by {actor_id}: {deleted}")
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: str, clinic_id: Optional[str] = None) -> MigrationRun:
        with self.database.transaction() as session:
            return self.runs.to_model(self.runs.get_row(session, run_id, clinic_id))

    def list_runs(self, clinic_id: Optional[str] = None) -> List[MigrationRun]:
        with self.database.transaction() as session:
            return [self.runs.to_model(row) for row in self.runs.list_rows(session, clinic_id)]

    def get_mapping(self, run_id: str, version: Optional[int] = None, clinic_id: Optional[str] = None) -> MappingSpec:
        """Get a mapping version (the run's current one by default)."""
        with self.database.transaction() as session:
            row = self.runs.get_row(session, run_id, clinic_id)
            version = version or row.mapping_spec_version
            if version <= 0:
                raise NotFoundError(f"Run {run_id} has no mapping spec")
            return self.specs.get(session, run_id, version)

    def get_report(self, run_id: str, clinic_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get the run summary, validation report, audit trail and ledger summary.

        Returns:
            Report dictionary
        """
        run = self.get_run(run_id, clinic_id)
        progress = RunProgress.from_dict(run.progress)
        validate_result = progress.get(Phase.VALIDATE)

        with self.database.transaction() as session:
            audit_trail = self.audit.list_events(session, run_id)
            ledger = self.ledger.summary(session, run_id)
            artifacts = self.artifacts.list_artifacts(session, run_id)

        return {
            "run": run.to_dict(),
            "validationReport": validate_result.report if validate_result else None,
            "auditTrail": audit_trail,
            "ledger": ledger,
            "reconciliation": self._reconcile(run),
            "artifacts": artifacts,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reconcile(self, run: MigrationRun) -> Dict[str, Any]:
        discover_result = RunProgress.from_dict(run.progress).get(Phase.DISCOVER)
        source_counts = dict(discover_result.extracted) if discover_result else {}
        with self.database.transaction() as session:
            ledger = self.ledger.summary(session, run.id)
            live = {e: live_record_count(session, run.id, e) for e in set(ledger) | set(source_counts)}
        return self.reconciler.reconcile(source_counts, ledger, live)

    def _set_mapping_version(self, session: Session, run_id: str, version: int) -> None:
        row = self.runs.get_row(session, run_id)
        row.mapping_spec_version = version
        row.mapping_approved_at = None
        row.mapping_approved_by = None

    def _cancel_requested(self, run_id: str) -> bool:
        with self.database.transaction() as session:
            return self.runs.is_cancel_requested(session, run_id)

    def _raise_if_cancelled(self, run_id: str) -> None:
        if self._cancel_requested(run_id):
            raise ExtractionCancelled(f"Run {run_id} paused at batch boundary")

    @staticmethod
    def _ordered(entity_types: List[str]) -> List[str]:
        known = [e for e in PROMOTION_ORDER if e in entity_types]
        return known + sorted(e for e in entity_types if e not in PROMOTION_ORDER)
