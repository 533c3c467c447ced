"""Persistence helpers for runs, staging, ledger, mapping specs and audit.

Every method takes the caller's session so that staging writes, ledger
deltas and audit events commit together.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from ..errors import NotFoundError, PreconditionError
from ..models.canonical import payload_checksum
from ..models.mapping import EntityMapping, MappingSpec, validate_mapping_spec
from ..models.migration import IngestStrategy, MigrationRun, RunStatus
from ..models.record import RawRecord, StagingRecord, StagingStatus
from .db import (
    ArtifactRow,
    AuditEventRow,
    CanonicalRecordRow,
    LedgerRow,
    MappingSpecRow,
    RunRow,
    StagingRow,
)

logger = logging.getLogger(__name__)


class RunRepository:
    """Loads and mutates migration_runs rows."""

    def get_row(self, session: Session, run_id: str, clinic_id: Optional[str] = None) -> RunRow:
        """
        Load a run row, scoped to a clinic when one is given.

        Raises:
            NotFoundError: Run missing or owned by another clinic
        """
        row = session.get(RunRow, run_id)
        if row is None or (clinic_id is not None and row.clinic_id != clinic_id):
            raise NotFoundError(f"Migration run not found: {run_id}", {"run_id": run_id})
        return row

    def list_rows(self, session: Session, clinic_id: Optional[str] = None) -> List[RunRow]:
        stmt = select(RunRow).order_by(RunRow.created_at.desc())
        if clinic_id is not None:
            stmt = stmt.where(RunRow.clinic_id == clinic_id)
        return list(session.scalars(stmt))

    def claim_phase(
        self,
        session: Session,
        run_id: str,
        phase: str,
        allowed: Iterable[RunStatus],
        in_progress: Optional[RunStatus] = None
    ) -> bool:
        """
        Check-and-set the run's active phase.

        Succeeds only when no phase is in flight and the status is one of
        the allowed statuses.

        Returns:
            True when this caller now owns the run
        """
        values: Dict[str, Any] = {
            "active_phase": phase,
            "current_phase": phase,
            "cancel_requested": False,
            "updated_at": datetime.utcnow(),
        }
        if in_progress is not None:
            values["status"] = in_progress.value
        result = session.execute(
            update(RunRow)
            .where(
                RunRow.id == run_id,
                RunRow.active_phase.is_(None),
                RunRow.status.in_([s.value for s in allowed]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def release_phase(self, session: Session, run_id: str) -> None:
        session.execute(
            update(RunRow)
            .where(RunRow.id == run_id)
            .values(active_phase=None, cancel_requested=False)
            .execution_options(synchronize_session=False)
        )

    def is_cancel_requested(self, session: Session, run_id: str) -> bool:
        value = session.scalar(select(RunRow.cancel_requested).where(RunRow.id == run_id))
        return bool(value)

    @staticmethod
    def to_model(row: RunRow) -> MigrationRun:
        """Convert a row into the MigrationRun dataclass."""
        return MigrationRun(
            id=row.id,
            clinic_id=row.clinic_id,
            source_vendor=row.source_vendor,
            status=RunStatus(row.status),
            ingest_strategy=IngestStrategy(row.ingest_strategy) if row.ingest_strategy else None,
            current_phase=row.current_phase,
            source_profile=dict(row.source_profile or {}),
            mapping_spec_version=row.mapping_spec_version,
            mapping_approved_at=row.mapping_approved_at,
            mapping_approved_by=row.mapping_approved_by,
            progress=dict(row.progress or {}),
            paused_from=RunStatus(row.paused_from) if row.paused_from else None,
            cancel_requested=row.cancel_requested,
            active_phase=row.active_phase,
            started_by=row.started_by,
            started_at=row.started_at,
            completed_at=row.completed_at,
            error_message=row.error_message,
            created_at=row.created_at,
        )


class Ledger:
    """Per-(run, entity type, status) record counts."""

    def apply(
        self,
        session: Session,
        run_id: str,
        entity_type: str,
        old_status: Optional[StagingStatus],
        new_status: Optional[StagingStatus]
    ) -> None:
        """Move one record between statuses (None means created / deleted)."""
        if old_status == new_status:
            return
        if old_status is not None:
            self._adjust(session, run_id, entity_type, old_status, -1)
        if new_status is not None:
            self._adjust(session, run_id, entity_type, new_status, 1)

    def _adjust(
        self,
        session: Session,
        run_id: str,
        entity_type: str,
        status: StagingStatus,
        delta: int
    ) -> None:
        result = session.execute(
            update(LedgerRow)
            .where(
                LedgerRow.run_id == run_id,
                LedgerRow.entity_type == entity_type,
                LedgerRow.status == status.value,
            )
            .values(count=LedgerRow.count + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if delta < 0:
                raise RuntimeError(f"Ledger underflow for {entity_type}/{status.value} in run {run_id}")
            session.add(LedgerRow(run_id=run_id, entity_type=entity_type, status=status.value, count=delta))
            session.flush()

    def summary(self, session: Session, run_id: str) -> Dict[str, Dict[str, int]]:
        """Get {entity_type: {status: count}} without zero entries."""
        result: Dict[str, Dict[str, int]] = {}
        rows = session.scalars(
            select(LedgerRow).where(LedgerRow.run_id == run_id).order_by(LedgerRow.entity_type, LedgerRow.status)
        )
        for row in rows:
            if row.count:
                result.setdefault(row.entity_type, {})[row.status] = row.count
        return result


class StagingStore:
    """Canonical staging records keyed by (run, entity type, source id)."""

    def __init__(self, ledger: Optional[Ledger] = None):
        self.ledger = ledger or Ledger()

    def get(self, session: Session, run_id: str, entity_type: str, source_id: str) -> Optional[StagingRow]:
        return session.scalar(
            select(StagingRow).where(
                StagingRow.run_id == run_id,
                StagingRow.entity_type == entity_type,
                StagingRow.source_id == source_id,
            )
        )

    def upsert_raw(
        self,
        session: Session,
        run_id: str,
        record: RawRecord,
        source_entity: Optional[str] = None
    ) -> StagingRow:
        """
        Insert or refresh a staged record from a raw extract.

        A changed raw payload sends transformed/validated rows back to
        pending. Promoted and rejected rows keep their status.

        Returns:
            The staging row
        """
        checksum = payload_checksum(record.data)
        row = self.get(session, run_id, record.entity_type, record.source_id)

        if row is None:
            row = StagingRow(
                run_id=run_id,
                entity_type=record.entity_type,
                source_id=record.source_id,
                source_entity=source_entity,
                status=StagingStatus.PENDING.value,
                raw_data=record.data,
                raw_checksum=checksum,
                extracted_at=record.extracted_at,
            )
            session.add(row)
            session.flush()
            self.ledger.apply(session, run_id, record.entity_type, None, StagingStatus.PENDING)
            return row

        row.extracted_at = record.extracted_at
        if row.raw_checksum == checksum:
            return row

        row.raw_data = record.data
        row.raw_checksum = checksum
        row.source_entity = source_entity or row.source_entity
        current = StagingStatus(row.status)
        if current in (StagingStatus.TRANSFORMED, StagingStatus.VALIDATED):
            self.set_status(session, row, StagingStatus.PENDING)
        return row

    def set_status(
        self,
        session: Session,
        row: StagingRow,
        new_status: StagingStatus,
        error_detail: Optional[str] = None
    ) -> None:
        """
        Change a row's status and move its ledger count.

        Raises:
            PreconditionError: The row is already promoted
        """
        old_status = StagingStatus(row.status)
        if old_status == StagingStatus.PROMOTED and new_status != StagingStatus.PROMOTED:
            raise PreconditionError(
                f"{row.entity_type} {row.source_id} is already promoted",
                {"entity_type": row.entity_type, "source_id": row.source_id},
            )
        row.status = new_status.value
        row.error_detail = error_detail
        self.ledger.apply(session, row.run_id, row.entity_type, old_status, new_status)

    def compare_and_set(
        self,
        session: Session,
        row: StagingRow,
        expected: StagingStatus,
        new_status: StagingStatus
    ) -> bool:
        """
        Move a row from `expected` to `new_status` only if it is still there.

        Returns:
            False when another writer got there first
        """
        result = session.execute(
            update(StagingRow)
            .where(StagingRow.id == row.id, StagingRow.status == expected.value)
            .values(status=new_status.value, error_detail=None, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.ledger.apply(session, row.run_id, row.entity_type, expected, new_status)
        row.status = new_status.value
        row.error_detail = None
        return True

    def list_rows(
        self,
        session: Session,
        run_id: str,
        entity_type: Optional[str] = None,
        statuses: Optional[Iterable[StagingStatus]] = None,
        limit: Optional[int] = None
    ) -> List[StagingRow]:
        """List staging rows ordered by entity type and source id."""
        stmt = select(StagingRow).where(StagingRow.run_id == run_id)
        if entity_type is not None:
            stmt = stmt.where(StagingRow.entity_type == entity_type)
        if statuses is not None:
            stmt = stmt.where(StagingRow.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(StagingRow.entity_type, StagingRow.source_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt))

    def source_ids(
        self,
        session: Session,
        run_id: str,
        statuses: Iterable[StagingStatus]
    ) -> Dict[str, Set[str]]:
        """Get {entity_type: source ids} for rows in the given statuses."""
        result: Dict[str, Set[str]] = {}
        rows = session.execute(
            select(StagingRow.entity_type, StagingRow.source_id).where(
                StagingRow.run_id == run_id,
                StagingRow.status.in_([s.value for s in statuses]),
            )
        )
        for entity_type, source_id in rows:
            result.setdefault(entity_type, set()).add(source_id)
        return result

    def entity_types(self, session: Session, run_id: str) -> List[str]:
        return list(session.scalars(
            select(StagingRow.entity_type).where(StagingRow.run_id == run_id).distinct()
        ))

    def counts(self, session: Session, run_id: str) -> Dict[str, Dict[str, int]]:
        """Count staging rows directly (used to reconcile against the ledger)."""
        result: Dict[str, Dict[str, int]] = {}
        rows = session.execute(
            select(StagingRow.entity_type, StagingRow.status, func.count())
            .where(StagingRow.run_id == run_id)
            .group_by(StagingRow.entity_type, StagingRow.status)
        )
        for entity_type, status, count in rows:
            result.setdefault(entity_type, {})[status] = count
        return result

    @staticmethod
    def to_model(row: StagingRow) -> StagingRecord:
        return StagingRecord(
            run_id=row.run_id,
            entity_type=row.entity_type,
            source_id=row.source_id,
            status=StagingStatus(row.status),
            raw_data=row.raw_data or {},
            payload=row.payload,
            canonical_id=row.canonical_id,
            checksum=row.checksum,
            error_detail=row.error_detail,
            source_entity=row.source_entity,
            extracted_at=row.extracted_at,
            updated_at=row.updated_at,
        )


class MappingSpecStore:
    """Versioned, immutable mapping specs with an approval gate."""

    def create(
        self,
        session: Session,
        run_id: str,
        source_vendor: str,
        entity_mappings: Dict[str, EntityMapping],
        created_by: Optional[str] = None
    ) -> MappingSpec:
        """
        Store a new mapping version (previous max + 1).

        Raises:
            PreconditionError: The mapping content is invalid
        """
        current = session.scalar(
            select(func.max(MappingSpecRow.version)).where(MappingSpecRow.run_id == run_id)
        ) or 0
        spec = MappingSpec(
            run_id=run_id,
            version=current + 1,
            source_vendor=source_vendor,
            entity_mappings=entity_mappings,
            created_by=created_by,
        )
        errors = validate_mapping_spec(spec)
        if errors:
            raise PreconditionError(f"Invalid mapping spec: {'; '.join(errors)}", {"errors": errors})

        session.add(MappingSpecRow(
            run_id=run_id,
            version=spec.version,
            source_vendor=source_vendor,
            field_mappings=spec.mappings_to_dict(),
            created_by=created_by,
            created_at=spec.created_at,
        ))
        session.flush()
        return spec

    def get(self, session: Session, run_id: str, version: int) -> MappingSpec:
        row = session.scalar(
            select(MappingSpecRow).where(MappingSpecRow.run_id == run_id, MappingSpecRow.version == version)
        )
        if row is None:
            raise NotFoundError(f"Mapping spec v{version} not found for run {run_id}")
        return self.to_model(row)

    def approve(
        self,
        session: Session,
        run_id: str,
        version: int,
        actor_id: Optional[str],
        approved_at: datetime
    ) -> bool:
        """Check-and-set approval; False when the version is already approved."""
        result = session.execute(
            update(MappingSpecRow)
            .where(
                MappingSpecRow.run_id == run_id,
                MappingSpecRow.version == version,
                MappingSpecRow.approved_at.is_(None),
            )
            .values(approved_at=approved_at, approved_by=actor_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_versions(self, session: Session, run_id: str) -> List[MappingSpec]:
        rows = session.scalars(
            select(MappingSpecRow).where(MappingSpecRow.run_id == run_id).order_by(MappingSpecRow.version)
        )
        return [self.to_model(row) for row in rows]

    @staticmethod
    def to_model(row: MappingSpecRow) -> MappingSpec:
        return MappingSpec(
            run_id=row.run_id,
            version=row.version,
            source_vendor=row.source_vendor,
            entity_mappings=MappingSpec.mappings_from_dict(row.field_mappings or {}),
            created_at=row.created_at,
            created_by=row.created_by,
            approved_at=row.approved_at,
            approved_by=row.approved_by,
        )


class AuditLog:
    """Append-only audit trail."""

    def append(
        self,
        session: Session,
        run_id: str,
        action: str,
        phase: Optional[str] = None,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEventRow:
        """Append an event; actor_id is None for system-triggered actions."""
        row = AuditEventRow(
            run_id=run_id,
            phase=phase,
            action=action,
            actor_id=actor_id,
            event_metadata=metadata or {},
            created_at=datetime.utcnow(),
        )
        session.add(row)
        session.flush()
        logger.debug(f"Audit {run_id}: {action} phase={phase} actor={actor_id}")
        return row

    def list_events(
        self,
        session: Session,
        run_id: str,
        action: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        stmt = select(AuditEventRow).where(AuditEventRow.run_id == run_id)
        if action is not None:
            stmt = stmt.where(AuditEventRow.action == action)
        return [self.to_dict(row) for row in session.scalars(stmt.order_by(AuditEventRow.id))]

    @staticmethod
    def to_dict(row: AuditEventRow) -> Dict[str, Any]:
        return {
            "id": row.id,
            "run_id": row.run_id,
            "phase": row.phase,
            "action": row.action,
            "actor_id": row.actor_id,
            "metadata": row.event_metadata,
            "created_at": row.created_at.isoformat(),
        }


class ArtifactIndex:
    """Per-run index of stored artifacts, keyed by a stable name."""

    def record(self, session: Session, run_id: str, key: str, ref: Any) -> ArtifactRow:
        """Insert or repoint the artifact stored under `key` for a run."""
        row = session.scalar(select(ArtifactRow).where(ArtifactRow.run_id == run_id, ArtifactRow.key == key))
        if row is None:
            row = ArtifactRow(run_id=run_id, key=key)
            session.add(row)
        row.kind = ref.kind.value
        row.locator = ref.locator
        row.checksum = ref.checksum
        row.size = ref.size
        row.created_at = datetime.utcnow()
        session.flush()
        return row

    def list_artifacts(self, session: Session, run_id: str) -> List[Dict[str, Any]]:
        rows = session.scalars(select(ArtifactRow).where(ArtifactRow.run_id == run_id).order_by(ArtifactRow.key))
        return [
            {
                "key": row.key,
                "kind": row.kind,
                "locator": row.locator,
                "checksum": row.checksum,
                "size": row.size,
                "created_at": row.created_at.isoformat(),
            }
            for row in rows
        ]


def delete_run_records(session: Session, run_id: str) -> Dict[str, int]:
    """Delete a run and every row it owns. Live canonical records are kept."""
    deleted = {}
    for name, table in (
        ("staging", StagingRow),
        ("ledger", LedgerRow),
        ("mapping_specs", MappingSpecRow),
        ("audit_events", AuditEventRow),
        ("artifacts", ArtifactRow),
    ):
        result = session.execute(
            delete(table).where(table.run_id == run_id).execution_options(synchronize_session=False)
        )
        deleted[name] = result.rowcount
    session.execute(delete(RunRow).where(RunRow.id == run_id).execution_options(synchronize_session=False))
    return deleted


def live_record_count(session: Session, run_id: str, entity_type: Optional[str] = None) -> int:
    stmt = select(func.count()).select_from(CanonicalRecordRow).where(CanonicalRecordRow.run_id == run_id)
    if entity_type is not None:
        stmt = stmt.where(CanonicalRecordRow.entity_type == entity_type)
    return session.scalar(stmt) or 0


def live_source_ids(session: Session, clinic_id: str, source_vendor: str) -> Dict[str, Set[str]]:
    """Get {entity_type: source ids} already live for a clinic and vendor."""
    result: Dict[str, Set[str]] = {}
    rows = session.execute(
        select(CanonicalRecordRow.entity_type, CanonicalRecordRow.source_id).where(
            CanonicalRecordRow.clinic_id == clinic_id,
            CanonicalRecordRow.source_vendor == source_vendor,
        )
    )
    for entity_type, source_id in rows:
        result.setdefault(entity_type, set()).add(source_id)
    return result
