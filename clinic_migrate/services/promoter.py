"""Promotion of validated staging records into the live canonical store."""

import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.canonical import CANONICAL_ENTITIES, PROMOTION_ORDER
from ..models.migration import MigrationRun
from ..models.progress import PromoteResult
from ..models.record import StagingStatus
from ..storage.db import CanonicalRecordRow, Database, StagingRow
from ..storage.repositories import StagingStore

logger = logging.getLogger(__name__)


class Promoter:
    """
    Writes validated records to canonical_records.

    Supports:
    - Parent-before-child ordering (patients first)
    - Atomic batches: a batch commits entirely or not at all
    - Exactly-once promotion via a validated -> promoted compare-and-set
    - Link resolution from patientSourceId-style fields to live ids
    - Pausing between batches
    """

    def __init__(self, staging: StagingStore, batch_size: int = 100):
        self.staging = staging
        self.batch_size = max(1, batch_size)

    def promote(
        self,
        database: Database,
        run: MigrationRun,
        cancel_check: Optional[Callable[[], None]] = None
    ) -> PromoteResult:
        """
        Promote every validated record of a run.

        Args:
            database: Database to open one transaction per batch on
            run: Run being promoted
            cancel_check: Called before each batch; raises to stop

        Returns:
            PromoteResult with per-entity counts
        """
        result = PromoteResult()

        with database.transaction() as session:
            staged_types = self.staging.entity_types(session, run.id)
        order = [e for e in PROMOTION_ORDER if e in staged_types]
        order += sorted(e for e in staged_types if e not in PROMOTION_ORDER)

        for entity_type in order:
            while True:
                if cancel_check is not None:
                    cancel_check()
                with database.transaction() as session:
                    rows = self.staging.list_rows(
                        session, run.id, entity_type, [StagingStatus.VALIDATED], limit=self.batch_size
                    )
                    if not rows:
                        break
                    promoted, skipped = self._promote_batch(session, run, entity_type, rows)
                result.batches += 1
                result.promoted[entity_type] = result.promoted.get(entity_type, 0) + promoted
                if skipped:
                    result.skipped[entity_type] = result.skipped.get(entity_type, 0) + skipped
                logger.info(f"Promoted batch of {promoted} {entity_type} record(s) for run {run.id}")

        logger.info(f"Promotion finished for run {run.id}: {result.total_promoted} record(s)")
        return result

    def _promote_batch(
        self,
        session: Session,
        run: MigrationRun,
        entity_type: str,
        rows: List[StagingRow]
    ) -> tuple:
        promoted = 0
        skipped = 0
        for row in rows:
            if not self.staging.compare_and_set(session, row, StagingStatus.VALIDATED, StagingStatus.PROMOTED):
                skipped += 1
                continue
            session.add(CanonicalRecordRow(
                clinic_id=run.clinic_id,
                entity_type=entity_type,
                run_id=run.id,
                source_vendor=run.source_vendor,
                source_id=row.source_id,
                canonical_id=row.canonical_id,
                payload=row.payload,
                links=self.resolve_links(session, run, entity_type, row.payload or {}),
            ))
            promoted += 1
        session.flush()
        return promoted, skipped

    def resolve_links(
        self,
        session: Session,
        run: MigrationRun,
        entity_type: str,
        payload: Dict
    ) -> Dict[str, Optional[str]]:
        """
        Resolve reference fields to live canonical record ids.

        Returns:
            {field: live id or None}
        """
        definition = CANONICAL_ENTITIES.get(entity_type)
        if definition is None:
            return {}
        links: Dict[str, Optional[str]] = {}
        for field_name, target in definition.references.items():
            value = payload.get(field_name)
            if value in (None, ""):
                continue
            links[field_name] = session.scalar(
                select(CanonicalRecordRow.id)
                .where(
                    CanonicalRecordRow.clinic_id == run.clinic_id,
                    CanonicalRecordRow.source_vendor == run.source_vendor,
                    CanonicalRecordRow.entity_type == target,
                    CanonicalRecordRow.source_id == str(value),
                )
                .order_by(CanonicalRecordRow.created_at.desc())
                .limit(1)
            )
        return links
