"""SQLAlchemy tables and session handling for migration state."""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


class RunRow(Base):
    """One row per migration run."""

    __tablename__ = "migration_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    clinic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source_vendor: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    ingest_strategy: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    current_phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    source_profile: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    mapping_spec_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mapping_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    mapping_approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    progress: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    paused_from: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active_phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    started_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class StagingRow(Base):
    """Provenance-tagged draft canonical record."""

    __tablename__ = "migration_staging_records"
    __table_args__ = (
        UniqueConstraint("run_id", "entity_type", "source_id", name="uq_staging_run_entity_source"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    raw_data: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    raw_checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    canonical_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extracted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class LedgerRow(Base):
    """Materialized count per (run, entity type, status)."""

    __tablename__ = "migration_record_ledger"
    __table_args__ = (
        UniqueConstraint("run_id", "entity_type", "status", name="uq_ledger_run_entity_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class MappingSpecRow(Base):
    """Immutable mapping spec version."""

    __tablename__ = "migration_mapping_specs"
    __table_args__ = (
        UniqueConstraint("run_id", "version", name="uq_mapping_spec_run_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    source_vendor: Mapped[str] = mapped_column(String(64), nullable=False)
    field_mappings: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class AuditEventRow(Base):
    """Append-only audit trail entry."""

    __tablename__ = "migration_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    phase: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_metadata: Mapped[Any] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class ArtifactRow(Base):
    """Blob stored for a run (raw extract, report, sampling packet)."""

    __tablename__ = "migration_artifacts"
    __table_args__ = (
        UniqueConstraint("run_id", "key", name="uq_artifact_run_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("migration_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    locator: Mapped[str] = mapped_column(String(512), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


class CanonicalRecordRow(Base):
    """Live canonical record written by promotion. Survives run cleanup."""

    __tablename__ = "canonical_records"
    __table_args__ = (
        UniqueConstraint(
            "clinic_id", "entity_type", "run_id", "source_id", name="uq_canonical_clinic_entity_run_source"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    clinic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    source_vendor: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    canonical_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)
    links: Mapped[Any] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class Database:
    """Engine plus a transactional session factory."""

    def __init__(self, url: str, echo: bool = False):
        """
        Initialize the database.

        Args:
            url: SQLAlchemy database URL
            echo: Log emitted SQL
        """
        self.url = url
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            database = make_url(url).database
            if not database or database == ":memory:":
                kwargs["poolclass"] = StaticPool
            else:
                Path(database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        """Create any missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info(f"Database ready at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Open a session inside a transaction.

        Commits when the block exits normally and rolls back on any exception.

        Yields:
            Session bound to the open transaction
        """
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
