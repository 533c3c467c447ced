"""Persistence for migration state and artifacts."""

from .db import Base, Database
from .artifacts import ArtifactKind, ArtifactRef, ArtifactStore, LocalArtifactStore
from .repositories import (
    ArtifactIndex,
    AuditLog,
    Ledger,
    MappingSpecStore,
    RunRepository,
    StagingStore,
)

__all__ = [
    "Base",
    "Database",
    "ArtifactKind",
    "ArtifactRef",
    "ArtifactStore",
    "LocalArtifactStore",
    "ArtifactIndex",
    "AuditLog",
    "Ledger",
    "MappingSpecStore",
    "RunRepository",
    "StagingStore",
]
