"""
Clinic Data Migration

A resumable, auditable migration orchestrator for moving a clinic's operational
data (patients, appointments, charts, invoices, consents, photos, documents)
from an external practice-management platform into the canonical store.

Supports:
- Ingestion through vendor APIs, browser automation agents or uploaded files
- Provenance-tagged staging with per-status ledger counts
- Versioned, human-approved field mappings
- Transformation, deduplication and sampled validation
- Dependency-ordered, batched promotion into live tables
- Pause / resume and an append-only audit trail
"""

__version__ = "0.1.0"
