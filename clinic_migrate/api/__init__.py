"""HTTP API over the migration orchestrator."""
