"""Reconciliation of source counts against staged and promoted counts."""

from typing import Any, Dict, Optional

COMPLETE_THRESHOLD = 1.0
PARTIAL_THRESHOLD = 0.9


class Reconciler:
    """Builds the per-entity reconciliation report shown after promotion."""

    def reconcile(
        self,
        source_counts: Dict[str, int],
        ledger: Dict[str, Dict[str, int]],
        live_counts: Optional[Dict[str, int]] = None
    ) -> Dict[str, Any]:
        """
        Compare what the source reported with what reached each stage.

        Args:
            source_counts: entity type -> records extracted from the source
            ledger: entity type -> status -> count
            live_counts: entity type -> rows in canonical_records for the run

        Returns:
            {"entities": {...}, "totals": {...}, "completeness": float, "status": str}
        """
        live_counts = live_counts or {}
        entities: Dict[str, Dict[str, Any]] = {}
        totals = {"sourceCount": 0, "stagedCount": 0, "promotedCount": 0, "rejectedCount": 0}

        for entity_type in sorted(set(source_counts) | set(ledger)):
            statuses = ledger.get(entity_type, {})
            staged = sum(statuses.values())
            source = source_counts.get(entity_type, staged)
            promoted = live_counts.get(entity_type, statuses.get("promoted", 0))
            rejected = statuses.get("rejected", 0)
            expected = source - rejected
            entities[entity_type] = {
                "sourceCount": source,
                "stagedCount": staged,
                "promotedCount": promoted,
                "rejectedCount": rejected,
                "matchRate": round(promoted / expected, 4) if expected > 0 else 1.0,
            }
            totals["sourceCount"] += source
            totals["stagedCount"] += staged
            totals["promotedCount"] += promoted
            totals["rejectedCount"] += rejected

        expected_total = totals["sourceCount"] - totals["rejectedCount"]
        completeness = round(totals["promotedCount"] / expected_total, 4) if expected_total > 0 else 1.0
        if completeness >= COMPLETE_THRESHOLD:
            status = "complete"
        elif completeness >= PARTIAL_THRESHOLD:
            status = "partial"
        else:
            status = "failed"

        return {
            "entities": entities,
            "totals": totals,
            "completeness": completeness,
            "status": status,
        }
