"""Validation service for staged canonical records."""

import random
import re
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Set

from dateutil import parser as date_parser

from ..models.canonical import CANONICAL_ENTITIES, EntityDefinition
from ..models.record import ValidationIssue, summarize_issues

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+\d{8,15}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_ISSUES_PER_ENTITY = 500


class IssueCode:
    MISSING_REQUIRED = "V001"
    INVALID_DATE = "V002"
    INVALID_EMAIL = "V003"
    INVALID_PHONE = "V004"
    ORPHANED_REFERENCE = "V005"
    MISSING_PATIENT_LINK = "V006"
    MISSING_PROVIDER = "V007"
    EMPTY_SECTIONS = "V008"
    INVALID_AMOUNT = "V009"
    MISSING_LINE_ITEMS = "V010"
    DUPLICATE_CANONICAL_ID = "V011"


@dataclass
class StagedItem:
    """What the validator needs from one staging row."""
    source_id: str
    payload: Dict[str, Any]
    canonical_id: Optional[str] = None


class RecordValidator:
    """
    Validator for staged records before promotion.

    Supports:
    - Required canonical field checks
    - Date, email, phone and amount format checks
    - Referential integrity against staged/promoted parents
    - Duplicate canonical id detection
    - A deterministic sampling packet for human review
    """

    def __init__(self, sample_size: int = 100):
        """
        Initialize the validator.

        Args:
            sample_size: Maximum records in the sampling packet
        """
        self.sample_size = sample_size

    def validate_record(
        self,
        entity_type: str,
        item: StagedItem,
        known_refs: Dict[str, Set[str]]
    ) -> List[ValidationIssue]:
        """
        Validate one staged payload.

        Args:
            entity_type: Canonical entity type
            item: Staged record
            known_refs: entity type -> source ids a reference may point at

        Returns:
            List of issues (errors and warnings)
        """
        definition = CANONICAL_ENTITIES.get(entity_type)
        if definition is None:
            return [self._issue(IssueCode.MISSING_REQUIRED, entity_type, item, "entityType",
                                f"Unknown canonical entity type '{entity_type}'")]

        issues = []
        payload = item.payload or {}

        issues.extend(self._check_required(definition, item, payload))
        issues.extend(self._check_formats(definition, item, payload))
        issues.extend(self._check_references(definition, item, payload, known_refs))

        if entity_type == "chart" and not payload.get("sections"):
            issues.append(self._issue(IssueCode.EMPTY_SECTIONS, entity_type, item, "sections",
                                      "Chart has no sections", severity="warning"))
        if entity_type == "invoice" and not payload.get("lineItems"):
            issues.append(self._issue(IssueCode.MISSING_LINE_ITEMS, entity_type, item, "lineItems",
                                      "Invoice has no line items", severity="warning"))
        return issues

    def validate(
        self,
        records: Dict[str, List[StagedItem]],
        known_refs: Dict[str, Set[str]]
    ) -> Dict[str, Any]:
        """
        Validate every staged record of a run.

        Args:
            records: entity type -> staged items
            known_refs: entity type -> resolvable source ids

        Returns:
            {"passed": bool, "report": {entity: {...}},
             "record_errors": {entity: {source_id: detail}}, "issue_counts": {code: n}}
        """
        report: Dict[str, Any] = {}
        record_errors: Dict[str, Dict[str, str]] = {}
        all_issues: List[ValidationIssue] = []

        for entity_type, items in records.items():
            issues_by_record: Dict[str, List[ValidationIssue]] = {}
            for item in items:
                issues_by_record[item.source_id] = self.validate_record(entity_type, item, known_refs)

            for source_id, issue in self._duplicate_canonical_ids(entity_type, items):
                issues_by_record[source_id].append(issue)

            errors = {
                sid: "; ".join(f"{i.code} {i.field}: {i.message}" for i in issues if i.is_error)
                for sid, issues in issues_by_record.items()
                if any(i.is_error for i in issues)
            }
            failed = sorted(errors)
            entity_issues = [i for issues in issues_by_record.values() for i in issues]
            all_issues.extend(entity_issues)
            record_errors[entity_type] = errors

            report[entity_type] = {
                "checked": len(items),
                "passed": len(items) - len(failed),
                "failed": len(failed),
                "warnings": sum(1 for i in entity_issues if not i.is_error),
                "issues": [i.to_dict() for i in entity_issues[:MAX_ISSUES_PER_ENTITY]],
                "truncated": len(entity_issues) > MAX_ISSUES_PER_ENTITY,
            }
            logger.info(f"Validated {len(items)} {entity_type} record(s): {len(failed)} failed")

        checked = sum(s["checked"] for s in report.values())
        passed = checked > 0 and all(s["failed"] == 0 for s in report.values())
        return {
            "passed": passed,
            "report": report,
            "record_errors": record_errors,
            "issue_counts": summarize_issues(all_issues),
        }

    def build_sampling_packet(self, records: Dict[str, List[StagedItem]], seed: str) -> Dict[str, Any]:
        """
        Draw a deterministic sample for human review.

        Args:
            records: entity type -> staged items
            seed: Seed (the run id) so re-validation draws the same sample

        Returns:
            Sampling packet
        """
        population = [
            (entity_type, item)
            for entity_type in sorted(records)
            for item in sorted(records[entity_type], key=lambda i: i.source_id)
        ]
        rng = random.Random(seed)
        sample = rng.sample(population, min(len(population), self.sample_size))

        presence: Dict[str, Dict[str, float]] = {}
        for entity_type in sorted({e for e, _ in sample}):
            definition = CANONICAL_ENTITIES.get(entity_type)
            picked = [item for e, item in sample if e == entity_type]
            if definition is None or not picked:
                continue
            presence[entity_type] = {
                field_name: round(
                    sum(1 for item in picked if not self._is_missing((item.payload or {}).get(field_name))) / len(picked),
                    4,
                )
                for field_name in definition.required
            }

        return {
            "totalRecords": len(population),
            "sampledCount": len(sample),
            "entityDistribution": {e: len(items) for e, items in sorted(records.items())},
            "requiredFieldPresence": presence,
            "sample": [
                {"entityType": e, "sourceId": item.source_id, "payload": item.payload}
                for e, item in sample
            ],
        }

    def _check_required(
        self,
        definition: EntityDefinition,
        item: StagedItem,
        payload: Dict[str, Any]
    ) -> List[ValidationIssue]:
        issues = []
        for field_name in definition.required:
            if not self._is_missing(payload.get(field_name)):
                continue
            if field_name == "patientSourceId":
                code, message = IssueCode.MISSING_PATIENT_LINK, "Record is not linked to a patient"
            elif field_name == "providerName":
                code, message = IssueCode.MISSING_PROVIDER, "Provider is missing"
            else:
                code, message = IssueCode.MISSING_REQUIRED, f"Required field {field_name} is missing"
            issues.append(self._issue(code, definition.name, item, field_name, message,
                                      suggested_fix=f"Map a source field to {field_name} or add a default"))
        return issues

    def _check_formats(
        self,
        definition: EntityDefinition,
        item: StagedItem,
        payload: Dict[str, Any]
    ) -> List[ValidationIssue]:
        issues = []
        for field_name, field_type in definition.fields.items():
            value = payload.get(field_name)
            if self._is_missing(value):
                continue

            if field_type == "date" and not self._is_valid_date(value):
                issues.append(self._issue(IssueCode.INVALID_DATE, definition.name, item, field_name,
                                          "Date must be YYYY-MM-DD", value=value))
            elif field_type == "datetime" and not self._is_valid_datetime(value):
                issues.append(self._issue(IssueCode.INVALID_DATE, definition.name, item, field_name,
                                          "Unparseable date/time", value=value))
            elif field_type == "email" and not (isinstance(value, str) and EMAIL_PATTERN.match(value)):
                issues.append(self._issue(IssueCode.INVALID_EMAIL, definition.name, item, field_name,
                                          "Email address looks invalid", severity="warning", value=value))
            elif field_type == "phone" and not (isinstance(value, str) and E164_PATTERN.match(value)):
                issues.append(self._issue(IssueCode.INVALID_PHONE, definition.name, item, field_name,
                                          "Phone must be E.164 (+15551234567)", value=value,
                                          suggested_fix="Coerce the source field with to=phone"))
            elif field_type == "decimal" and not self._is_valid_amount(value):
                issues.append(self._issue(IssueCode.INVALID_AMOUNT, definition.name, item, field_name,
                                          "Amount must be a non-negative number", value=value))
        return issues

    def _check_references(
        self,
        definition: EntityDefinition,
        item: StagedItem,
        payload: Dict[str, Any],
        known_refs: Dict[str, Set[str]]
    ) -> List[ValidationIssue]:
        issues = []
        for field_name, target in definition.references.items():
            value = payload.get(field_name)
            if self._is_missing(value):
                continue
            if str(value) not in known_refs.get(target, set()):
                issues.append(self._issue(
                    IssueCode.ORPHANED_REFERENCE, definition.name, item, field_name,
                    f"References {target} {value}, which is not staged or promoted",
                    value=value,
                ))
        return issues

    def _duplicate_canonical_ids(self, entity_type: str, items: List[StagedItem]):
        seen: Dict[str, str] = {}
        for item in sorted(items, key=lambda i: i.source_id):
            if not item.canonical_id:
                continue
            if item.canonical_id in seen:
                yield item.source_id, self._issue(
                    IssueCode.DUPLICATE_CANONICAL_ID, entity_type, item, "canonicalId",
                    f"Canonical id also used by {seen[item.canonical_id]}",
                    value=item.canonical_id,
                )
            else:
                seen[item.canonical_id] = item.source_id

    @staticmethod
    def _issue(
        code: str,
        entity_type: str,
        item: StagedItem,
        field_name: str,
        message: str,
        severity: str = "error",
        value: Any = None,
        suggested_fix: Optional[str] = None
    ) -> ValidationIssue:
        return ValidationIssue(
            code=code,
            entity_type=entity_type,
            source_id=item.source_id,
            field=field_name,
            message=message,
            severity=severity,
            value=value,
            suggested_fix=suggested_fix,
        )

    @staticmethod
    def _is_missing(value: Any) -> bool:
        return value is None or (isinstance(value, str) and not value.strip())

    def _is_valid_date(self, value: Any) -> bool:
        """Check if string is a valid YYYY-MM-DD date."""
        try:
            date.fromisoformat(str(value))
            return len(str(value)) == 10
        except ValueError:
            return False

    def _is_valid_datetime(self, value: Any) -> bool:
        """Check if string is a parseable date/time."""
        if not isinstance(value, str):
            return False
        try:
            date_parser.isoparse(value)
            return True
        except ValueError:
            return False

    @staticmethod
    def _is_valid_amount(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return value >= 0
