"""Heuristic draft mappings from sampled raw records."""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..models.canonical import CANONICAL_ENTITIES
from ..models.mapping import EntityMapping, FieldMapping, RuleKind

logger = logging.getLogger(__name__)

EXACT_CONFIDENCE = 0.95
DERIVED_CONFIDENCE = 0.85
PARTIAL_CONFIDENCE = 0.6
DEFAULT_CONFIDENCE = 0.5

APPOINTMENT_STATUS_MAP = {
    "booked": "scheduled",
    "confirmed": "scheduled",
    "pending": "scheduled",
    "scheduled": "scheduled",
    "arrived": "checked_in",
    "checkedin": "checked_in",
    "checked_in": "checked_in",
    "fulfilled": "completed",
    "complete": "completed",
    "completed": "completed",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "noshow": "no_show",
    "no_show": "no_show",
    "no-show": "no_show",
}

INVOICE_STATUS_MAP = {
    "paid": "paid",
    "closed": "paid",
    "balanced": "paid",
    "open": "open",
    "issued": "open",
    "unpaid": "open",
    "partiallypaid": "partial",
    "partial": "partial",
    "void": "void",
    "voided": "void",
    "cancelled": "void",
    "refunded": "refunded",
}

# Canonical entity -> canonical field -> (aliases, rule config)
FIELD_RULES: Dict[str, Dict[str, Tuple[Tuple[str, ...], Dict[str, Any]]]] = {
    "patient": {
        "firstName": (("firstname", "fname", "givenname", "first", "name0given0"), {"to": "trim"}),
        "lastName": (("lastname", "lname", "surname", "familyname", "last", "name0family"), {"to": "trim"}),
        "email": (("email", "emailaddress", "mail", "primaryemail"), {"to": "email"}),
        "phone": (("phone", "phonenumber", "mobile", "mobilephone", "cell", "cellphone", "telephone", "telecom0value"), {"to": "phone"}),
        "dateOfBirth": (("dateofbirth", "dob", "birthdate", "birthday"), {"to": "date"}),
        "gender": (("gender", "sex", "pronouns"), {"to": "lower"}),
        "allergies": (("allergies", "allergy", "knownallergies"), {}),
        "medicalNotes": (("medicalnotes", "medicalhistory", "notes", "clientnotes"), {}),
        "tags": (("tags", "labels"), {}),
        "address": (("address", "address0", "homeaddress"), {}),
    },
    "appointment": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "customerid", "patient", "client", "participant0actorreference"), {"to": "string"}),
        "providerName": (("providername", "provider", "staffname", "staff", "practitioner", "doctor", "injector"), {"to": "trim"}),
        "serviceName": (("servicename", "service", "treatment", "appointmenttype", "servicetype0text"), {"to": "trim"}),
        "startTime": (("starttime", "start", "startat", "startsat", "scheduledat", "appointmentdate", "datetime"), {"to": "datetime"}),
        "endTime": (("endtime", "end", "endat", "endsat"), {"to": "datetime"}),
        "status": (("status", "appointmentstatus", "state"), {"op": "enum_map", "map": APPOINTMENT_STATUS_MAP}),
        "notes": (("notes", "note", "comments", "comment"), {}),
    },
    "encounter": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "subjectreference"), {"to": "string"}),
        "appointmentSourceId": (("appointmentsourceid", "appointmentid", "bookingid"), {"to": "string"}),
        "providerName": (("providername", "provider", "practitioner"), {"to": "trim"}),
        "encounterDate": (("encounterdate", "visitdate", "date", "periodstart"), {"to": "datetime"}),
        "notes": (("notes", "note", "summary"), {}),
    },
    "chart": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "subjectreference"), {"to": "string"}),
        "appointmentSourceId": (("appointmentsourceid", "appointmentid", "bookingid"), {"to": "string"}),
        "providerName": (("providername", "provider", "author", "practitioner", "staffname"), {"to": "trim"}),
        "chartDate": (("chartdate", "date", "createdat", "notedate"), {"to": "datetime"}),
        "sections": (("sections", "section", "notes", "content"), {}),
    },
    "consent": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "patientreference"), {"to": "string"}),
        "consentType": (("consenttype", "formname", "form", "type", "title"), {"to": "trim"}),
        "signedAt": (("signedat", "signeddate", "signed", "datetime", "completedat"), {"to": "datetime"}),
        "status": (("status",), {"to": "lower"}),
    },
    "photo": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "subjectreference"), {"to": "string"}),
        "fileUrl": (("fileurl", "url", "imageurl", "src", "contenturl"), {"to": "trim"}),
        "takenAt": (("takenat", "date", "createdat", "created"), {"to": "datetime"}),
        "caption": (("caption", "description", "label"), {}),
    },
    "document": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "subjectreference"), {"to": "string"}),
        "title": (("title", "name", "filename", "description"), {"to": "trim"}),
        "fileUrl": (("fileurl", "url", "content0attachmenturl"), {"to": "trim"}),
        "documentType": (("documenttype", "type", "category"), {"to": "lower"}),
    },
    "invoice": {
        "patientSourceId": (("patientsourceid", "patientid", "clientid", "customerid", "subjectreference"), {"to": "string"}),
        "invoiceNumber": (("invoicenumber", "number", "ordernumber", "receiptnumber"), {"to": "string"}),
        "status": (("status", "paymentstatus", "state"), {"op": "enum_map", "map": INVOICE_STATUS_MAP}),
        "total": (("total", "amount", "totalamount", "grandtotal", "totalnet", "totalgrossvalue"), {"to": "decimal"}),
        "lineItems": (("lineitems", "items", "lines", "lineitem"), {}),
        "issuedAt": (("issuedat", "date", "createdat", "closedat", "invoicedate"), {"to": "datetime"}),
    },
}

FULL_NAME_ALIASES = ("name", "fullname", "clientname", "patientname", "displayname")

# Canonical field -> constant used when nothing in the source matches
FALLBACK_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "appointment": {"status": "scheduled"},
    "invoice": {"status": "open"},
}


def normalize_field_name(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


def flatten_field_paths(record: Dict[str, Any], prefix: str = "", depth: int = 3) -> List[str]:
    """Dot paths of scalar leaves (first list element only) up to a depth."""
    paths = []
    for key, value in record.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and depth > 1 and value:
            paths.extend(flatten_field_paths(value, f"{path}.", depth - 1))
        elif isinstance(value, list) and value and isinstance(value[0], dict) and depth > 1:
            paths.extend(flatten_field_paths(value[0], f"{path}.0.", depth - 1))
        elif isinstance(value, list) and value and not isinstance(value[0], (dict, list)) and depth > 1:
            paths.append(path)
            paths.append(f"{path}.0")
        else:
            paths.append(path)
    return paths


class MappingGenerator:
    """
    Drafts a field mapping from sampled raw records.

    Exact alias matches are confident; partial matches and constant
    defaults fall under the approval threshold so a reviewer sees them.
    """

    def collect_fields(self, samples: Iterable[Dict[str, Any]]) -> List[str]:
        """Union of field paths across samples, in first-seen order."""
        seen: Dict[str, None] = {}
        for record in samples:
            for path in flatten_field_paths(record):
                seen.setdefault(path, None)
        return list(seen)

    def generate(
        self,
        samples: Dict[str, List[Dict[str, Any]]],
        source_entities: Optional[Dict[str, str]] = None
    ) -> Tuple[Dict[str, EntityMapping], Dict[str, List[str]]]:
        """
        Draft entity mappings.

        Args:
            samples: canonical entity type -> sample raw records
            source_entities: canonical entity type -> vendor entity name

        Returns:
            (entity mappings keyed by canonical type, unmapped source fields)
        """
        source_entities = source_entities or {}
        mappings: Dict[str, EntityMapping] = {}
        unmapped: Dict[str, List[str]] = {}

        for entity_type, records in samples.items():
            if entity_type not in CANONICAL_ENTITIES:
                logger.warning(f"Skipping mapping for non-canonical entity '{entity_type}'")
                continue
            fields = self.collect_fields(records)
            field_mappings, used = self._map_entity(entity_type, fields)
            mappings[entity_type] = EntityMapping(
                source_entity=source_entities.get(entity_type, entity_type),
                target_entity=entity_type,
                field_mappings=field_mappings,
            )
            leftover = [f for f in fields if f not in used and not self._is_list_parent(f, fields)]
            if leftover:
                unmapped[entity_type] = leftover
            logger.info(
                f"Drafted {len(field_mappings)} field mapping(s) for {entity_type}; "
                f"{len(leftover)} source field(s) unmapped"
            )

        return mappings, unmapped

    def _map_entity(self, entity_type: str, fields: List[str]) -> Tuple[List[FieldMapping], Set[str]]:
        rules = FIELD_RULES.get(entity_type, {})
        normalized = {normalize_field_name(f): f for f in reversed(fields)}
        field_mappings: List[FieldMapping] = []
        used: Set[str] = set()

        for target_field, (aliases, config) in rules.items():
            source_field, confidence = self._match(aliases, normalized, used)
            if source_field is None:
                continue
            used.add(source_field)
            field_mappings.append(self._build(source_field, target_field, config, confidence))

        mapped_targets = {fm.target_field for fm in field_mappings}

        if entity_type == "patient" and not {"firstName", "lastName"} <= mapped_targets:
            full_name, _ = self._match(FULL_NAME_ALIASES, normalized, used)
            if full_name is not None:
                used.add(full_name)
                for target_field, part in (("firstName", "first"), ("lastName", "last")):
                    if target_field in mapped_targets:
                        continue
                    field_mappings.append(FieldMapping(
                        source_field=full_name,
                        target_field=target_field,
                        rule=RuleKind.DERIVED,
                        config={"op": "split_name", "part": part},
                        confidence=DERIVED_CONFIDENCE,
                        notes=f"Split from {full_name}",
                    ))
                    mapped_targets.add(target_field)

        for target_field, value in FALLBACK_DEFAULTS.get(entity_type, {}).items():
            if target_field not in mapped_targets:
                field_mappings.append(FieldMapping(
                    source_field=None,
                    target_field=target_field,
                    rule=RuleKind.DEFAULT,
                    config={"value": value},
                    confidence=DEFAULT_CONFIDENCE,
                    notes="No source field found; constant default",
                ))

        return field_mappings, used

    def _match(
        self,
        aliases: Iterable[str],
        normalized: Dict[str, str],
        used: Set[str]
    ) -> Tuple[Optional[str], float]:
        """Find the source field for a set of aliases."""
        for alias in aliases:
            source_field = normalized.get(alias)
            if source_field is not None and source_field not in used:
                return source_field, EXACT_CONFIDENCE

        for alias in aliases:
            if len(alias) < 4:
                continue
            for key, source_field in normalized.items():
                if source_field in used:
                    continue
                if alias in key and len(key) <= len(alias) + 8:
                    return source_field, PARTIAL_CONFIDENCE
        return None, 0.0

    def _build(
        self,
        source_field: str,
        target_field: str,
        config: Dict[str, Any],
        confidence: float
    ) -> FieldMapping:
        if config.get("op"):
            return FieldMapping(
                source_field=source_field,
                target_field=target_field,
                rule=RuleKind.DERIVED,
                config=dict(config),
                confidence=confidence,
            )
        if config.get("to"):
            return FieldMapping(
                source_field=source_field,
                target_field=target_field,
                rule=RuleKind.COERCE,
                config=dict(config),
                confidence=confidence,
            )
        return FieldMapping(
            source_field=source_field,
            target_field=target_field,
            rule=RuleKind.RENAME,
            confidence=confidence,
        )

    @staticmethod
    def _is_list_parent(path: str, fields: List[str]) -> bool:
        return f"{path}.0" in fields
