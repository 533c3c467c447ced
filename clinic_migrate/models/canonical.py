"""Canonical entity registry shared by mapping, validation and promotion."""

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class EntityDefinition:
    """Shape of one canonical entity type."""
    name: str
    required: Tuple[str, ...]
    fields: Dict[str, str] = field(default_factory=dict)  # field -> type
    references: Dict[str, str] = field(default_factory=dict)  # field -> entity type

    @property
    def field_names(self) -> List[str]:
        return list(self.fields.keys())


PATIENT_REF = {"patientSourceId": "patient"}

CANONICAL_ENTITIES: Dict[str, EntityDefinition] = {
    "patient": EntityDefinition(
        name="patient",
        required=("firstName", "lastName"),
        fields={
            "firstName": "string",
            "lastName": "string",
            "email": "email",
            "phone": "phone",
            "dateOfBirth": "date",
            "gender": "string",
            "address": "object",
            "allergies": "string",
            "medicalNotes": "string",
            "tags": "array",
        },
    ),
    "appointment": EntityDefinition(
        name="appointment",
        required=("patientSourceId", "providerName", "startTime", "status"),
        fields={
            "patientSourceId": "string",
            "providerName": "string",
            "serviceName": "string",
            "startTime": "datetime",
            "endTime": "datetime",
            "status": "string",
            "notes": "string",
        },
        references=dict(PATIENT_REF),
    ),
    "encounter": EntityDefinition(
        name="encounter",
        required=("patientSourceId", "encounterDate"),
        fields={
            "patientSourceId": "string",
            "appointmentSourceId": "string",
            "providerName": "string",
            "encounterDate": "datetime",
            "notes": "string",
        },
        references={"patientSourceId": "patient", "appointmentSourceId": "appointment"},
    ),
    "chart": EntityDefinition(
        name="chart",
        required=("patientSourceId", "providerName"),
        fields={
            "patientSourceId": "string",
            "appointmentSourceId": "string",
            "providerName": "string",
            "chartDate": "datetime",
            "sections": "array",
        },
        references={"patientSourceId": "patient", "appointmentSourceId": "appointment"},
    ),
    "consent": EntityDefinition(
        name="consent",
        required=("patientSourceId", "consentType"),
        fields={
            "patientSourceId": "string",
            "consentType": "string",
            "signedAt": "datetime",
            "status": "string",
        },
        references=dict(PATIENT_REF),
    ),
    "photo": EntityDefinition(
        name="photo",
        required=("patientSourceId", "fileUrl"),
        fields={
            "patientSourceId": "string",
            "fileUrl": "string",
            "takenAt": "datetime",
            "caption": "string",
        },
        references=dict(PATIENT_REF),
    ),
    "document": EntityDefinition(
        name="document",
        required=("patientSourceId", "title"),
        fields={
            "patientSourceId": "string",
            "title": "string",
            "fileUrl": "string",
            "documentType": "string",
        },
        references=dict(PATIENT_REF),
    ),
    "invoice": EntityDefinition(
        name="invoice",
        required=("patientSourceId", "status", "total"),
        fields={
            "patientSourceId": "string",
            "invoiceNumber": "string",
            "status": "string",
            "total": "decimal",
            "lineItems": "array",
            "issuedAt": "datetime",
        },
        references=dict(PATIENT_REF),
    ),
}

# Parents before children.
PROMOTION_ORDER: List[str] = [
    "patient",
    "appointment",
    "encounter",
    "chart",
    "consent",
    "photo",
    "document",
    "invoice",
]

ENTITY_ALIASES: Dict[str, str] = {
    "patient": "patient",
    "client": "patient",
    "customer": "patient",
    "contact": "patient",
    "appointment": "appointment",
    "booking": "appointment",
    "visit": "appointment",
    "calendar": "appointment",
    "encounter": "encounter",
    "chart": "chart",
    "chartnote": "chart",
    "note": "chart",
    "treatment": "chart",
    "consent": "consent",
    "consentform": "consent",
    "form": "consent",
    "photo": "photo",
    "image": "photo",
    "media": "photo",
    "document": "document",
    "file": "document",
    "invoice": "invoice",
    "order": "invoice",
    "sale": "invoice",
    "payment": "invoice",
}


def resolve_entity_type(name: Optional[str]) -> Optional[str]:
    """
    Map a vendor entity name or file stem to a canonical entity type.

    Args:
        name: e.g. "Clients", "patient_export", "bookings.csv"

    Returns:
        Canonical entity type, or None when nothing matches
    """
    if not name:
        return None
    text = str(name).lower()
    text = re.sub(r"\.(csv|json|ndjson)$", "", text)
    for token in [re.sub(r"[^a-z]", "", text)] + re.split(r"[^a-z]+", text):
        if not token:
            continue
        candidates = [token]
        if token.endswith("ies"):
            candidates.append(token[:-3] + "y")
        if token.endswith("s"):
            candidates.append(token[:-1])
        for candidate in candidates:
            if candidate in ENTITY_ALIASES:
                return ENTITY_ALIASES[candidate]
    return None


def canonical_id(clinic_id: str, vendor: str, entity_type: str, source_id: str) -> str:
    """Deterministic canonical identifier for a staged record."""
    key = f"{clinic_id}:{vendor.lower()}:{entity_type}:{source_id}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


def payload_checksum(payload: Dict[str, Any]) -> str:
    """Checksum of a payload, independent of key order."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()
