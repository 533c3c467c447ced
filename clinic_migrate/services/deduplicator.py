"""Duplicate detection within one entity type of a run."""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

KeyFunc = Callable[[Dict[str, Any]], Optional[str]]


def _email_key(payload: Dict[str, Any]) -> Optional[str]:
    email = payload.get("email")
    return f"email:{str(email).strip().lower()}" if email else None


def _phone_key(payload: Dict[str, Any]) -> Optional[str]:
    phone = payload.get("phone")
    digits = re.sub(r"\D", "", str(phone)) if phone else ""
    return f"phone:{digits}" if len(digits) >= 10 else None


def _name_dob_key(payload: Dict[str, Any]) -> Optional[str]:
    first = str(payload.get("firstName") or "").strip().lower()
    last = str(payload.get("lastName") or "").strip().lower()
    dob = payload.get("dateOfBirth")
    if not (first and last and dob):
        return None
    return f"name_dob:{first}|{last}|{dob}"


def _invoice_number_key(payload: Dict[str, Any]) -> Optional[str]:
    number = payload.get("invoiceNumber")
    return f"invoice:{str(number).strip().lower()}" if number else None


# Entity type -> match keys, strongest first
DEDUP_KEYS: Dict[str, Sequence[KeyFunc]] = {
    "patient": (_email_key, _phone_key, _name_dob_key),
    "invoice": (_invoice_number_key,),
}


class Deduplicator:
    """
    Finds records that describe the same real-world entity.

    Records are considered in source id order; the first record holding a
    key keeps it and later records sharing any key are its duplicates.
    """

    def __init__(self, keys: Optional[Dict[str, Sequence[KeyFunc]]] = None):
        self.keys = keys if keys is not None else DEDUP_KEYS

    def find_duplicates(
        self,
        entity_type: str,
        records: List[Tuple[str, Dict[str, Any]]]
    ) -> Dict[str, str]:
        """
        Find duplicates among (source_id, payload) pairs.

        Returns:
            {duplicate source_id: surviving source_id}
        """
        key_funcs = self.keys.get(entity_type)
        if not key_funcs:
            return {}

        owners: Dict[str, str] = {}
        duplicates: Dict[str, str] = {}

        for source_id, payload in sorted(records, key=lambda r: r[0]):
            record_keys = [k for k in (func(payload) for func in key_funcs) if k]
            match = next((owners[k] for k in record_keys if k in owners), None)
            if match is not None:
                duplicates[source_id] = match
                continue
            for key in record_keys:
                owners[key] = source_id

        if duplicates:
            logger.info(f"Found {len(duplicates)} duplicate {entity_type} record(s)")
        return duplicates
