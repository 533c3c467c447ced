"""Transformation engine for converting raw vendor records to canonical shape."""

import hashlib
import hmac
import re
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser

from ..models.mapping import EntityMapping, FieldMapping, RuleKind
from ..models.record import get_path

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ISO_DATE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})")


@dataclass
class TransformOutcome:
    """Canonical payload for one record plus any field errors."""
    payload: Dict[str, Any]
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class TransformEngine:
    """
    Engine for transforming raw records with a mapping spec.

    Supports:
    - Rename (copy as-is, dot paths into nested vendor data)
    - Type coercion (dates, datetimes, decimals, phones, emails, ...)
    - Constant defaults
    - Derived fields (split name, concat, coalesce, enum map, hash token)

    Transforms are pure functions of (raw data, mapping), so re-running
    them yields identical payloads.
    """

    def __init__(self, masking_secret: Optional[str] = None):
        """
        Initialize the transform engine.

        Args:
            masking_secret: HMAC key for hash_token derivations
        """
        self.masking_secret = masking_secret
        self._coercions = self._register_coercions()
        self._derivations = self._register_derivations()

    def _register_coercions(self) -> Dict[str, Callable]:
        """Register all built-in coercion functions."""
        return {
            "string": lambda v, c: str(v),
            "trim": lambda v, c: str(v).strip(),
            "upper": lambda v, c: str(v).strip().upper(),
            "lower": lambda v, c: str(v).strip().lower(),
            "date": self._coerce_date,
            "datetime": self._coerce_datetime,
            "decimal": self._coerce_decimal,
            "integer": self._coerce_integer,
            "boolean": self._coerce_boolean,
            "phone": self._coerce_phone,
            "email": self._coerce_email,
        }

    def _register_derivations(self) -> Dict[str, Callable]:
        """Register all built-in derivation functions."""
        return {
            "split_name": self._derive_split_name,
            "concat": self._derive_concat,
            "coalesce": self._derive_coalesce,
            "enum_map": self._derive_enum_map,
            "hash_token": self._derive_hash_token,
        }

    def register_derivation(self, name: str, func: Callable) -> None:
        """Register a custom derivation func(raw_data, field_mapping) -> value."""
        self._derivations[name] = func

    def transform_record(
        self,
        raw_data: Dict[str, Any],
        mapping: EntityMapping,
        source_id: str
    ) -> TransformOutcome:
        """
        Transform one raw record.

        Args:
            raw_data: Vendor-shaped record
            mapping: Entity mapping from the approved spec
            source_id: Vendor-native id, carried into the payload

        Returns:
            TransformOutcome with the canonical payload
        """
        payload: Dict[str, Any] = {"sourceId": source_id}
        errors = []

        for field_mapping in mapping.field_mappings:
            try:
                value = self.apply_rule(raw_data, field_mapping)
            except (ValueError, TypeError, ArithmeticError) as e:
                errors.append(f"{field_mapping.target_field}: {e}")
                continue

            if value is not None:
                self._set_nested_value(payload, field_mapping.target_field, value)

        return TransformOutcome(payload=payload, errors=errors)

    def apply_rule(self, raw_data: Dict[str, Any], field_mapping: FieldMapping) -> Any:
        """Compute one canonical field value."""
        config = field_mapping.config
        rule = field_mapping.rule

        if rule == RuleKind.RENAME:
            value = self._get_value(raw_data, field_mapping.source_field)

        elif rule == RuleKind.COERCE:
            value = self._get_value(raw_data, field_mapping.source_field)
            if value is not None:
                coercion = self._coercions.get(config.get("to", "string"))
                if coercion is None:
                    raise ValueError(f"unknown coercion '{config.get('to')}'")
                value = coercion(value, config)

        elif rule == RuleKind.DEFAULT:
            value = self._get_value(raw_data, field_mapping.source_field)
            if value is None:
                value = config.get("value")

        elif rule == RuleKind.DERIVED:
            derivation = self._derivations.get(config.get("op"))
            if derivation is None:
                raise ValueError(f"unknown derivation '{config.get('op')}'")
            value = derivation(raw_data, field_mapping)

        else:
            raise ValueError(f"unsupported rule {rule}")

        if value is None and "default" in config:
            value = config["default"]
        return value

    def _get_value(self, raw_data: Dict[str, Any], path: Optional[str]) -> Any:
        """Read a source value, treating blank strings as missing."""
        value = get_path(raw_data, path)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set a value in a nested dict by dot path."""
        parts = path.split(".")
        current = data
        for part in parts[:-1]:
            if part not in current or not isinstance(current[part], dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    # === Coercions ===

    def _coerce_date(self, value: Any, config: Dict[str, Any]) -> str:
        """Normalize to YYYY-MM-DD."""
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        text = str(value).strip()
        match = ISO_DATE_PATTERN.match(text)
        if match:
            return date.fromisoformat(match.group(1)).isoformat()
        try:
            return date_parser.parse(text, dayfirst=bool(config.get("dayfirst", False))).date().isoformat()
        except (ValueError, OverflowError):
            raise ValueError(f"unparseable date '{text}'")

    def _coerce_datetime(self, value: Any, config: Dict[str, Any]) -> str:
        """Normalize to ISO 8601."""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.utcfromtimestamp(value).isoformat()
        if isinstance(value, datetime):
            return value.isoformat()
        text = str(value).strip()
        try:
            return date_parser.parse(text, dayfirst=bool(config.get("dayfirst", False))).isoformat()
        except (ValueError, OverflowError):
            raise ValueError(f"unparseable datetime '{text}'")

    def _coerce_decimal(self, value: Any, config: Dict[str, Any]) -> float:
        """Parse amounts like '$1,234.50'; optional 'divide' for minor units."""
        if isinstance(value, bool):
            raise ValueError("boolean is not an amount")
        text = re.sub(r"[^\d.\-]", "", str(value))
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"not a number '{value}'")
        divide = config.get("divide")
        if divide:
            amount = amount / Decimal(str(divide))
        return float(round(amount, int(config.get("places", 2))))

    def _coerce_integer(self, value: Any, config: Dict[str, Any]) -> int:
        if isinstance(value, bool):
            raise ValueError("boolean is not an integer")
        try:
            return int(Decimal(str(value).strip().replace(",", "")))
        except InvalidOperation:
            raise ValueError(f"not an integer '{value}'")

    def _coerce_boolean(self, value: Any, config: Dict[str, Any]) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "yes", "y", "1", "t"):
            return True
        if text in ("false", "no", "n", "0", "f"):
            return False
        raise ValueError(f"not a boolean '{value}'")

    def _coerce_phone(self, value: Any, config: Dict[str, Any]) -> str:
        """Normalize to E.164 (NANP numbers get +1)."""
        text = str(value).strip()
        digits = re.sub(r"\D", "", text)
        if len(digits) == 10:
            return f"+1{digits}"
        if len(digits) == 11 and digits.startswith("1"):
            return f"+{digits}"
        if text.startswith("+") and 8 <= len(digits) <= 15:
            return f"+{digits}"
        raise ValueError(f"invalid phone number ({len(digits)} digits)")

    def _coerce_email(self, value: Any, config: Dict[str, Any]) -> str:
        email = str(value).strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValueError("invalid email address")
        return email

    # === Derivations ===

    def _derive_split_name(self, raw_data: Dict[str, Any], fm: FieldMapping) -> Optional[str]:
        """Take the first or last part of a full name ('Jane Doe' or 'Doe, Jane')."""
        full_name = self._get_value(raw_data, fm.source_fields[0])
        if full_name is None:
            return None
        full_name = str(full_name).strip()
        if "," in full_name:
            last, _, first = full_name.partition(",")
            first, last = first.strip(), last.strip()
        else:
            parts = full_name.split()
            first = parts[0] if parts else ""
            last = " ".join(parts[1:])
        part = fm.config.get("part", "first")
        return (first if part == "first" else last) or None

    def _derive_concat(self, raw_data: Dict[str, Any], fm: FieldMapping) -> Optional[str]:
        separator = fm.config.get("separator", " ")
        values = [self._get_value(raw_data, f) for f in fm.source_fields]
        parts = [str(v).strip() for v in values if v is not None]
        return separator.join(parts) or None

    def _derive_coalesce(self, raw_data: Dict[str, Any], fm: FieldMapping) -> Any:
        for source_field in fm.source_fields:
            value = self._get_value(raw_data, source_field)
            if value is not None:
                return value
        return None

    def _derive_enum_map(self, raw_data: Dict[str, Any], fm: FieldMapping) -> Any:
        """Map vendor enum values (case-insensitive) to canonical ones."""
        value = self._get_value(raw_data, fm.source_fields[0])
        if value is None:
            return None
        lookup = {str(k).strip().lower(): v for k, v in fm.config.get("map", {}).items()}
        key = str(value).strip().lower()
        if key in lookup:
            return lookup[key]
        return fm.config.get("fallback", value)

    def _derive_hash_token(self, raw_data: Dict[str, Any], fm: FieldMapping) -> Optional[str]:
        """Keyed, irreversible token for identifiers that must not be copied."""
        value = self._get_value(raw_data, fm.source_fields[0])
        if value is None:
            return None
        if not self.masking_secret:
            raise ValueError("hash_token needs a masking secret")
        digest = hmac.new(self.masking_secret.encode("utf-8"), str(value).encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()[:16]
