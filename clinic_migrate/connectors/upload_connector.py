"""Connector for previously uploaded CSV, JSON and FHIR files."""

import csv
import io
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .base import BaseConnector
from ..errors import VendorConnectionError
from ..models.canonical import resolve_entity_type
from ..models.migration import IngestStrategy
from ..models.record import AccessMethod, EntityDiscovery, RawRecord
from ..services.retry import RetryPolicy
from ..storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

# FHIR resourceType -> canonical entity type
FHIR_RESOURCE_TYPES = {
    "Patient": "patient",
    "Appointment": "appointment",
    "Encounter": "encounter",
    "Consent": "consent",
    "Media": "photo",
    "DocumentReference": "document",
    "Invoice": "invoice",
    "Composition": "chart",
}

ParsedRow = Tuple[str, str, Dict[str, Any]]  # entity type, source entity, data


class UploadConnector(BaseConnector):
    """
    Connector for uploaded export files. Makes no network calls.

    Supports:
    - CSV files (header row required)
    - JSON arrays, {"records": [...]} and {"<entity>": [...]} documents
    - FHIR Bundles (entry[].resource)
    - Files on disk or in the artifact store
    """

    strategy = IngestStrategy.UPLOAD
    supports_parallel = True

    def __init__(
        self,
        vendor: str,
        files: List[Dict[str, Any]],
        artifact_store: Optional[ArtifactStore] = None,
        encoding: str = "utf-8-sig",
        delimiter: str = ",",
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize the upload connector.

        Args:
            vendor: Source vendor identifier
            files: [{"name": ..., "path": ... | "locator": ..., "entity_type": optional}]
            artifact_store: Store used to resolve "locator" entries
            encoding: Text encoding of CSV/JSON files
            delimiter: CSV delimiter character
        """
        super().__init__(vendor, retry_policy)
        self.files = files
        self.artifact_store = artifact_store
        self.encoding = encoding
        self.delimiter = delimiter

    def login(self, credentials: Dict[str, Any]) -> None:
        """Nothing to authenticate; check that every file is readable."""
        if not self.files:
            raise VendorConnectionError("No uploaded files to import", retryable=False)
        for file_ref in self.files:
            self._read_bytes(file_ref)

    def discover_entities(self) -> List[EntityDiscovery]:
        counts: Dict[str, int] = {}
        sources: Dict[str, str] = {}
        for file_ref in self.files:
            for entity_type, source_entity, _ in self._parse_file(file_ref):
                counts[entity_type] = counts.get(entity_type, 0) + 1
                sources.setdefault(entity_type, source_entity)

        return [
            EntityDiscovery(
                entity_type=entity_type,
                available=True,
                access_method=AccessMethod.FILE,
                estimated_count=count,
                source_entity=sources[entity_type],
            )
            for entity_type, count in counts.items()
        ]

    def extract_entity(self, entity_type: str) -> Iterator[RawRecord]:
        for page, file_ref in enumerate(self.files):
            self.check_cancelled()
            index = 0
            for row_entity, _, data in self._parse_file(file_ref):
                if row_entity != entity_type:
                    continue
                yield self.create_record(entity_type, data, page=page, index=index)
                index += 1

    def _parse_file(self, file_ref: Dict[str, Any]) -> Iterator[ParsedRow]:
        """Parse one file into (entity type, source entity, row) tuples."""
        name = self._file_name(file_ref)
        try:
            content = self._read_bytes(file_ref).decode(self.encoding)
        except UnicodeDecodeError as e:
            raise VendorConnectionError(
                f"{name} could not be decoded as {self.encoding} (byte {e.start})",
                retryable=False,
            )

        suffix = Path(name).suffix.lower()
        declared = file_ref.get("entity_type")

        if suffix == ".csv":
            entity_type = resolve_entity_type(declared or Path(name).stem)
            if not entity_type:
                self.add_warning(f"Cannot tell which entity {name} holds; skipping")
                return
            reader = csv.DictReader(io.StringIO(content), delimiter=self.delimiter)
            for row in reader:
                yield entity_type, Path(name).stem, self._clean_row(row)
            return

        if suffix in (".json", ".fhir"):
            try:
                document = json.loads(content)
            except json.JSONDecodeError as e:
                raise VendorConnectionError(f"{name} is not valid JSON: line {e.lineno}", retryable=False)
            yield from self._parse_json(name, document, declared)
            return

        self.add_warning(f"Unsupported file type for {name}; skipping")

    def _parse_json(self, name: str, document: Any, declared: Optional[str]) -> Iterator[ParsedRow]:
        stem = Path(name).stem

        if isinstance(document, dict) and document.get("resourceType") == "Bundle":
            for entry in document.get("entry") or []:
                resource = entry.get("resource") or {}
                resource_type = resource.get("resourceType")
                entity_type = FHIR_RESOURCE_TYPES.get(resource_type)
                if entity_type:
                    yield entity_type, resource_type, resource
            return

        if isinstance(document, dict) and document.get("resourceType") in FHIR_RESOURCE_TYPES:
            yield FHIR_RESOURCE_TYPES[document["resourceType"]], document["resourceType"], document
            return

        if isinstance(document, dict) and isinstance(document.get("records"), list):
            document = document["records"]

        if isinstance(document, list):
            entity_type = resolve_entity_type(declared or stem)
            if not entity_type:
                self.add_warning(f"Cannot tell which entity {name} holds; skipping")
                return
            for item in document:
                if isinstance(item, dict):
                    yield entity_type, stem, item
            return

        if isinstance(document, dict):
            for key, items in document.items():
                entity_type = resolve_entity_type(key)
                if entity_type and isinstance(items, list):
                    for item in items:
                        if isinstance(item, dict):
                            yield entity_type, key, item
            return

        self.add_warning(f"Unrecognized JSON layout in {name}; skipping")

    def _read_bytes(self, file_ref: Dict[str, Any]) -> bytes:
        """Load a file's content from disk or the artifact store."""
        if file_ref.get("locator"):
            if self.artifact_store is None:
                raise VendorConnectionError("Uploaded file references an artifact but no store is configured", retryable=False)
            try:
                return self.artifact_store.get(file_ref["locator"])
            except FileNotFoundError:
                raise VendorConnectionError(f"Uploaded file missing: {self._file_name(file_ref)}", retryable=False)

        path = Path(file_ref.get("path", ""))
        if not path.is_file():
            raise VendorConnectionError(f"Uploaded file missing: {self._file_name(file_ref)}", retryable=False)
        return path.read_bytes()

    @staticmethod
    def _file_name(file_ref: Dict[str, Any]) -> str:
        return file_ref.get("name") or Path(file_ref.get("path", "upload")).name

    @staticmethod
    def _clean_row(row: Dict[str, Any]) -> Dict[str, Any]:
        """Strip whitespace and turn empty cells into None."""
        cleaned = {}
        for key, value in row.items():
            if key is None:
                continue
            if isinstance(value, str):
                value = value.strip()
                if value == "":
                    value = None
            cleaned[key.strip()] = value
        return cleaned
