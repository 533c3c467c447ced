"""Content-addressable artifact storage for extracts, reports and packets."""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ArtifactKind(str, Enum):
    """Kinds of blobs a run stores."""
    RAW_EXTRACT = "raw-extract"
    REPORT = "report"
    SAMPLING_PACKET = "sampling-packet"


@dataclass
class ArtifactRef:
    """Where a stored blob lives and how to verify it."""
    locator: str
    checksum: str
    size: int
    kind: ArtifactKind

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "locator": self.locator,
            "checksum": self.checksum,
            "size": self.size,
            "kind": self.kind.value,
        }


class ArtifactStore(ABC):
    """Blob storage collaborator."""

    @abstractmethod
    def put(self, kind: ArtifactKind, data: bytes) -> ArtifactRef:
        """
        Store a blob.

        Args:
            kind: Artifact kind
            data: Raw bytes

        Returns:
            ArtifactRef with locator and sha256 checksum
        """
        pass

    @abstractmethod
    def get(self, locator: str) -> bytes:
        """
        Read a blob back.

        Raises:
            FileNotFoundError: Unknown locator
        """
        pass

    def put_json(self, kind: ArtifactKind, payload: Any) -> ArtifactRef:
        """Serialize a JSON-compatible payload and store it."""
        data = json.dumps(payload, sort_keys=True, indent=2, default=str).encode("utf-8")
        return self.put(kind, data)

    def get_json(self, locator: str) -> Any:
        return json.loads(self.get(locator).decode("utf-8"))


class LocalArtifactStore(ArtifactStore):
    """
    Filesystem-backed store.

    Blobs live at <base_dir>/<kind>/<sha[:2]>/<sha>, so identical content is
    stored once and locators are stable across retries.
    """

    SCHEME = "local://"

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def put(self, kind: ArtifactKind, data: bytes) -> ArtifactRef:
        checksum = hashlib.sha256(data).hexdigest()
        relative = f"{kind.value}/{checksum[:2]}/{checksum}"
        path = self.base_dir / relative

        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
            logger.debug(f"Stored {kind.value} artifact {checksum[:12]} ({len(data)} bytes)")

        return ArtifactRef(
            locator=f"{self.SCHEME}{relative}",
            checksum=checksum,
            size=len(data),
            kind=kind,
        )

    def get(self, locator: str) -> bytes:
        if not locator.startswith(self.SCHEME):
            raise FileNotFoundError(f"Not a local artifact locator: {locator}")
        relative = locator[len(self.SCHEME):]
        path = (self.base_dir / relative).resolve()
        if self.base_dir.resolve() not in path.parents:
            raise FileNotFoundError(f"Artifact locator escapes the store: {locator}")
        if not path.exists():
            raise FileNotFoundError(f"Artifact not found: {locator}")
        return path.read_bytes()
