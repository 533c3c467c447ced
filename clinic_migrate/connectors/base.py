"""Base connector interface."""

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterator, List, Optional
from datetime import datetime
import logging
import threading

from ..errors import ExtractionCancelled, VendorTimeoutError
from ..models.migration import IngestStrategy
from ..models.record import EntityDiscovery, RawRecord
from ..services.retry import RetryCallback, RetryPolicy, call_with_deadline

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "Id", "ID", "sourceId", "source_id")
PATIENT_ID_FIELDS = ("clientId", "client_id", "patientId", "patient_id")


def resolve_source_id(
    data: Dict[str, Any],
    entity_type: str,
    page: int,
    index: int,
    id_field: Optional[str] = None
) -> str:
    """
    Pick the vendor-native identifier for a raw record.

    Falls back to "<entity>-<page>-<index>" when the record carries no id,
    which stays stable as long as the source ordering does.
    """
    candidates = [id_field] if id_field else []
    candidates.extend(ID_FIELDS)
    candidates.extend((f"{entity_type}Id", f"{entity_type}_id"))
    if entity_type == "patient":
        candidates.extend(PATIENT_ID_FIELDS)

    for name in candidates:
        value = data.get(name) if name else None
        if value not in (None, ""):
            return str(value)
    return f"{entity_type}-{page}-{index}"


class BaseConnector(ABC):
    """
    Base class for all vendor connectors.

    Connectors pull vendor-shaped records from a source platform. Every
    vendor call goes through call_vendor so that it gets a deadline and
    bounded retries.
    """

    strategy: IngestStrategy = IngestStrategy.UPLOAD

    # Whether distinct entity types may be extracted concurrently.
    supports_parallel: bool = False

    # Vendor calls that may be in flight at once.
    max_concurrent_calls: int = 1

    def __init__(self, vendor: str, retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize the connector.

        Args:
            vendor: Source vendor identifier
            retry_policy: Deadline and retry settings for vendor calls
        """
        self.vendor = vendor
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_retry: Optional[RetryCallback] = None
        self._cancel_check: Callable[[], bool] = lambda: False
        self._warnings: List[str] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    @abstractmethod
    def login(self, credentials: Dict[str, Any]) -> None:
        """
        Authenticate against the source.

        Raises:
            VendorConnectionError: Login failed
        """
        pass

    @abstractmethod
    def discover_entities(self) -> List[EntityDiscovery]:
        """
        List the entity types the source exposes.

        Returns:
            One EntityDiscovery per canonical entity type found
        """
        pass

    @abstractmethod
    def extract_entity(self, entity_type: str) -> Iterator[RawRecord]:
        """
        Lazily extract every record of one canonical entity type.

        Each call starts a fresh extraction. Pagination is internal and
        checks for a pause request before every page.

        Args:
            entity_type: Canonical entity type (e.g. "patient")

        Yields:
            RawRecord objects
        """
        pass

    def set_cancel_check(self, check: Callable[[], bool]) -> None:
        """Install the run-level cancellation flag reader."""
        self._cancel_check = check

    def check_cancelled(self) -> None:
        """Page boundary: stop if a pause was requested."""
        if self._cancel_check():
            logger.info(f"{self.vendor}: pause requested, stopping at page boundary")
            raise ExtractionCancelled("Extraction paused at page boundary")

    def call_vendor(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Call the vendor with the connector's deadline and retry policy."""
        return self.retry_policy.call(func, *args, on_retry=self.on_retry, attempt=self._attempt, **kwargs)

    def _attempt(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return call_with_deadline(
                func,
                self.retry_policy.timeout,
                *args,
                executor=self._call_executor(),
                **kwargs
            )
        except VendorTimeoutError:
            self._retire_transport()
            raise

    def _call_executor(self) -> ThreadPoolExecutor:
        """The connector's worker pool for deadline-bound vendor calls."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, self.max_concurrent_calls),
                    thread_name_prefix=f"{self.vendor}-call",
                )
            return self._executor

    def _retire_transport(self) -> None:
        """
        Drop the pool and transport a timed-out call may still be using.

        The stuck worker keeps running on the old pool with the old
        transport; the retry gets a fresh worker and a fresh transport.
        """
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        logger.warning(f"{self.vendor}: vendor call timed out, resetting transport")
        self.reset_transport()

    def reset_transport(self) -> None:
        """Replace network sessions after a timed-out call. No-op by default."""
        pass

    def create_record(
        self,
        entity_type: str,
        data: Dict[str, Any],
        page: int = 0,
        index: int = 0,
        id_field: Optional[str] = None
    ) -> RawRecord:
        """Create a RawRecord from vendor data."""
        return RawRecord(
            source_id=resolve_source_id(data, entity_type, page, index, id_field),
            entity_type=entity_type,
            data=data,
            extracted_at=datetime.utcnow(),
        )

    def add_warning(self, message: str) -> None:
        """Add a warning to the extraction."""
        self._warnings.append(message)
        logger.warning(f"Connector warning ({self.vendor}): {message}")

    @property
    def warnings(self) -> List[str]:
        return list(self._warnings)

    def artifacts(self) -> Dict[str, Any]:
        """Extra JSON artifacts the connector wants stored after discovery."""
        return {}

    def close(self) -> None:
        """Release network resources."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
