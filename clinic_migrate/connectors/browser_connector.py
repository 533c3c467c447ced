"""Browser automation connector driven by an external navigation agent."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional

import requests

from .base import BaseConnector
from .scripts import DISCOVERY_SCHEMA, EXTRACTION_SCHEMA, NavigationScript, get_script
from ..errors import VendorConnectionError
from ..models.migration import IngestStrategy
from ..models.record import AccessMethod, AgentAuditEntry, EntityDiscovery, RawRecord
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 500


class NavigationAgent(ABC):
    """Remote agent that performs natural-language browser actions."""

    @abstractmethod
    def act(self, instruction: str) -> None:
        """Perform one action (click, type, navigate)."""
        pass

    @abstractmethod
    def extract(self, instruction: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        """Return structured JSON matching the schema from the current page."""
        pass

    def reset(self) -> None:
        """Drop the connection a timed-out call may still hold."""
        pass

    def close(self) -> None:
        pass


class HTTPNavigationAgent(NavigationAgent):
    """
    Navigation agent reached over HTTP.

    Protocol:
    - POST {base_url}/act      {"action": instruction}                      -> 2xx
    - POST {base_url}/extract  {"instruction": ..., "extractionSchema": ...} -> JSON
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = 60.0,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"

    def act(self, instruction: str) -> None:
        self._post("/act", {"action": instruction})

    def extract(self, instruction: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        result = self._post("/extract", {"instruction": instruction, "extractionSchema": schema})
        if not isinstance(result, dict):
            raise VendorConnectionError("Navigation agent returned a non-object extraction", retryable=False)
        return result

    def _post(self, path: str, body: Dict[str, Any]) -> Any:
        try:
            response = self._session.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise VendorConnectionError(f"Navigation agent timed out: {type(e).__name__}")
        except requests.ConnectionError as e:
            raise VendorConnectionError(f"Navigation agent unreachable: {type(e).__name__}")

        if response.status_code >= 500 or response.status_code == 429:
            raise VendorConnectionError(f"Navigation agent error (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise VendorConnectionError(
                f"Navigation agent rejected request (HTTP {response.status_code})",
                retryable=False,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise VendorConnectionError("Navigation agent returned invalid JSON")

    def reset(self) -> None:
        previous = self._session
        self._session = requests.Session()
        self._session.headers.update(previous.headers)

    def close(self) -> None:
        self._session.close()


class BrowserConnector(BaseConnector):
    """
    Connector that drives a vendor's web app through a navigation agent.

    Supports:
    - Vendor navigation scripts selected from a registry
    - Paginated extraction while the agent reports hasNextPage
    - An audit trail of every agent request
    """

    strategy = IngestStrategy.BROWSER
    supports_parallel = False  # One agent session, one page at a time

    def __init__(
        self,
        vendor: str,
        agent: NavigationAgent,
        source_url: Optional[str] = None,
        script: Optional[NavigationScript] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_pages: int = DEFAULT_MAX_PAGES
    ):
        """
        Initialize the browser connector.

        Args:
            vendor: Source vendor identifier
            agent: Navigation agent client
            source_url: Login page of the vendor web app
            script: Navigation script (looked up by vendor when omitted)
            retry_policy: Deadline and retry settings
            max_pages: Hard stop for pagination loops
        """
        super().__init__(vendor, retry_policy)
        self.agent = agent
        self.source_url = source_url
        self.script = script or get_script(vendor)
        self.max_pages = max_pages
        self._audit: List[AgentAuditEntry] = []

    def login(self, credentials: Dict[str, Any]) -> None:
        started = time.monotonic()
        if self.source_url:
            self.call_vendor(self.agent.act, f"Go to {self.source_url}")
        for step in self.script.login_steps(credentials):
            self.call_vendor(self.agent.act, step)
        self._record("login", url=self.source_url, started=started)
        logger.info(f"Signed in to {self.vendor} through navigation agent")

    def discover_entities(self) -> List[EntityDiscovery]:
        started = time.monotonic()
        result = self.call_vendor(self.agent.extract, self.script.discovery_instruction(), DISCOVERY_SCHEMA)
        sections = (result or {}).get("sections") or []
        self._record("discover", started=started, record_count=len(sections))

        discoveries: Dict[str, EntityDiscovery] = {}
        for section in sections:
            name = str(section.get("name", "")).strip()
            entity_type = self.script.section_entity(name)
            if not entity_type:
                self.add_warning(f"Ignoring unrecognized section '{name}'")
                continue
            if entity_type in discoveries:
                continue
            count = section.get("estimatedCount")
            discoveries[entity_type] = EntityDiscovery(
                entity_type=entity_type,
                available=bool(section.get("available", True)),
                access_method=AccessMethod.NAVIGATION,
                estimated_count=int(count) if isinstance(count, (int, float)) else None,
                source_entity=name,
            )
        return list(discoveries.values())

    def extract_entity(self, entity_type: str) -> Iterator[RawRecord]:
        started = time.monotonic()
        self.call_vendor(self.agent.act, self.script.navigate_instruction(entity_type))
        self._record("navigate", entity_type=entity_type, started=started)

        instruction = self.script.extraction_instruction(entity_type)
        page = 0
        while True:
            self.check_cancelled()

            started = time.monotonic()
            result = self.call_vendor(self.agent.extract, instruction, EXTRACTION_SCHEMA) or {}
            records = result.get("records") or []
            self._record("extract", entity_type=entity_type, started=started, record_count=len(records))

            for index, data in enumerate(records):
                if isinstance(data, dict):
                    yield self.create_record(entity_type, data, page=page, index=index)

            if not result.get("hasNextPage"):
                break
            if page + 1 >= self.max_pages:
                self.add_warning(f"{entity_type}: stopped after {self.max_pages} pages")
                break

            started = time.monotonic()
            self.call_vendor(self.agent.act, self.script.next_page_instruction())
            self._record("next_page", entity_type=entity_type, started=started)
            page += 1

    def _record(
        self,
        action: str,
        entity_type: Optional[str] = None,
        url: Optional[str] = None,
        started: Optional[float] = None,
        record_count: int = 0
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000) if started is not None else 0
        self._audit.append(AgentAuditEntry(
            action=action,
            entity_type=entity_type,
            url=url,
            record_count=record_count,
            duration_ms=duration_ms,
        ))

    @property
    def audit_log(self) -> List[AgentAuditEntry]:
        return list(self._audit)

    def artifacts(self) -> Dict[str, Any]:
        return {"_browser_audit.json": [entry.to_dict() for entry in self._audit]}

    def reset_transport(self) -> None:
        self.agent.reset()

    def close(self) -> None:
        super().close()
        self.agent.close()
