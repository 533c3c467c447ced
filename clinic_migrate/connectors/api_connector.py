"""Connector for vendors with a documented REST API."""

import logging
from typing import Any, Dict, Iterator, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseConnector
from ..errors import VendorConnectionError
from ..models.migration import IngestStrategy
from ..models.record import AccessMethod, EntityDiscovery, RawRecord, get_path
from ..services.retry import RetryPolicy

logger = logging.getLogger(__name__)


class APIConnector(BaseConnector):
    """
    Connector for REST API data sources.

    Supports:
    - Per-vendor configuration (auth, pagination, response shape)
    - Cursor and offset pagination
    - Audited retries for 429/5xx and network errors through RetryPolicy
    - Explicit per-call deadlines
    """

    strategy = IngestStrategy.API
    supports_parallel = True

    # Vendor-specific configurations
    VENDOR_CONFIGS = {
        "boulevard": {
            "base_url": "https://dashboard.boulevard.io/api/2020-01/admin",
            "auth_type": "bearer",
            "login_endpoint": "/business",
            "pagination_type": "cursor",
            "cursor_param": "after",
            "cursor_field": "pageInfo.endCursor",
            "has_more_field": "pageInfo.hasNextPage",
            "count_field": "totalCount",
            "data_field": "data",
            "id_field": "id",
        },
        "mock": {
            "base_url": None,  # Taken from credentials["base_url"]
            "auth_type": "bearer",
            "login_endpoint": "/me",
            "pagination_type": "offset",
            "offset_param": "offset",
            "has_more_field": "has_more",
            "count_field": "total",
            "data_field": "data",
            "id_field": "id",
        },
    }

    # Canonical entity type -> vendor endpoint
    ENTITY_ENDPOINTS = {
        "boulevard": {
            "patient": "/clients",
            "appointment": "/appointments",
            "invoice": "/orders",
        },
        "mock": {
            "patient": "/patients",
            "appointment": "/appointments",
            "chart": "/charts",
            "invoice": "/invoices",
        },
    }

    def __init__(
        self,
        vendor: str,
        base_url: Optional[str] = None,
        page_size: int = 100,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the API connector.

        Args:
            vendor: Vendor key in VENDOR_CONFIGS
            base_url: Override base URL
            page_size: Records requested per page
            retry_policy: Deadline and retry settings
            session: Custom requests session
        """
        super().__init__(vendor, retry_policy)
        self._vendor_config = self.VENDOR_CONFIGS.get(vendor.lower(), {})
        self._endpoints = self.ENTITY_ENDPOINTS.get(vendor.lower(), {})
        self._base_url = base_url or self._vendor_config.get("base_url")
        self.page_size = page_size
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session that leaves retries to the retry policy."""
        session = requests.Session()

        # No transport retries: every retry goes through call_vendor and is audited.
        retries = Retry(total=0, read=False, raise_on_status=False)

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def reset_transport(self) -> None:
        """Swap in a fresh session carrying the same auth; the stuck call keeps the old one."""
        previous = self._session
        session = self._create_session()
        session.headers.update(previous.headers)
        session.auth = previous.auth
        self._session = session

    @property
    def base_url(self) -> str:
        """Get the base URL for API requests."""
        if not self._base_url:
            raise VendorConnectionError(
                f"No API base URL configured for vendor '{self.vendor}'",
                retryable=False,
            )
        return self._base_url.rstrip("/")

    def login(self, credentials: Dict[str, Any]) -> None:
        """Attach credentials to the session and verify them with one request."""
        api_key = credentials.get("api_key") or credentials.get("token")
        if not api_key:
            raise VendorConnectionError("API credentials are missing an api_key", retryable=False)

        self._base_url = credentials.get("base_url") or self._base_url
        if self._vendor_config.get("auth_type", "bearer") == "basic":
            self._session.auth = (api_key, "")
        else:
            self._session.headers["Authorization"] = f"Bearer {api_key}"
        self._session.headers.setdefault("Accept", "application/json")

        self.call_vendor(self._request, "GET", self._vendor_config.get("login_endpoint", "/"))
        logger.info(f"Authenticated against {self.vendor} API")

    def discover_entities(self) -> List[EntityDiscovery]:
        """Check each known endpoint with a one-record request."""
        discoveries = []
        for entity_type, endpoint in self._endpoints.items():
            try:
                payload = self.call_vendor(self._request, "GET", endpoint, {"limit": 1})
            except VendorConnectionError as e:
                if e.retryable:
                    raise
                self.add_warning(f"{entity_type} endpoint unavailable: {e.message}")
                discoveries.append(EntityDiscovery(
                    entity_type=entity_type,
                    available=False,
                    access_method=AccessMethod.API,
                    source_entity=endpoint.strip("/"),
                ))
                continue

            count = get_path(payload, self._vendor_config.get("count_field"))
            discoveries.append(EntityDiscovery(
                entity_type=entity_type,
                available=True,
                access_method=AccessMethod.API,
                estimated_count=int(count) if isinstance(count, (int, float)) else None,
                source_entity=endpoint.strip("/"),
            ))
        return discoveries

    def extract_entity(self, entity_type: str) -> Iterator[RawRecord]:
        """Page through an entity endpoint."""
        endpoint = self._endpoints.get(entity_type)
        if not endpoint:
            self.add_warning(f"No API endpoint for {entity_type}")
            return

        pagination_type = self._vendor_config.get("pagination_type", "offset")
        data_field = self._vendor_config.get("data_field", "data")
        id_field = self._vendor_config.get("id_field", "id")
        cursor: Optional[str] = None
        offset = 0
        page = 0

        while True:
            self.check_cancelled()

            params: Dict[str, Any] = {"limit": self.page_size}
            if pagination_type == "cursor" and cursor:
                params[self._vendor_config.get("cursor_param", "cursor")] = cursor
            elif pagination_type == "offset":
                params[self._vendor_config.get("offset_param", "offset")] = offset

            payload = self.call_vendor(self._request, "GET", endpoint, params)
            items = get_path(payload, data_field) or []

            for index, item in enumerate(items):
                yield self.create_record(entity_type, item, page=page, index=index, id_field=id_field)

            logger.debug(f"{self.vendor} {entity_type}: page {page} returned {len(items)} record(s)")

            has_more = bool(get_path(payload, self._vendor_config.get("has_more_field")))
            if not items or not has_more:
                break

            if pagination_type == "cursor":
                cursor = get_path(payload, self._vendor_config.get("cursor_field"))
                if not cursor:
                    cursor = str(items[-1].get(id_field, ""))
            else:
                offset += len(items)
            page += 1

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Make an API request and translate transport failures."""
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                params=params,
                timeout=self.retry_policy.timeout,
            )
        except requests.Timeout as e:
            raise VendorConnectionError(f"{self.vendor} API timed out: {type(e).__name__}")
        except requests.ConnectionError as e:
            raise VendorConnectionError(f"{self.vendor} API unreachable: {type(e).__name__}")

        if response.status_code in (401, 403):
            raise VendorConnectionError(
                f"{self.vendor} API rejected credentials (HTTP {response.status_code})",
                {"status_code": response.status_code},
                retryable=False,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise VendorConnectionError(
                f"{self.vendor} API error (HTTP {response.status_code})",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise VendorConnectionError(
                f"{self.vendor} API request failed (HTTP {response.status_code})",
                {"status_code": response.status_code, "path": path},
                retryable=False,
            )

        try:
            return response.json()
        except ValueError:
            raise VendorConnectionError(f"{self.vendor} API returned invalid JSON", retryable=False)

    def close(self) -> None:
        super().close()
        self._session.close()
