"""Connector selection keyed by ingestion strategy and vendor."""

import logging
from typing import Callable, Dict, Optional, Tuple

from .base import BaseConnector
from .api_connector import APIConnector
from .browser_connector import BrowserConnector, HTTPNavigationAgent
from .upload_connector import UploadConnector
from ..config import MigrationSettings
from ..errors import PreconditionError, VendorConnectionError
from ..models.migration import IngestStrategy, MigrationRun
from ..services.retry import RetryPolicy
from ..storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[MigrationRun, RetryPolicy], BaseConnector]

ANY_VENDOR = "*"


class ConnectorRegistry:
    """
    Registry of connector factories.

    Lookup tries (strategy, vendor) first and then (strategy, "*"), so a
    vendor gets its own implementation just by registering one.
    """

    def __init__(self):
        self._factories: Dict[Tuple[IngestStrategy, str], ConnectorFactory] = {}

    def register(
        self,
        strategy: IngestStrategy,
        factory: ConnectorFactory,
        vendor: str = ANY_VENDOR
    ) -> None:
        """Register a connector factory."""
        self._factories[(strategy, vendor.lower())] = factory

    def create(self, run: MigrationRun, retry_policy: RetryPolicy) -> BaseConnector:
        """
        Build the connector for a run.

        Raises:
            PreconditionError: Run has no strategy or nothing is registered for it
        """
        if run.ingest_strategy is None:
            raise PreconditionError(f"Run {run.id} has no ingestion strategy")

        vendor = (run.source_vendor or "").lower()
        factory = (
            self._factories.get((run.ingest_strategy, vendor)) or
            self._factories.get((run.ingest_strategy, ANY_VENDOR))
        )
        if factory is None:
            raise PreconditionError(
                f"No {run.ingest_strategy.value} connector registered for vendor '{run.source_vendor}'"
            )
        connector = factory(run, retry_policy)
        logger.debug(f"Run {run.id}: using {type(connector).__name__} for {run.source_vendor}")
        return connector

    @classmethod
    def default(
        cls,
        settings: MigrationSettings,
        artifact_store: Optional[ArtifactStore] = None
    ) -> "ConnectorRegistry":
        """Registry with the real API, browser and upload connectors."""
        registry = cls()

        def api_factory(run: MigrationRun, retry_policy: RetryPolicy) -> BaseConnector:
            return APIConnector(
                run.source_vendor,
                base_url=run.source_profile.get("api_base_url"),
                retry_policy=retry_policy,
            )

        def browser_factory(run: MigrationRun, retry_policy: RetryPolicy) -> BaseConnector:
            agent_url = run.source_profile.get("agent_url") or settings.agent_url
            if not agent_url:
                raise VendorConnectionError("No navigation agent URL configured", retryable=False)
            agent = HTTPNavigationAgent(agent_url, timeout=settings.connector_timeout)
            return BrowserConnector(
                run.source_vendor,
                agent,
                source_url=run.source_profile.get("source_url"),
                retry_policy=retry_policy,
            )

        def upload_factory(run: MigrationRun, retry_policy: RetryPolicy) -> BaseConnector:
            return UploadConnector(
                run.source_vendor,
                files=run.source_profile.get("uploaded_files") or [],
                artifact_store=artifact_store,
                retry_policy=retry_policy,
            )

        registry.register(IngestStrategy.API, api_factory)
        registry.register(IngestStrategy.BROWSER, browser_factory)
        registry.register(IngestStrategy.UPLOAD, upload_factory)
        return registry
