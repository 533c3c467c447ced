"""Ingestion strategy resolution."""

import re
from typing import Any, Iterable, Optional, Pattern, Sequence

from ..models.migration import IngestStrategy

# Vendors with a documented API we can call directly.
API_VENDORS = frozenset({"boulevard", "mock"})

# Platforms the navigation agent knows how to drive.
BROWSER_URL_PATTERNS: Sequence[Pattern] = (
    re.compile(r"boulevard\.io", re.IGNORECASE),
    re.compile(r"aestheticspro\.com", re.IGNORECASE),
    re.compile(r"nextech\.com", re.IGNORECASE),
    re.compile(r"patientnow\.com", re.IGNORECASE),
    re.compile(r"zenoti\.com", re.IGNORECASE),
)


def resolve(
    vendor: Any,
    has_credentials: bool,
    has_uploaded_files: bool,
    source_url: Optional[str] = None,
    api_vendors: Iterable[str] = API_VENDORS,
    browser_patterns: Sequence[Pattern] = BROWSER_URL_PATTERNS
) -> IngestStrategy:
    """
    Pick the ingestion strategy for a source. First match wins:

    1. uploaded files -> upload
    2. known API vendor with credentials -> api
    3. known browser platform URL with credentials -> browser
    4. credentials and any URL -> browser
    5. otherwise -> upload

    Pure and total: any input yields a strategy.
    """
    vendor_key = str(getattr(vendor, "value", vendor) or "").strip().lower()
    url = source_url.strip() if isinstance(source_url, str) else ""

    if has_uploaded_files:
        return IngestStrategy.UPLOAD

    if has_credentials and vendor_key in {v.lower() for v in api_vendors}:
        return IngestStrategy.API

    if has_credentials and url and any(p.search(url) for p in browser_patterns):
        return IngestStrategy.BROWSER

    if has_credentials and url:
        return IngestStrategy.BROWSER

    return IngestStrategy.UPLOAD


def resolve_profile(vendor: Any, source_profile: Optional[dict]) -> IngestStrategy:
    """Resolve from a run's source profile ({credentials, source_url, uploaded_files})."""
    profile = source_profile if isinstance(source_profile, dict) else {}
    return resolve(
        vendor,
        has_credentials=bool(profile.get("credentials")),
        has_uploaded_files=bool(profile.get("uploaded_files")),
        source_url=profile.get("source_url"),
    )
