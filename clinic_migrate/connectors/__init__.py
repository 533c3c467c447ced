"""Vendor connectors that produce raw records."""

from .base import BaseConnector
from .api_connector import APIConnector
from .browser_connector import BrowserConnector, HTTPNavigationAgent, NavigationAgent
from .upload_connector import UploadConnector
from .registry import ConnectorRegistry

__all__ = [
    "BaseConnector",
    "APIConnector",
    "BrowserConnector",
    "HTTPNavigationAgent",
    "NavigationAgent",
    "UploadConnector",
    "ConnectorRegistry",
]
