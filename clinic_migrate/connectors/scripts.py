"""Per-vendor navigation scripts for the browser automation connector."""

import logging
from typing import Any, Dict, List, Optional, Type

from ..models.canonical import resolve_entity_type

logger = logging.getLogger(__name__)

DISCOVERY_SCHEMA = {
    "type": "object",
    "properties": {
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "available": {"type": "boolean"},
                    "estimatedCount": {"type": "number"},
                },
                "required": ["name"],
            },
        },
    },
    "required": ["sections"],
}

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "records": {"type": "array", "items": {"type": "object"}},
        "hasNextPage": {"type": "boolean"},
    },
    "required": ["records", "hasNextPage"],
}


class NavigationScript:
    """
    Natural-language hints that steer the navigation agent through one
    vendor's web app.

    The generic script works on most admin portals; vendor subclasses
    override section names and wording where the generic hints fail.
    """

    vendor = "generic"

    # Vendor section label -> canonical entity type
    SECTION_MAP: Dict[str, str] = {}

    # Canonical entity type -> what to look for on screen
    ENTITY_HINTS: Dict[str, str] = {
        "patient": "patient or client list with names, emails, phone numbers and dates of birth",
        "appointment": "appointment list with patient, provider, service, start time and status",
        "chart": "chart or treatment notes with patient, provider and note sections",
        "invoice": "invoices or sales with patient, status, total and line items",
        "consent": "signed consent forms with patient, form name and signed date",
        "photo": "patient photos with their image URLs and dates",
        "document": "patient documents with title, type and file URL",
        "encounter": "visit records with patient, provider and visit date",
    }

    def login_steps(self, credentials: Dict[str, Any]) -> List[str]:
        """Instructions that sign in with the given credentials."""
        return [
            f"Type \"{credentials.get('username') or credentials.get('email', '')}\" into the email or username field",
            f"Type \"{credentials.get('password', '')}\" into the password field",
            "Click the sign in or log in button and wait for the dashboard to load",
        ]

    def discovery_instruction(self) -> str:
        return (
            "List every section in the main navigation that holds clinic data "
            "(patients/clients, appointments, charts, invoices, forms, photos, documents). "
            "For each section give its name, whether it is accessible, and an estimated record count if shown."
        )

    def section_entity(self, section_name: str) -> Optional[str]:
        """Map a navigation section label to a canonical entity type."""
        for label, entity_type in self.SECTION_MAP.items():
            if label.lower() == section_name.strip().lower():
                return entity_type
        return resolve_entity_type(section_name)

    def section_name(self, entity_type: str) -> str:
        """Label to click for an entity type."""
        for label, mapped in self.SECTION_MAP.items():
            if mapped == entity_type:
                return label
        return entity_type.capitalize() + "s"

    def navigate_instruction(self, entity_type: str) -> str:
        return f"Open the {self.section_name(entity_type)} section from the main navigation"

    def extraction_instruction(self, entity_type: str) -> str:
        hint = self.ENTITY_HINTS.get(entity_type, f"{entity_type} records")
        return (
            f"Extract every row visible on this page of the {hint}. "
            "Include each record's identifier as 'id' when one is shown. "
            "Set hasNextPage to true only if a next page control is enabled."
        )

    def next_page_instruction(self) -> str:
        return "Click the next page button and wait for the list to reload"


class BoulevardScript(NavigationScript):
    """Boulevard admin dashboard."""

    vendor = "boulevard"

    SECTION_MAP = {
        "Clients": "patient",
        "Calendar": "appointment",
        "Appointments": "appointment",
        "Sales": "invoice",
        "Forms": "consent",
    }

    def login_steps(self, credentials: Dict[str, Any]) -> List[str]:
        return [
            f"Type \"{credentials.get('email') or credentials.get('username', '')}\" into the Email field",
            f"Type \"{credentials.get('password', '')}\" into the Password field",
            "Click \"Log In\" and wait for the Boulevard dashboard",
        ]

    def navigate_instruction(self, entity_type: str) -> str:
        if entity_type == "appointment":
            return "Open Calendar, switch to list view and select the widest available date range"
        return super().navigate_instruction(entity_type)


class AestheticsProScript(NavigationScript):
    """AestheticsPro online portal."""

    vendor = "aesthetics_record"

    SECTION_MAP = {
        "Clients": "patient",
        "Appointments": "appointment",
        "Treatment Notes": "chart",
        "Invoices": "invoice",
        "Consent Forms": "consent",
        "Before & After": "photo",
    }


SCRIPT_REGISTRY: Dict[str, Type[NavigationScript]] = {
    "boulevard": BoulevardScript,
    "aesthetics_record": AestheticsProScript,
    "aestheticspro": AestheticsProScript,
}


def register_script(vendor: str, script_cls: Type[NavigationScript]) -> None:
    """Register a navigation script for a vendor."""
    SCRIPT_REGISTRY[vendor.lower()] = script_cls


def get_script(vendor: str) -> NavigationScript:
    """Get the script for a vendor, falling back to the generic one."""
    script_cls = SCRIPT_REGISTRY.get((vendor or "").lower(), NavigationScript)
    if script_cls is NavigationScript:
        logger.info(f"No navigation script for '{vendor}', using generic script")
    return script_cls()
