"""Error taxonomy for migration runs."""

from typing import Any, Dict, Iterable, Optional


class MigrationError(Exception):
    """Base class for all migration errors."""

    code = "migration_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthorizationError(MigrationError):
    """Caller lacks permission for the requested action."""

    code = "authorization_error"


class NotFoundError(MigrationError):
    """Run is missing or belongs to a different clinic."""

    code = "not_found"


class PreconditionError(MigrationError):
    """Operation requested while the run is not in a compatible state."""

    code = "precondition_failed"

    @classmethod
    def expected_status(
        cls,
        action: str,
        current: Any,
        expected: Iterable[Any]
    ) -> "PreconditionError":
        """Build an error naming the state(s) the action requires."""
        names = ", ".join(getattr(s, "value", str(s)) for s in expected)
        current_name = getattr(current, "value", str(current))
        return cls(
            f"Cannot {action} while run is {current_name}; expected one of: {names}",
            {"current": current_name, "expected": names},
        )


class VendorConnectionError(MigrationError):
    """Connector login, navigation or network failure."""

    code = "vendor_connection_error"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True
    ):
        super().__init__(message, details)
        self.retryable = retryable


class VendorTimeoutError(VendorConnectionError):
    """A vendor call outlived its deadline; the worker running it was abandoned."""

    code = "vendor_timeout"


class ExtractionCancelled(MigrationError):
    """Raised at a page or batch boundary once a pause has been requested."""

    code = "cancelled"


class MigrationSystemError(MigrationError):
    """Unexpected fault, carrying a sanitized message only."""

    code = "system_error"

    @classmethod
    def from_exception(cls, phase: str, exc: BaseException) -> "MigrationSystemError":
        """Wrap an unexpected exception without leaking its internals."""
        return cls(
            f"{phase} failed: internal error ({type(exc).__name__})",
            {"phase": phase},
        )


class ValidationFailure:
    """
    Business outcome of a failed validate phase.

    Never raised; returned alongside the validation report so callers can
    tell a failing report apart from a system fault.
    """

    def __init__(self, report: Dict[str, Any]):
        self.report = report

    @property
    def failed_entities(self) -> Dict[str, int]:
        """Entity types with at least one failing record."""
        return {
            entity_type: summary.get("failed", 0)
            for entity_type, summary in self.report.items()
            if summary.get("failed", 0)
        }

    @property
    def message(self) -> str:
        failed = ", ".join(f"{k}={v}" for k, v in sorted(self.failed_entities.items()))
        return f"Validation failed: {failed or 'no records checked'}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": "validation_failure",
            "message": self.message,
            "failed_entities": self.failed_entities,
        }
