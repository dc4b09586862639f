"""Core Exceptions Module.

Typed failures surfaced by the sync services. The boundary layer maps each
class to a transport status code.
"""

from typing import Optional


class TelehealthSyncError(Exception):
    """Base exception for all Telehealth Sync errors."""

    # Set once the failure has been written to the audit trail
    audited: bool = False


class ValidationError(TelehealthSyncError):
    """Raised when input is malformed (bad time range, bad email syntax)."""


class ConflictError(TelehealthSyncError):
    """Raised on a business-rule violation such as an overlap or duplicate."""


class NotFoundError(TelehealthSyncError):
    """Raised when a referenced patient or appointment does not exist."""


class RemoteFailure(TelehealthSyncError):
    """Raised when the FHIR server rejects or cannot perform an operation."""

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        """Keep the server-reported reason verbatim."""
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class UnexpectedError(TelehealthSyncError):
    """Opaque failure for anything outside the taxonomy above."""


class ConfigurationError(TelehealthSyncError):
    """Raised when configuration is invalid or missing."""
