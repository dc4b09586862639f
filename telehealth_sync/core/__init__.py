"""Core Module.

This module provides core functionality for the Telehealth Sync system.
"""

from .exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RemoteFailure,
    TelehealthSyncError,
    UnexpectedError,
    ValidationError,
)

__all__ = [
    "TelehealthSyncError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "RemoteFailure",
    "UnexpectedError",
    "ConfigurationError",
]
