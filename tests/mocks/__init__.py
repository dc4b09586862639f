"""Mock Services Package for Telehealth Sync.

The FHIR server is the only external service replaced in tests; the database
is a real SQLite file.
"""

from .fhir_server import BASE_URL, InMemoryFHIRServer, operation_outcome

__all__ = ["BASE_URL", "InMemoryFHIRServer", "operation_outcome"]
