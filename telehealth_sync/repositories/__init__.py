"""Repository layer for data access.

This package contains the local store that mirrors FHIR Patient and
Appointment resources in the relational database.
"""

from .local_store import LocalStore

__all__: list[str] = ["LocalStore"]
