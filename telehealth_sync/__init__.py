"""Telehealth Sync.

Keeps a local relational mirror of FHIR Patient and Appointment resources in
step with a FHIR server, with an audit trail of every operation.
"""

__version__ = "0.1.0"
