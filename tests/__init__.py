"""Telehealth Sync Test Suite.

This test suite enforces:
- FHIR R4 mapping for Patient and Appointment resources
- PHI encryption for names and appointment notes
- Complete audit trails for every sync operation
"""
