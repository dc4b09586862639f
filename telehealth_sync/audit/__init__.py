"""
Audit Trail Module.

Provides the append-only audit trail for patient and appointment operations.
"""

from .audit_service import AuditTrailService, serialize_details

__all__ = ["AuditTrailService", "serialize_details"]
