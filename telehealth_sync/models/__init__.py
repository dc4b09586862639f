"""Database models for Telehealth Sync.

Local mirrors of the FHIR Patient and Appointment resources, plus the audit
trail.
"""

from .appointment import Appointment, AppointmentStatus
from .audit_log import AuditLog
from .base import Base, BaseModel, TimestampMixin
from .patient import Patient

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Patient",
    "Appointment",
    "AppointmentStatus",
    "AuditLog",
]
