"""Service layer for business logic. Handles FHIR Resource validation."""

from .appointment_service import AppointmentSyncService
from .base import BaseSyncService
from .patient_service import DeletionResult, PatientSyncService, is_valid_email

__all__ = [
    "AppointmentSyncService",
    "BaseSyncService",
    "DeletionResult",
    "PatientSyncService",
    "is_valid_email",
]
