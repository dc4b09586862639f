"""View models returned by the sync services."""

from .appointment import AppointmentModel
from .base import BaseSyncModel
from .patient import PatientModel

__all__ = ["AppointmentModel", "BaseSyncModel", "PatientModel"]
