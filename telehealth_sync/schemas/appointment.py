"""Appointment view model."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import ConfigDict, Field

from telehealth_sync.models.appointment import AppointmentStatus
from telehealth_sync.schemas.base import BaseSyncModel


class AppointmentModel(BaseSyncModel):
    """Appointment as exchanged with callers of the sync service.

    ``patient_id`` is the local patient id. It is ``None`` on a read when the
    appointment has no local mirror row.
    """

    id: Optional[uuid.UUID] = Field(None, description="Local mirror id")
    fhir_appointment_id: Optional[str] = Field(
        None, description="FHIR Appointment id, assigned by the server on create"
    )
    patient_id: Optional[uuid.UUID] = Field(None, description="Local patient id")
    start_time: datetime = Field(..., description="Start instant (UTC)")
    end_time: datetime = Field(..., description="End instant (UTC), after start")
    status: AppointmentStatus = Field(AppointmentStatus.BOOKED)
    description: Optional[str] = Field(None, description="Free-text notes (PHI)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "patient_id": "4f1c2b7e-8a4d-4d5e-9c7b-2a1e3f4d5c6b",
                "start_time": "2025-01-01T09:00:00Z",
                "end_time": "2025-01-01T09:30:00Z",
                "status": "Booked",
                "description": "Follow-up consultation",
            }
        }
    )
