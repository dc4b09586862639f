"""Patient view model.

Carries the merged view of a patient: clinical fields from the FHIR server
plus the local mirror's encrypted name and owner. Email syntax and gender
vocabulary are checked by the sync service, which audits the rejection.
"""

import uuid
from typing import Optional

from pydantic import ConfigDict, Field

from telehealth_sync.schemas.base import BaseSyncModel


class PatientModel(BaseSyncModel):
    """Patient as exchanged with callers of the sync service."""

    id: Optional[uuid.UUID] = Field(None, description="Local mirror id")
    fhir_patient_id: Optional[str] = Field(
        None, description="FHIR Patient id, assigned by the server on create"
    )
    first_name: str = Field("", description="Given name")
    last_name: str = Field("", description="Family name")
    birth_date: str = Field(
        "",
        pattern=r"^(\d{4}(-\d{2}(-\d{2})?)?)?$",
        description="Birth date as YYYY-MM-DD",
    )
    gender: Optional[str] = Field(
        None, description="Administrative gender: male, female, other or unknown"
    )
    email: str = Field("", description="Email contact point")
    phone_number: str = Field("", description="Phone contact point")
    user_id: Optional[str] = Field(None, description="Owning user identity")
    encrypted_name: Optional[str] = Field(
        None, description="Ciphertext of the full name as stored locally"
    )

    @property
    def full_name(self) -> str:
        """Full name as encrypted into the local mirror."""
        return f"{self.first_name} {self.last_name}"

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "first_name": "Jane",
                "last_name": "Doe",
                "birth_date": "1990-01-01",
                "gender": "female",
                "email": "jane@example.com",
                "phone_number": "555-0100",
            }
        }
    )
