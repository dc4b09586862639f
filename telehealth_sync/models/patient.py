"""Patient database model.

Local mirror of a FHIR Patient resource. Only the fields needed for identity
linkage and duplicate lookups are kept; the full name is stored encrypted.
"""

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin

if TYPE_CHECKING:
    from .appointment import Appointment


class Patient(BaseModel, TimestampMixin):
    """Local patient mirror row."""

    __tablename__ = "patients"

    fhir_patient_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    # Not unique: the same email may belong to distinct remote identities.
    email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    encrypted_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    user_id: Mapped[Optional[str]] = mapped_column(
        String(450), nullable=True, index=True
    )

    appointments: Mapped[List["Appointment"]] = relationship(
        "Appointment", back_populates="patient", passive_deletes="all"
    )

    __table_args__ = (Index("idx_patient_email_fhir", "email", "fhir_patient_id"),)

    @property
    def is_orphaned(self) -> bool:
        """Whether no identity principal owns this record."""
        return self.user_id is None

    def __repr__(self) -> str:
        """Return string representation without PHI."""
        return f"<Patient(id={self.id}, fhir_patient_id={self.fhir_patient_id})>"
