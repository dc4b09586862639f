"""Appointment database model."""

import enum
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin
from .db_types import UUID, UTCDateTime

if TYPE_CHECKING:
    from .patient import Patient


class AppointmentStatus(enum.Enum):
    """Local appointment status.

    InProgress and Other have no FHIR counterpart; Unknown is the landing
    value for unrecognised remote codes.
    """

    PROPOSED = "Proposed"
    PENDING = "Pending"
    BOOKED = "Booked"
    ARRIVED = "Arrived"
    FULFILLED = "Fulfilled"
    CANCELLED = "Cancelled"
    NO_SHOW = "NoShow"
    IN_PROGRESS = "InProgress"
    CHECKED_IN = "CheckedIn"
    ENTERED_IN_ERROR = "EnteredInError"
    WAITLIST = "Waitlist"
    OTHER = "Other"
    UNKNOWN = "Unknown"


class Appointment(BaseModel, TimestampMixin):
    """Local appointment mirror row."""

    __tablename__ = "appointments"

    fhir_appointment_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    patient_id: Mapped[uuid.UUID] = mapped_column(
        UUID(), ForeignKey("patients.id", ondelete="RESTRICT"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AppointmentStatus.UNKNOWN.value
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    patient: Mapped["Patient"] = relationship("Patient", back_populates="appointments")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_appointment_time_range"),
        Index("idx_appointment_patient_range", "patient_id", "start_time", "end_time"),
    )

    @property
    def status_enum(self) -> AppointmentStatus:
        """Stored status text as the enum, Unknown when unrecognised."""
        try:
            return AppointmentStatus(self.status)
        except ValueError:
            return AppointmentStatus.UNKNOWN
