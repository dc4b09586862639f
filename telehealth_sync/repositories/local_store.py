"""Local relational store for the patient and appointment mirrors.

Every write commits immediately: by the time a write is attempted the remote
resource already exists, so the local row should be durable as soon as
possible.
"""

import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from telehealth_sync.core.exceptions import ConflictError
from telehealth_sync.models.appointment import Appointment
from telehealth_sync.models.patient import Patient
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)


class LocalStore:
    """Data access for Patient and Appointment mirror rows."""

    def __init__(self, session: AsyncSession):
        """Initialize with a request-scoped session."""
        self.session = session

    async def _commit(self) -> None:
        """Commit, leaving the session usable if the commit fails."""
        try:
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    # Patients

    async def get_patient_by_id(self, patient_id: uuid.UUID) -> Optional[Patient]:
        """Patient by local id."""
        return await self.session.get(Patient, patient_id)

    async def get_patient_by_remote_id(self, fhir_patient_id: str) -> Optional[Patient]:
        """Patient by FHIR id."""
        result = await self.session.execute(
            select(Patient).where(Patient.fhir_patient_id == fhir_patient_id)
        )
        return result.scalars().first()

    async def find_patients_by_email(self, email: str) -> List[Patient]:
        """All patients sharing ``email`` (exact match)."""
        result = await self.session.execute(
            select(Patient).where(Patient.email == email)
        )
        return list(result.scalars().all())

    async def upsert_patient(self, patient: Patient) -> Patient:
        """Insert or update a patient row."""
        merged = await self.session.merge(patient)
        await self._commit()
        return merged

    async def has_appointments(self, patient_id: uuid.UUID) -> bool:
        """Whether any appointment references the patient."""
        result = await self.session.execute(
            select(exists().where(Appointment.patient_id == patient_id))
        )
        return bool(result.scalar())

    async def delete_patient(self, patient: Patient) -> None:
        """Delete a patient row.

        Raises:
            ConflictError: if appointments still reference the patient
        """
        if await self.has_appointments(patient.id):
            raise ConflictError(
                f"Patient {patient.id} is still referenced by appointments."
            )

        try:
            await self.session.delete(patient)
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError(
                f"Patient {patient.id} is still referenced by appointments."
            ) from e

    async def find_unowned_patients(self) -> List[Patient]:
        """Patients with no owning user identity."""
        result = await self.session.execute(
            select(Patient).where(Patient.user_id.is_(None))
        )
        return list(result.scalars().all())

    async def delete_patients(self, patients: Sequence[Patient]) -> int:
        """Delete ``patients`` in one statement and return the row count."""
        if not patients:
            return 0
        try:
            result = await self.session.execute(
                delete(Patient).where(Patient.id.in_([p.id for p in patients]))
            )
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        await self._commit()
        return int(result.rowcount or 0)

    # Appointments

    async def get_appointment_by_remote_id(
        self, fhir_appointment_id: str
    ) -> Optional[Appointment]:
        """Appointment by FHIR id."""
        result = await self.session.execute(
            select(Appointment).where(
                Appointment.fhir_appointment_id == fhir_appointment_id
            )
        )
        return result.scalars().first()

    async def get_appointments_for_patient(
        self, patient_id: uuid.UUID
    ) -> List[Appointment]:
        """All appointments of a patient ordered by start."""
        result = await self.session.execute(
            select(Appointment)
            .where(Appointment.patient_id == patient_id)
            .order_by(Appointment.start_time)
        )
        return list(result.scalars().all())

    async def get_appointments_overlapping(
        self,
        patient_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_local_id: Optional[uuid.UUID] = None,
    ) -> List[Appointment]:
        """Appointments of ``patient_id`` intersecting ``[start, end)``."""
        query = select(Appointment).where(
            Appointment.patient_id == patient_id,
            Appointment.start_time < end,
            Appointment.end_time > start,
        )
        if exclude_local_id is not None:
            query = query.where(Appointment.id != exclude_local_id)

        result = await self.session.execute(query.order_by(Appointment.start_time))
        return list(result.scalars().all())

    async def upsert_appointment(self, appointment: Appointment) -> Appointment:
        """Insert or update an appointment row."""
        merged = await self.session.merge(appointment)
        await self._commit()
        return merged

    async def delete_appointment(self, appointment: Appointment) -> None:
        """Delete an appointment row."""
        await self.session.delete(appointment)
        await self._commit()
