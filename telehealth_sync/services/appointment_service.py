"""Appointment sync service.

Schedules, reads, reschedules and cancels appointments on the FHIR server
and keeps the local appointment mirror in step. Scheduling conflicts are
detected across both stores before anything is written.

This service handles encrypted appointment notes (PHI) with audit logging.
Manages FHIR Appointment Resource validation.
"""

import asyncio
import uuid
from datetime import datetime
from typing import Optional, Tuple

from fhirclient.models.appointment import Appointment as FHIRAppointment

from telehealth_sync.audit.audit_service import AuditTrailService
from telehealth_sync.core.exceptions import (
    ConflictError,
    NotFoundError,
    RemoteFailure,
    ValidationError,
)
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.healthcare.fhir_resources import (
    apply_appointment_changes,
    build_appointment,
    from_instant,
    status_from_remote,
    to_utc,
)
from telehealth_sync.models.appointment import Appointment
from telehealth_sync.models.patient import Patient
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.schemas.appointment import AppointmentModel
from telehealth_sync.security.encryption import EncryptionCodec
from telehealth_sync.services.base import BaseSyncService, require
from telehealth_sync.sync.detectors import ConflictDetector, ConflictMatches
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)


class AppointmentSyncService(BaseSyncService):
    """Service for managing appointments across the local mirror and FHIR server."""

    resource_type = "Appointment"

    def __init__(
        self,
        store: LocalStore,
        fhir_client: FHIRClient,
        audit: AuditTrailService,
        codec: EncryptionCodec,
        detector_timeout: Optional[float] = None,
    ) -> None:
        """Initialize service; ``detector_timeout`` bounds conflict lookups."""
        super().__init__(store, fhir_client, audit, codec)
        self.conflicts = ConflictDetector(store, fhir_client)
        self.detector_timeout = detector_timeout

    async def check_conflicts(
        self,
        patient_id: Optional[uuid.UUID],
        start: datetime,
        end: datetime,
        exclude_local_id: Optional[uuid.UUID] = None,
        exclude_remote_id: Optional[str] = None,
    ) -> ConflictMatches:
        """Appointments of the patient overlapping ``[start, end)`` in either store."""
        if patient_id is None:
            return ConflictMatches()
        return await self.conflicts.find(
            patient_id,
            start,
            end,
            exclude_local_id=exclude_local_id,
            exclude_remote_id=exclude_remote_id,
            timeout=self.detector_timeout,
        )

    async def _resolve_patient(self, patient_id: Optional[uuid.UUID]) -> Optional[Patient]:
        """Local patient with a FHIR id, or None."""
        if patient_id is None:
            return None
        patient = await self.store.get_patient_by_id(patient_id)
        if patient is None or not patient.fhir_patient_id:
            return None
        return patient

    @staticmethod
    def _time_range(appointment: AppointmentModel) -> Tuple[datetime, datetime]:
        return to_utc(appointment.start_time), to_utc(appointment.end_time)

    # Create

    async def create_appointment(
        self, appointment: AppointmentModel, actor_id: str
    ) -> AppointmentModel:
        """Schedule an appointment on the FHIR server and mirror it locally.

        Args:
            appointment: Appointment details; ``patient_id`` is the local patient
            actor_id: User performing the operation

        Returns:
            The appointment with its local id and server-assigned FHIR id

        Raises:
            ValidationError: if the end time is not after the start time
            ConflictError: if the patient already has an overlapping appointment
            NotFoundError: if the patient is unknown or has no FHIR id
            RemoteFailure: if the FHIR server rejects the appointment
            UnexpectedError: on any other failure
        """
        require(actor_id, "User ID")
        start, end = self._time_range(appointment)
        window = {
            "PatientId": appointment.patient_id,
            "StartTime": start,
            "EndTime": end,
        }

        async with self.audited_failures(actor_id, "CREATE_APPOINTMENT"):
            if end <= start:
                await self.fail(
                    actor_id,
                    "CREATE_APPOINTMENT_INVALID_TIME_RANGE",
                    ValidationError("End time must be after start time."),
                    window,
                )

            matches = await self.check_conflicts(appointment.patient_id, start, end)
            if matches.found:
                await self.fail(
                    actor_id,
                    "CREATE_APPOINTMENT_CONFLICT",
                    ConflictError(
                        "Scheduling conflict detected. Please choose a different time."
                    ),
                    {
                        **window,
                        "LocalCount": len(matches.local),
                        "FhirCount": len(matches.remote),
                    },
                )

            patient = await self._resolve_patient(appointment.patient_id)
            if patient is None:
                await self.fail(
                    actor_id,
                    "CREATE_APPOINTMENT_FAILED_PATIENT_NOT_FOUND",
                    NotFoundError(
                        f"Patient with local ID {appointment.patient_id} not found "
                        "or has no associated FHIR ID."
                    ),
                    {"PatientId": appointment.patient_id},
                )

            resource = build_appointment(
                fhir_patient_id=patient.fhir_patient_id or "",
                start=start,
                end=end,
                status=appointment.status,
                description=appointment.description,
            )

        # Once the remote write starts the operation runs to completion
        return await asyncio.shield(
            self._write_new_appointment(appointment, patient, resource, actor_id)
        )

    async def _write_new_appointment(
        self,
        appointment: AppointmentModel,
        patient: Patient,
        resource: FHIRAppointment,
        actor_id: str,
    ) -> AppointmentModel:
        start, end = self._time_range(appointment)

        async with self.audited_failures(actor_id, "CREATE_APPOINTMENT") as scope:
            created = await self.fhir_client.create_appointment(resource)
            scope.resource_id = created.id

            local = await self.store.upsert_appointment(
                Appointment(
                    fhir_appointment_id=created.id,
                    patient_id=patient.id,
                    start_time=start,
                    end_time=end,
                    status=appointment.status.value,
                    description=self.codec.encrypt(appointment.description) or None,
                )
            )

            await self.record(
                actor_id,
                "CREATE_APPOINTMENT_SUCCESS",
                {"FhirAppointmentId": created.id, "PatientId": patient.id},
                created.id,
            )

        logger.info(
            "appointment_created",
            fhir_appointment_id=created.id,
            appointment_id=str(local.id),
            patient_id=str(patient.id),
        )
        return appointment.model_copy(
            update={
                "id": local.id,
                "fhir_appointment_id": created.id,
                "start_time": start,
                "end_time": end,
            }
        )

    # Read

    async def get_appointment(
        self, fhir_appointment_id: str, actor_id: str
    ) -> AppointmentModel:
        """Read an appointment from the FHIR server, enriched with its local mirror.

        Times and status come from the FHIR resource; the local id, patient
        id and decrypted description come from the mirror when it exists.

        Raises:
            NotFoundError: if the FHIR server has no such appointment
            RemoteFailure: if the FHIR server fails the read
            UnexpectedError: on any other failure
        """
        require(fhir_appointment_id, "FHIR Appointment ID")
        require(actor_id, "User ID")

        async with self.audited_failures(
            actor_id, "GET_APPOINTMENT", fhir_appointment_id
        ):
            remote = await self.fhir_client.get_appointment(fhir_appointment_id)
            if remote is None:
                await self.fail(
                    actor_id,
                    "GET_APPOINTMENT_FAILED_NOT_FOUND",
                    NotFoundError(
                        f"Appointment with FHIR ID {fhir_appointment_id} not found."
                    ),
                    {"FhirAppointmentId": fhir_appointment_id, "Status": "NotFound"},
                    fhir_appointment_id,
                )

            local = await self.store.get_appointment_by_remote_id(fhir_appointment_id)
            start = from_instant(remote.start)
            end = from_instant(remote.end)
            if start is None or end is None:
                raise ValueError(
                    f"Appointment {fhir_appointment_id} has no start or end instant"
                )

            model = AppointmentModel(
                id=local.id if local else None,
                fhir_appointment_id=remote.id or fhir_appointment_id,
                patient_id=local.patient_id if local else None,
                start_time=start,
                end_time=end,
                status=status_from_remote(remote.status),
                description=self.codec.decrypt(local.description) if local else None,
            )

            await self.record(
                actor_id,
                "GET_APPOINTMENT_SUCCESS",
                {"FhirAppointmentId": fhir_appointment_id},
                fhir_appointment_id,
            )

        return model

    # Update

    async def update_appointment(
        self, appointment: AppointmentModel, actor_id: str
    ) -> AppointmentModel:
        """Reschedule or otherwise change an appointment in both stores.

        The fetched FHIR resource is changed in place: its patient
        participant is repointed at the (possibly new) patient, or one is
        appended if none exists. Conflict detection ignores the appointment's
        own local and remote records.

        Raises:
            ValidationError: if the end time is not after the start time
            NotFoundError: if the appointment or the patient does not exist
            ConflictError: if the new time overlaps another appointment
            RemoteFailure: if the FHIR server rejects the update
            UnexpectedError: on any other failure
        """
        require(actor_id, "User ID")
        fhir_appointment_id = require(
            appointment.fhir_appointment_id, "FHIR Appointment ID"
        )
        start, end = self._time_range(appointment)
        window = {
            "FhirAppointmentId": fhir_appointment_id,
            "StartTime": start,
            "EndTime": end,
        }

        async with self.audited_failures(
            actor_id, "UPDATE_APPOINTMENT", fhir_appointment_id
        ):
            if end <= start:
                await self.fail(
                    actor_id,
                    "UPDATE_APPOINTMENT_INVALID_TIME_RANGE",
                    ValidationError("End time must be after start time."),
                    window,
                    fhir_appointment_id,
                )

            remote = await self.fhir_client.get_appointment(fhir_appointment_id)
            if remote is None:
                await self.fail(
                    actor_id,
                    "UPDATE_APPOINTMENT_FAILED_NOT_FOUND",
                    NotFoundError(
                        f"Appointment with FHIR ID {fhir_appointment_id} not found."
                    ),
                    {"FhirAppointmentId": fhir_appointment_id, "Status": "NotFound"},
                    fhir_appointment_id,
                )

            local = await self.store.get_appointment_by_remote_id(fhir_appointment_id)
            matches = await self.check_conflicts(
                appointment.patient_id,
                start,
                end,
                exclude_local_id=local.id if local else None,
                exclude_remote_id=fhir_appointment_id,
            )
            if matches.found:
                await self.fail(
                    actor_id,
                    "UPDATE_APPOINTMENT_CONFLICT",
                    ConflictError("Scheduling conflict detected with another appointment."),
                    {
                        **window,
                        "LocalCount": len(matches.local),
                        "FhirCount": len(matches.remote),
                    },
                    fhir_appointment_id,
                )

            patient = await self._resolve_patient(appointment.patient_id)
            if patient is None:
                await self.fail(
                    actor_id,
                    "UPDATE_APPOINTMENT_FAILED_PATIENT_NOT_FOUND",
                    NotFoundError(
                        f"Patient with local ID {appointment.patient_id} not found "
                        "or has no associated FHIR ID for updating appointment."
                    ),
                    {"PatientId": appointment.patient_id},
                    fhir_appointment_id,
                )

            apply_appointment_changes(
                remote,
                fhir_patient_id=patient.fhir_patient_id or "",
                start=start,
                end=end,
                status=appointment.status,
                description=appointment.description,
            )

        return await asyncio.shield(
            self._write_appointment_update(appointment, patient, remote, local, actor_id)
        )

    async def _write_appointment_update(
        self,
        appointment: AppointmentModel,
        patient: Patient,
        resource: FHIRAppointment,
        local: Optional[Appointment],
        actor_id: str,
    ) -> AppointmentModel:
        fhir_appointment_id = appointment.fhir_appointment_id or ""
        start, end = self._time_range(appointment)

        async with self.audited_failures(
            actor_id, "UPDATE_APPOINTMENT", fhir_appointment_id
        ):
            updated = await self.fhir_client.update_appointment(
                fhir_appointment_id, resource
            )

            if local is not None:
                local.patient_id = patient.id
                local.start_time = start
                local.end_time = end
                local.status = appointment.status.value
                local.description = self.codec.encrypt(appointment.description) or None
                local = await self.store.upsert_appointment(local)

            await self.record(
                actor_id,
                "UPDATE_APPOINTMENT_SUCCESS",
                {"FhirAppointmentId": fhir_appointment_id, "PatientId": patient.id},
                fhir_appointment_id,
            )

        logger.info(
            "appointment_updated",
            fhir_appointment_id=fhir_appointment_id,
            local_mirror=local is not None,
        )
        return appointment.model_copy(
            update={
                "id": local.id if local else None,
                "fhir_appointment_id": updated.id or fhir_appointment_id,
                "start_time": start,
                "end_time": end,
            }
        )

    # Delete

    async def delete_appointment(self, fhir_appointment_id: str, actor_id: str) -> bool:
        """Delete an appointment from the FHIR server, then from the local mirror.

        When the FHIR server refuses, the local row is left untouched. A
        missing local row is not an error.

        Raises:
            RemoteFailure: if the FHIR server does not delete the appointment
            UnexpectedError: on any other failure
        """
        require(fhir_appointment_id, "FHIR Appointment ID")
        require(actor_id, "User ID")

        return await asyncio.shield(
            self._write_appointment_delete(fhir_appointment_id, actor_id)
        )

    async def _write_appointment_delete(
        self, fhir_appointment_id: str, actor_id: str
    ) -> bool:
        async with self.audited_failures(
            actor_id, "DELETE_APPOINTMENT", fhir_appointment_id
        ):
            success, reason = await self.fhir_client.delete_appointment(
                fhir_appointment_id
            )
            if not success:
                await self.fail(
                    actor_id,
                    "DELETE_APPOINTMENT_FAILED_REMOTE",
                    RemoteFailure(
                        f"Failed to delete appointment from FHIR server: {reason}"
                    ),
                    {
                        "FhirAppointmentId": fhir_appointment_id,
                        "Status": "FhirDeleteFailed",
                        "Reason": reason,
                    },
                    fhir_appointment_id,
                )

            local = await self.store.get_appointment_by_remote_id(fhir_appointment_id)
            if local is not None:
                await self.store.delete_appointment(local)

            await self.record(
                actor_id,
                "DELETE_APPOINTMENT_SUCCESS",
                {"FhirAppointmentId": fhir_appointment_id},
                fhir_appointment_id,
            )

        logger.info(
            "appointment_deleted",
            fhir_appointment_id=fhir_appointment_id,
            local_mirror=local is not None,
        )
        return True
