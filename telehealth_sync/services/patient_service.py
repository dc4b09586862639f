"""Patient sync service.

Keeps the local patient mirror in step with FHIR Patient resources. Every
operation validates first, checks both stores, writes to the FHIR server,
then writes the local mirror and records one audit event.

This service handles encrypted patient data (PHI) with audit logging.
Manages FHIR Patient Resource validation.
"""

import asyncio
import re
import uuid
from dataclasses import dataclass
from typing import Optional

from fhirclient.models.patient import Patient as FHIRPatient
from sqlalchemy.exc import SQLAlchemyError

from telehealth_sync.audit.audit_service import AuditTrailService
from telehealth_sync.core.exceptions import (
    ConflictError,
    NotFoundError,
    RemoteFailure,
    UnexpectedError,
    ValidationError,
)
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.healthcare.fhir_resources import (
    apply_patient_changes,
    build_patient,
    parse_gender,
    patient_birth_date,
    patient_first_name,
    patient_last_name,
    patient_telecom,
)
from telehealth_sync.models.patient import Patient
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.schemas.patient import PatientModel
from telehealth_sync.security.encryption import EncryptionCodec
from telehealth_sync.services.base import BaseSyncService, require
from telehealth_sync.sync.detectors import DuplicateDetector, DuplicateMatches
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def is_valid_email(email: Optional[str]) -> bool:
    """Whether ``email`` has the ``local@domain.tld`` shape."""
    return bool(email) and EMAIL_PATTERN.fullmatch(email or "") is not None


@dataclass
class DeletionResult:
    """Outcome of a bulk maintenance deletion."""

    success: bool
    count: int
    message: str


class PatientSyncService(BaseSyncService):
    """Service for managing patients across the local mirror and FHIR server."""

    resource_type = "Patient"

    def __init__(
        self,
        store: LocalStore,
        fhir_client: FHIRClient,
        audit: AuditTrailService,
        codec: EncryptionCodec,
        detector_timeout: Optional[float] = None,
    ) -> None:
        """Initialize service; ``detector_timeout`` bounds duplicate lookups."""
        super().__init__(store, fhir_client, audit, codec)
        self.duplicates = DuplicateDetector(store, fhir_client)
        self.detector_timeout = detector_timeout

    async def check_duplicates(
        self,
        email: str,
        exclude_local_id: Optional[uuid.UUID] = None,
        exclude_remote_id: Optional[str] = None,
    ) -> DuplicateMatches:
        """Patients in either store sharing ``email``."""
        return await self.duplicates.find(
            email,
            exclude_local_id=exclude_local_id,
            exclude_remote_id=exclude_remote_id,
            timeout=self.detector_timeout,
        )

    def _gender(self, patient: PatientModel, operation: str) -> Optional[str]:
        gender = parse_gender(patient.gender)
        if patient.gender and gender is None:
            # Non-fatal: the value is dropped and the write goes ahead
            logger.warning(
                "invalid_patient_gender",
                operation=operation,
                fhir_patient_id=patient.fhir_patient_id,
                gender=patient.gender,
            )
        return gender

    # Create

    async def create_patient(self, patient: PatientModel, actor_id: str) -> PatientModel:
        """Create a patient on the FHIR server and mirror it locally.

        Args:
            patient: Patient details; ``fhir_patient_id`` is ignored
            actor_id: User performing the operation

        Returns:
            The patient with the server-assigned FHIR id and encrypted name

        Raises:
            ValidationError: if the email is malformed
            ConflictError: if the email is already used in either store
            RemoteFailure: if the FHIR server rejects the patient
            UnexpectedError: on any other failure
        """
        require(actor_id, "User ID")

        async with self.audited_failures(actor_id, "CREATE_PATIENT"):
            if not is_valid_email(patient.email):
                await self.fail(
                    actor_id,
                    "CREATE_PATIENT_INVALID_EMAIL_FORMAT",
                    ValidationError("Invalid email format provided."),
                    {"Email": patient.email},
                )

            matches = await self.check_duplicates(patient.email)
            if matches.found:
                await self.fail(
                    actor_id,
                    "CREATE_PATIENT_DUPLICATE_ATTEMPT",
                    ConflictError("Duplicate email found. Manual resolution required."),
                    {
                        "Email": patient.email,
                        "LocalCount": len(matches.local),
                        "FhirCount": len(matches.remote),
                    },
                )

            resource = build_patient(
                first_name=patient.first_name,
                last_name=patient.last_name,
                birth_date=patient.birth_date,
                email=patient.email,
                phone_number=patient.phone_number,
                gender=self._gender(patient, "create"),
            )

        # Once the remote write starts the operation runs to completion
        return await asyncio.shield(self._write_new_patient(patient, resource, actor_id))

    async def _write_new_patient(
        self, patient: PatientModel, resource: FHIRPatient, actor_id: str
    ) -> PatientModel:
        async with self.audited_failures(actor_id, "CREATE_PATIENT") as scope:
            created = await self.fhir_client.create_patient(resource)
            scope.resource_id = created.id

            local = await self.store.upsert_patient(
                Patient(
                    fhir_patient_id=created.id,
                    email=patient.email,
                    encrypted_name=self.codec.encrypt(patient.full_name),
                    user_id=patient.user_id,
                )
            )

            await self.record(
                actor_id,
                "CREATE_PATIENT_SUCCESS",
                {"FhirPatientId": created.id, "Email": patient.email},
                created.id,
            )

        logger.info("patient_created", fhir_patient_id=created.id, patient_id=str(local.id))
        return patient.model_copy(
            update={
                "id": local.id,
                "fhir_patient_id": created.id,
                "encrypted_name": local.encrypted_name,
                "user_id": local.user_id,
            }
        )

    # Read

    async def get_patient(self, fhir_patient_id: str, actor_id: str) -> PatientModel:
        """Read a patient from the FHIR server, enriched with its local mirror.

        Raises:
            NotFoundError: if the FHIR server has no such patient
            RemoteFailure: if the FHIR server fails the read
            UnexpectedError: on any other failure
        """
        require(fhir_patient_id, "FHIR Patient ID")
        require(actor_id, "User ID")

        async with self.audited_failures(actor_id, "GET_PATIENT", fhir_patient_id):
            remote = await self.fhir_client.get_patient(fhir_patient_id)
            if remote is None:
                await self.fail(
                    actor_id,
                    "GET_PATIENT_FAILED_NOT_FOUND",
                    NotFoundError(f"Patient with FHIR ID {fhir_patient_id} not found."),
                    {"FhirPatientId": fhir_patient_id, "Status": "NotFound"},
                    fhir_patient_id,
                )

            local = await self.store.get_patient_by_remote_id(fhir_patient_id)
            model = PatientModel(
                id=local.id if local else None,
                fhir_patient_id=remote.id or fhir_patient_id,
                first_name=patient_first_name(remote),
                last_name=patient_last_name(remote),
                birth_date=patient_birth_date(remote),
                gender=remote.gender,
                email=patient_telecom(remote, "email"),
                phone_number=patient_telecom(remote, "phone"),
                user_id=local.user_id if local else None,
                encrypted_name=local.encrypted_name if local else None,
            )

            await self.record(
                actor_id,
                "GET_PATIENT_SUCCESS",
                {"FhirPatientId": fhir_patient_id},
                fhir_patient_id,
            )

        return model

    # Update

    async def update_patient(self, patient: PatientModel, actor_id: str) -> PatientModel:
        """Update a patient on the FHIR server and in the local mirror.

        Duplicate detection only runs when the email changes, and ignores the
        patient's own local and remote records. The remote resource is
        fetched and changed in place so fields outside the mapping survive.
        The local name ciphertext is always rewritten.

        Raises:
            ValidationError: if the email is malformed
            ConflictError: if another patient already uses the new email
            NotFoundError: if the FHIR server has no such patient
            RemoteFailure: if the FHIR server rejects the update
            UnexpectedError: on any other failure
        """
        require(actor_id, "User ID")
        fhir_patient_id = require(patient.fhir_patient_id, "FHIR Patient ID")

        async with self.audited_failures(actor_id, "UPDATE_PATIENT", fhir_patient_id):
            if not is_valid_email(patient.email):
                await self.fail(
                    actor_id,
                    "UPDATE_PATIENT_INVALID_EMAIL_FORMAT",
                    ValidationError("Invalid email format provided."),
                    {"Email": patient.email},
                    fhir_patient_id,
                )

            current = await self.store.get_patient_by_remote_id(fhir_patient_id)
            if current is None or current.email != patient.email:
                matches = await self.check_duplicates(
                    patient.email,
                    exclude_local_id=current.id if current else None,
                    exclude_remote_id=fhir_patient_id,
                )
                if matches.found:
                    await self.fail(
                        actor_id,
                        "UPDATE_PATIENT_DUPLICATE_ATTEMPT",
                        ConflictError(
                            "Duplicate email found for another patient. "
                            "Manual resolution required."
                        ),
                        {
                            "Email": patient.email,
                            "FhirPatientId": fhir_patient_id,
                            "Status": "DuplicateFound",
                        },
                        fhir_patient_id,
                    )

            remote = await self.fhir_client.get_patient(fhir_patient_id)
            if remote is None:
                await self.fail(
                    actor_id,
                    "UPDATE_PATIENT_FAILED_NOT_FOUND",
                    NotFoundError(f"Patient with FHIR ID {fhir_patient_id} not found."),
                    {"FhirPatientId": fhir_patient_id, "Status": "NotFound"},
                    fhir_patient_id,
                )

            gender = self._gender(patient, "update")
            if patient.gender and gender is None:
                # Invalid value: keep what the server has
                gender = remote.gender

            apply_patient_changes(
                remote,
                first_name=patient.first_name,
                last_name=patient.last_name,
                birth_date=patient.birth_date,
                email=patient.email,
                phone_number=patient.phone_number,
                gender=gender,
            )

        return await asyncio.shield(
            self._write_patient_update(patient, remote, current, actor_id)
        )

    async def _write_patient_update(
        self,
        patient: PatientModel,
        resource: FHIRPatient,
        local: Optional[Patient],
        actor_id: str,
    ) -> PatientModel:
        fhir_patient_id = patient.fhir_patient_id or ""

        async with self.audited_failures(actor_id, "UPDATE_PATIENT", fhir_patient_id):
            updated = await self.fhir_client.update_patient(fhir_patient_id, resource)

            if local is not None:
                local.email = patient.email
                local.encrypted_name = self.codec.encrypt(patient.full_name) or ""
                local.user_id = patient.user_id
                local = await self.store.upsert_patient(local)

            await self.record(
                actor_id,
                "UPDATE_PATIENT_SUCCESS",
                {"FhirPatientId": fhir_patient_id, "Email": patient.email},
                fhir_patient_id,
            )

        logger.info(
            "patient_updated",
            fhir_patient_id=fhir_patient_id,
            local_mirror=local is not None,
        )
        return patient.model_copy(
            update={
                "id": local.id if local else None,
                "fhir_patient_id": updated.id or fhir_patient_id,
                "encrypted_name": local.encrypted_name if local else None,
                "user_id": local.user_id if local else None,
            }
        )

    # Delete

    async def delete_patient(self, fhir_patient_id: str, actor_id: str) -> bool:
        """Delete a patient from the FHIR server, then from the local mirror.

        A patient whose local mirror still has appointments is refused before
        anything is deleted, including on the FHIR server. Checking first is
        stricter than deleting remotely and failing on the local foreign key:
        that order would leave the local patient orphaned from a deleted FHIR
        resource. A missing local mirror is not an error.

        Raises:
            ConflictError: if local appointments still reference the patient
            RemoteFailure: if the FHIR server does not delete the patient
            UnexpectedError: on any other failure
        """
        require(fhir_patient_id, "FHIR Patient ID")
        require(actor_id, "User ID")

        async with self.audited_failures(actor_id, "DELETE_PATIENT", fhir_patient_id):
            local = await self.store.get_patient_by_remote_id(fhir_patient_id)
            if local is not None and await self.store.has_appointments(local.id):
                await self.fail(
                    actor_id,
                    "DELETE_PATIENT_FAILED_HAS_APPOINTMENTS",
                    ConflictError(
                        f"Patient with FHIR ID {fhir_patient_id} still has appointments."
                    ),
                    {"FhirPatientId": fhir_patient_id, "Status": "HasAppointments"},
                    fhir_patient_id,
                )

        return await asyncio.shield(
            self._write_patient_delete(fhir_patient_id, local, actor_id)
        )

    async def _write_patient_delete(
        self, fhir_patient_id: str, local: Optional[Patient], actor_id: str
    ) -> bool:
        async with self.audited_failures(actor_id, "DELETE_PATIENT", fhir_patient_id):
            success, reason = await self.fhir_client.delete_patient(fhir_patient_id)
            if not success:
                await self.fail(
                    actor_id,
                    "DELETE_PATIENT_FAILED_REMOTE",
                    RemoteFailure(f"Failed to delete patient from FHIR server: {reason}"),
                    {
                        "FhirPatientId": fhir_patient_id,
                        "Status": "FhirDeleteFailed",
                        "Reason": reason,
                    },
                    fhir_patient_id,
                )

            if local is not None:
                try:
                    await self.store.delete_patient(local)
                except ConflictError as e:
                    # An appointment was booked after the pre-check
                    await self.fail(
                        actor_id,
                        "DELETE_PATIENT_FAILED_HAS_APPOINTMENTS",
                        e,
                        {"FhirPatientId": fhir_patient_id, "Status": "HasAppointments"},
                        fhir_patient_id,
                    )

            await self.record(
                actor_id,
                "DELETE_PATIENT_SUCCESS",
                {"FhirPatientId": fhir_patient_id},
                fhir_patient_id,
            )

        logger.info("patient_deleted", fhir_patient_id=fhir_patient_id)
        return True

    # Maintenance

    async def purge_unowned_patients(self, actor_id: str) -> DeletionResult:
        """Delete every local patient row without an owning user.

        One ``DELETE_NULL_USERID`` event is recorded per row before the batch
        delete. Rows still referenced by appointments are skipped. The FHIR
        server is not touched.
        """
        require(actor_id, "User ID")

        try:
            candidates = await self.store.find_unowned_patients()
            removable = [
                p for p in candidates if not await self.store.has_appointments(p.id)
            ]
            skipped = len(candidates) - len(removable)

            if not removable:
                message = "No records with NULL UserId found."
                if skipped:
                    message = f"No records deleted; {skipped} still have appointments."
                return DeletionResult(success=True, count=0, message=message)

            for patient in removable:
                await self.record(
                    actor_id,
                    "DELETE_NULL_USERID",
                    {"PatientFhirId": patient.fhir_patient_id, "Status": "Deleted"},
                    patient.fhir_patient_id,
                )

            count = await self.store.delete_patients(removable)
        except SQLAlchemyError as e:
            logger.exception("unowned_patient_purge_failed", actor_id=actor_id)
            raise UnexpectedError("Purge of unowned patients failed.") from e

        logger.info("unowned_patients_purged", count=count, skipped=skipped)
        message = f"Deleted {count} records."
        if skipped:
            message += f" Skipped {skipped} with appointments."
        return DeletionResult(success=True, count=count, message=message)
