"""Appointment drift reconciliation.

The sync services write the FHIR server first and the local mirror second,
with no compensation when the second write fails. This pass compares a
patient's FHIR appointments with the local mirror rows by FHIR id and
repairs what it can:

- mirror rows whose times or status differ from the server are refreshed,
- server appointments without a mirror row are reported,
- mirror rows whose server resource is gone are reported.

Running it twice in a row changes nothing the second time.
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fhirclient.models.appointment import Appointment as FHIRAppointment

from telehealth_sync.audit.audit_service import AuditTrailService
from telehealth_sync.core.exceptions import NotFoundError
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.healthcare.fhir_resources import from_instant, status_from_remote
from telehealth_sync.models.appointment import Appointment, AppointmentStatus
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.services.base import BaseSyncService, require
from telehealth_sync.sync.detectors import gather_both
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass for a patient."""

    patient_id: uuid.UUID
    fhir_patient_id: str
    refreshed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    missing_locally: List[str] = field(default_factory=list)
    missing_remotely: List[uuid.UUID] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        """True when both stores already agreed."""
        return not (self.refreshed or self.missing_locally or self.missing_remotely)

    def summary(self) -> Dict[str, int]:
        """Counts for the audit trail."""
        return {
            "Refreshed": len(self.refreshed),
            "Unchanged": len(self.unchanged),
            "MissingLocally": len(self.missing_locally),
            "MissingRemotely": len(self.missing_remotely),
        }


class ReconciliationService(BaseSyncService):
    """Repairs drift between FHIR appointments and their local mirrors."""

    resource_type = "Appointment"

    def __init__(
        self, store: LocalStore, fhir_client: FHIRClient, audit: AuditTrailService
    ) -> None:
        """Initialize with both stores and the audit trail."""
        super().__init__(store, fhir_client, audit)

    async def reconcile_appointments(
        self, patient_id: uuid.UUID, actor_id: str
    ) -> ReconciliationReport:
        """Reconcile every appointment of one patient.

        Raises:
            NotFoundError: if the patient is unknown or has no FHIR id
            RemoteFailure: if the FHIR server fails the search
            UnexpectedError: on any other failure
        """
        require(actor_id, "User ID")

        async with self.audited_failures(actor_id, "RECONCILE_APPOINTMENTS"):
            patient = await self.store.get_patient_by_id(patient_id)
            if patient is None or not patient.fhir_patient_id:
                await self.fail(
                    actor_id,
                    "RECONCILE_APPOINTMENTS_FAILED_PATIENT_NOT_FOUND",
                    NotFoundError(
                        f"Patient with local ID {patient_id} not found "
                        "or has no associated FHIR ID."
                    ),
                    {"PatientId": patient_id},
                )

            report = ReconciliationReport(
                patient_id=patient_id, fhir_patient_id=patient.fhir_patient_id
            )
            local_list, remote_list = await gather_both(
                self.store.get_appointments_for_patient(patient_id),
                self.fhir_client.search_appointments_by_patient(patient.fhir_patient_id),
                None,
            )
            remote_by_id = {a.id: a for a in remote_list if a.id}

            for local in local_list:
                remote = await self._remote_for(local, remote_by_id)
                if remote is None:
                    report.missing_remotely.append(local.id)
                elif await self._refresh(local, remote):
                    report.refreshed.append(remote.id)
                else:
                    report.unchanged.append(remote.id)

            mirrored = {a.fhir_appointment_id for a in local_list}
            report.missing_locally = sorted(
                remote_id for remote_id in remote_by_id if remote_id not in mirrored
            )

            await self.record(
                actor_id,
                "RECONCILE_APPOINTMENTS_SUCCESS",
                {"PatientId": patient_id, **report.summary()},
                patient.fhir_patient_id,
            )

        if not report.consistent:
            logger.warning(
                "appointment_drift_detected",
                patient_id=str(patient_id),
                **report.summary(),
            )
        return report

    async def _remote_for(
        self, local: Appointment, remote_by_id: Dict[str, FHIRAppointment]
    ) -> Optional[FHIRAppointment]:
        """Server resource mirrored by ``local``, read directly when the search missed it."""
        if not local.fhir_appointment_id:
            return None
        remote = remote_by_id.get(local.fhir_appointment_id)
        if remote is None:
            # The participant may have been repointed to another patient
            remote = await self.fhir_client.get_appointment(local.fhir_appointment_id)
        return remote

    async def _refresh(self, local: Appointment, remote: FHIRAppointment) -> bool:
        """Copy server times and status onto ``local``; True if anything changed."""
        changes = {}

        start, end = from_instant(remote.start), from_instant(remote.end)
        if start is not None and end is not None and start < end:
            if local.start_time != start:
                changes["start_time"] = start
            if local.end_time != end:
                changes["end_time"] = end

        # Local-only states read back as Unknown; keep the local value then
        status = status_from_remote(remote.status)
        if status is not AppointmentStatus.UNKNOWN and local.status != status.value:
            changes["status"] = status.value

        if not changes:
            return False

        local.update(**changes)
        await self.store.upsert_appointment(local)
        logger.info(
            "appointment_mirror_refreshed",
            fhir_appointment_id=local.fhir_appointment_id,
            fields=sorted(changes),
        )
        return True
