"""Cross-store duplicate and conflict detection.

Both detectors are stateless: each call queries the local store and the FHIR
server and merges the results. The two queries do not depend on each other
and are issued concurrently. Callers may cancel a detector call or bound the
FHIR lookup with ``timeout``; the local query always runs to completion.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, List, Optional, Tuple, TypeVar

from fhirclient.models.appointment import Appointment as FHIRAppointment
from fhirclient.models.patient import Patient as FHIRPatient

from telehealth_sync.core.exceptions import ValidationError
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.healthcare.fhir_resources import from_instant, to_utc
from telehealth_sync.models.appointment import Appointment
from telehealth_sync.models.patient import Patient
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)

A = TypeVar("A")
B = TypeVar("B")


def intervals_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open interval intersection; touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end


async def gather_both(
    local_query: Awaitable[A], remote_query: Awaitable[B], timeout: Optional[float]
) -> Tuple[A, B]:
    """Await a local store query and a FHIR lookup concurrently.

    ``timeout`` bounds the FHIR lookup only. The local query is never
    cancelled: cancelling a statement mid-flight invalidates the shared
    ``AsyncSession``, so it is always awaited to completion, even when the
    remote side fails, times out or the caller is cancelled.

    Raises:
        asyncio.TimeoutError: if the FHIR lookup outlives ``timeout``
    """
    local_task = asyncio.ensure_future(local_query)
    remote_task = asyncio.ensure_future(remote_query)
    try:
        await asyncio.wait(
            {local_task, remote_task},
            timeout=timeout,
            return_when=asyncio.FIRST_EXCEPTION,
        )
    finally:
        if not remote_task.done():
            remote_task.cancel()
        await asyncio.wait({local_task, remote_task})

    remote_error = None if remote_task.cancelled() else remote_task.exception()
    local_error = local_task.exception()
    if local_error is not None:
        raise local_error
    if remote_error is not None:
        raise remote_error
    if remote_task.cancelled():
        raise asyncio.TimeoutError("FHIR lookup timed out.")
    return local_task.result(), remote_task.result()


@dataclass
class DuplicateMatches:
    """Patients sharing an email in either store."""

    local: List[Patient] = field(default_factory=list)
    remote: List[FHIRPatient] = field(default_factory=list)

    @property
    def found(self) -> bool:
        """Whether any match exists."""
        return bool(self.local or self.remote)


@dataclass
class ConflictMatches:
    """Appointments overlapping a requested interval in either store."""

    local: List[Appointment] = field(default_factory=list)
    remote: List[FHIRAppointment] = field(default_factory=list)

    @property
    def found(self) -> bool:
        """Whether any conflict exists."""
        return bool(self.local or self.remote)


class DuplicateDetector:
    """Finds patients by email across the local store and the FHIR server."""

    def __init__(self, store: LocalStore, fhir_client: FHIRClient):
        """Initialize with both stores."""
        self.store = store
        self.fhir_client = fhir_client

    async def find(
        self,
        email: str,
        exclude_local_id: Optional[uuid.UUID] = None,
        exclude_remote_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DuplicateMatches:
        """Union of local rows and remote telecom matches for ``email``.

        Args:
            email: Address to look up (exact match)
            exclude_local_id: Local patient to leave out, e.g. the one being updated
            exclude_remote_id: FHIR patient to leave out
            timeout: Optional bound in seconds for the FHIR lookup

        Raises:
            ValidationError: if ``email`` is blank
        """
        if not email or not email.strip():
            raise ValidationError("Email cannot be empty.")

        local, remote = await gather_both(
            self.store.find_patients_by_email(email),
            self.fhir_client.search_patients_by_email(email),
            timeout,
        )

        matches = DuplicateMatches(
            local=[p for p in local if exclude_local_id is None or p.id != exclude_local_id],
            remote=[
                p for p in remote if exclude_remote_id is None or p.id != exclude_remote_id
            ],
        )
        if matches.found:
            logger.info(
                "duplicate_patient_detected",
                local_count=len(matches.local),
                remote_count=len(matches.remote),
            )
        return matches


class ConflictDetector:
    """Finds a patient's appointments overlapping an interval in both stores."""

    def __init__(self, store: LocalStore, fhir_client: FHIRClient):
        """Initialize with both stores."""
        self.store = store
        self.fhir_client = fhir_client

    async def find(
        self,
        patient_id: uuid.UUID,
        start: datetime,
        end: datetime,
        exclude_local_id: Optional[uuid.UUID] = None,
        exclude_remote_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ConflictMatches:
        """Overlapping appointments for ``patient_id`` within ``[start, end)``.

        A patient unknown locally, or without a FHIR id, has no conflicts.

        Raises:
            ValidationError: if ``start`` is not before ``end``
        """
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise ValidationError("Start time must be before end time.")

        patient = await self.store.get_patient_by_id(patient_id)
        if patient is None or not patient.fhir_patient_id:
            return ConflictMatches()

        local, remote = await gather_both(
            self.store.get_appointments_overlapping(
                patient_id, start, end, exclude_local_id=exclude_local_id
            ),
            self.fhir_client.search_appointments_by_patient(patient.fhir_patient_id),
            timeout,
        )

        matches = ConflictMatches(
            local=local,
            remote=[
                a
                for a in remote
                if _remote_overlaps(a, start, end)
                and (exclude_remote_id is None or a.id != exclude_remote_id)
            ],
        )
        if matches.found:
            logger.info(
                "appointment_conflict_detected",
                patient_id=str(patient_id),
                local_count=len(matches.local),
                remote_count=len(matches.remote),
            )
        return matches


def _remote_overlaps(appointment: FHIRAppointment, start: datetime, end: datetime) -> bool:
    remote_start = from_instant(appointment.start)
    remote_end = from_instant(appointment.end)
    if remote_start is None or remote_end is None:
        return False
    return intervals_overlap(remote_start, remote_end, start, end)
