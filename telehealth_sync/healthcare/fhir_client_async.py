"""Async FHIR client for the remote clinical-resource server.

Typed read/create/update/delete/search for Patient and Appointment resources
over the FHIR REST API. Reads of missing or deleted resources return ``None``;
rejected writes raise ``RemoteFailure`` carrying the server's reason. The
client never retries.

FHIR Compliance Keywords: Resource, Bundle, OperationOutcome
"""

from typing import Any, Dict, List, Optional, Tuple

import httpx
from fhirclient.models.appointment import Appointment
from fhirclient.models.patient import Patient

from telehealth_sync.core.exceptions import RemoteFailure
from telehealth_sync.healthcare.fhir_resources import (
    bundle_resources,
    parse_appointment,
    parse_patient,
)
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_STATUSES = (404, 410)
DELETED_STATUSES = (200, 202, 204)


def operation_outcome_reason(response: httpx.Response) -> str:
    """Human-readable reason from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and body.get("resourceType") == "OperationOutcome":
        messages = [
            issue.get("diagnostics") or (issue.get("details") or {}).get("text")
            for issue in body.get("issue") or []
        ]
        messages = [m for m in messages if m]
        if messages:
            return "; ".join(messages)

    return f"{response.status_code} {response.reason_phrase}: {response.text}".strip()


class FHIRClient:
    """Async FHIR client for Patient and Appointment resources."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize FHIR client.

        Args:
            base_url: Base URL of the FHIR server
            timeout: Request timeout in seconds
            transport: Optional transport, used to plug in a test server
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url + "/",
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                headers={
                    "Accept": "application/fhir+json",
                    "Content-Type": "application/fhir+json",
                    "Prefer": "return=representation",
                },
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FHIRClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error("fhir_request_failed", method=method, path=path, error=str(e))
            raise RemoteFailure(f"Failed to connect to FHIR server: {e}") from e

    # Generic resource operations

    async def _read(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"{resource_type}/{resource_id}")

        if response.status_code in NOT_FOUND_STATUSES:
            logger.warning(
                "fhir_resource_not_found",
                resource_type=resource_type,
                resource_id=resource_id,
                status_code=response.status_code,
            )
            return None
        if response.status_code != 200:
            raise RemoteFailure(
                operation_outcome_reason(response), status_code=response.status_code
            )

        logger.info(
            "fhir_resource_read", resource_type=resource_type, resource_id=resource_id
        )
        result: Dict[str, Any] = response.json()
        return result

    async def _write(
        self, method: str, resource_type: str, path: str, resource: Any
    ) -> Dict[str, Any]:
        response = await self._request(method, path, json=resource.as_json())

        if response.status_code not in (200, 201):
            logger.error(
                "fhir_write_rejected",
                method=method,
                resource_type=resource_type,
                status_code=response.status_code,
            )
            raise RemoteFailure(
                operation_outcome_reason(response), status_code=response.status_code
            )

        result: Dict[str, Any] = response.json() if response.content else {}
        if not result:
            # Server ignored Prefer: return=representation
            result = resource.as_json()
            location = response.headers.get("Location", "")
            assigned_id = _id_from_location(location, resource_type)
            if assigned_id:
                result["id"] = assigned_id

        if not result.get("id"):
            raise RemoteFailure(
                f"FHIR server did not assign an id to the {resource_type}",
                status_code=response.status_code,
            )

        logger.info(
            "fhir_resource_written",
            method=method,
            resource_type=resource_type,
            resource_id=result["id"],
        )
        return result

    async def _delete(self, resource_type: str, resource_id: str) -> Tuple[bool, str]:
        label = resource_type
        try:
            if await self._read(resource_type, resource_id) is None:
                logger.warning(
                    "fhir_delete_target_missing",
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
                return False, f"{label} not found"

            response = await self._request("DELETE", f"{resource_type}/{resource_id}")
        except RemoteFailure as e:
            return False, f"Deletion failed: {e.reason}"

        if response.status_code in DELETED_STATUSES:
            logger.info(
                "fhir_resource_deleted",
                resource_type=resource_type,
                resource_id=resource_id,
            )
            return True, "Deletion successful"
        if response.status_code in NOT_FOUND_STATUSES:
            return False, f"{label} not found"

        reason = operation_outcome_reason(response)
        logger.error(
            "fhir_delete_rejected",
            resource_type=resource_type,
            resource_id=resource_id,
            status_code=response.status_code,
        )
        return False, f"Deletion failed: {reason}"

    async def _search(
        self, resource_type: str, params: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        response = await self._request("GET", resource_type, params=params)
        if response.status_code != 200:
            raise RemoteFailure(
                operation_outcome_reason(response), status_code=response.status_code
            )
        resources = bundle_resources(response.json(), resource_type)
        logger.info(
            "fhir_search_completed",
            resource_type=resource_type,
            params=sorted(params),
            count=len(resources),
        )
        return resources

    # Patients

    async def get_patient(self, fhir_patient_id: str) -> Optional[Patient]:
        """Read a patient; ``None`` when absent or deleted."""
        data = await self._read("Patient", fhir_patient_id)
        return parse_patient(data) if data is not None else None

    async def create_patient(self, patient: Patient) -> Patient:
        """Create a patient and return it with the server-assigned id."""
        return parse_patient(await self._write("POST", "Patient", "Patient", patient))

    async def update_patient(self, fhir_patient_id: str, patient: Patient) -> Patient:
        """Replace a patient."""
        patient.id = fhir_patient_id
        return parse_patient(
            await self._write("PUT", "Patient", f"Patient/{fhir_patient_id}", patient)
        )

    async def delete_patient(self, fhir_patient_id: str) -> Tuple[bool, str]:
        """Delete a patient; returns ``(success, reason)``."""
        return await self._delete("Patient", fhir_patient_id)

    async def search_patients_by_email(self, email: str) -> List[Patient]:
        """Patients with a telecom entry equal to ``email``."""
        return [
            parse_patient(data)
            for data in await self._search("Patient", {"telecom": email})
        ]

    # Appointments

    async def get_appointment(self, fhir_appointment_id: str) -> Optional[Appointment]:
        """Read an appointment; ``None`` when absent or deleted."""
        data = await self._read("Appointment", fhir_appointment_id)
        return parse_appointment(data) if data is not None else None

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        """Create an appointment and return it with the server-assigned id."""
        return parse_appointment(
            await self._write("POST", "Appointment", "Appointment", appointment)
        )

    async def update_appointment(
        self, fhir_appointment_id: str, appointment: Appointment
    ) -> Appointment:
        """Replace an appointment."""
        appointment.id = fhir_appointment_id
        return parse_appointment(
            await self._write(
                "PUT", "Appointment", f"Appointment/{fhir_appointment_id}", appointment
            )
        )

    async def delete_appointment(self, fhir_appointment_id: str) -> Tuple[bool, str]:
        """Delete an appointment; returns ``(success, reason)``."""
        return await self._delete("Appointment", fhir_appointment_id)

    async def search_appointments_by_patient(
        self, fhir_patient_id: str
    ) -> List[Appointment]:
        """Appointments in which the patient participates."""
        return [
            parse_appointment(data)
            for data in await self._search(
                "Appointment", {"actor": f"Patient/{fhir_patient_id}"}
            )
        ]


def _id_from_location(location: str, resource_type: str) -> Optional[str]:
    """Resource id from a ``.../Type/id/_history/n`` Location header."""
    parts = [p for p in location.split("/") if p]
    for index, part in enumerate(parts[:-1]):
        if part == resource_type:
            return parts[index + 1]
    return None
