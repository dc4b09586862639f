"""FHIR resource builders and readers for the Patient and Appointment mirrors.

The field mapping is fixed: a patient carries one official name, a birth date,
an email and a phone contact point and an optional administrative gender; an
appointment carries status, start, end, description and a single patient
participant.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fhirclient.models.appointment import Appointment, AppointmentParticipant
from fhirclient.models.contactpoint import ContactPoint
from fhirclient.models.fhirdate import FHIRDate
from fhirclient.models.fhirinstant import FHIRInstant
from fhirclient.models.fhirreference import FHIRReference
from fhirclient.models.humanname import HumanName
from fhirclient.models.patient import Patient

from telehealth_sync.models.appointment import AppointmentStatus

# FHIR resource types handled by this module
__fhir_resource__ = ["Patient", "Appointment"]

PATIENT_REFERENCE_PREFIX = "Patient/"
UNKNOWN_NAME = "Unknown"

ADMINISTRATIVE_GENDERS = frozenset({"male", "female", "other", "unknown"})

# Local status -> FHIR AppointmentStatus code.
# InProgress and Other have no FHIR code; they are sent as their own value
# and the server may reject them.
LOCAL_TO_REMOTE_STATUS: Dict[AppointmentStatus, str] = {
    AppointmentStatus.PROPOSED: "proposed",
    AppointmentStatus.PENDING: "pending",
    AppointmentStatus.BOOKED: "booked",
    AppointmentStatus.ARRIVED: "arrived",
    AppointmentStatus.FULFILLED: "fulfilled",
    AppointmentStatus.CANCELLED: "cancelled",
    AppointmentStatus.NO_SHOW: "noshow",
    AppointmentStatus.CHECKED_IN: "checked-in",
    AppointmentStatus.ENTERED_IN_ERROR: "entered-in-error",
    AppointmentStatus.WAITLIST: "waitlist",
    AppointmentStatus.IN_PROGRESS: "inprogress",
    AppointmentStatus.OTHER: "other",
}

REMOTE_TO_LOCAL_STATUS: Dict[str, AppointmentStatus] = {
    "proposed": AppointmentStatus.PROPOSED,
    "pending": AppointmentStatus.PENDING,
    "booked": AppointmentStatus.BOOKED,
    "arrived": AppointmentStatus.ARRIVED,
    "fulfilled": AppointmentStatus.FULFILLED,
    "cancelled": AppointmentStatus.CANCELLED,
    "noshow": AppointmentStatus.NO_SHOW,
    "checked-in": AppointmentStatus.CHECKED_IN,
    "entered-in-error": AppointmentStatus.ENTERED_IN_ERROR,
    "waitlist": AppointmentStatus.WAITLIST,
}


def status_to_remote(status: AppointmentStatus) -> str:
    """FHIR status code for a local status."""
    if status is AppointmentStatus.UNKNOWN:
        # Not a valid write value; the server decides
        return "unknown"
    return LOCAL_TO_REMOTE_STATUS[status]


def status_from_remote(code: Optional[str]) -> AppointmentStatus:
    """Local status for a FHIR status code, Unknown when unrecognised."""
    if not code:
        return AppointmentStatus.UNKNOWN
    return REMOTE_TO_LOCAL_STATUS.get(code.lower(), AppointmentStatus.UNKNOWN)


def parse_gender(gender: Optional[str]) -> Optional[str]:
    """Normalised administrative gender, or None when not in the vocabulary."""
    if not gender:
        return None
    normalised = gender.strip().lower()
    return normalised if normalised in ADMINISTRATIVE_GENDERS else None


def to_utc(value: datetime) -> datetime:
    """Aware UTC datetime; naive input is taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_instant(value: datetime) -> FHIRInstant:
    """FHIR instant for a datetime."""
    return FHIRInstant(to_utc(value).isoformat())


def from_instant(value: Optional[FHIRInstant]) -> Optional[datetime]:
    """Datetime for a FHIR instant."""
    if value is None or value.datetime is None:
        return None
    return to_utc(value.datetime)


def patient_reference(fhir_patient_id: str) -> FHIRReference:
    """Reference to a FHIR patient."""
    reference = FHIRReference()
    reference.reference = f"{PATIENT_REFERENCE_PREFIX}{fhir_patient_id}"
    return reference


# Patients


def _contact_point(system: str, value: Optional[str], use: str) -> ContactPoint:
    contact = ContactPoint()
    contact.system = system
    contact.value = value
    contact.use = use
    return contact


def build_patient(
    first_name: str,
    last_name: str,
    birth_date: str,
    email: str,
    phone_number: str,
    gender: Optional[str] = None,
) -> Patient:
    """Create a new Patient resource. ``gender`` must already be validated."""
    patient = Patient()

    name = HumanName()
    name.family = last_name
    name.given = [first_name]
    patient.name = [name]

    if birth_date:
        patient.birthDate = FHIRDate(birth_date)

    patient.telecom = [
        _contact_point("email", email, "work"),
        _contact_point("phone", phone_number, "mobile"),
    ]

    if gender:
        patient.gender = gender

    return patient


def apply_patient_changes(
    patient: Patient,
    first_name: str,
    last_name: str,
    birth_date: str,
    email: str,
    phone_number: str,
    gender: Optional[str],
) -> Patient:
    """Merge changed fields into a fetched Patient in place."""
    if not patient.name:
        patient.name = [HumanName()]
    human_name = patient.name[0]
    human_name.family = last_name
    human_name.given = [first_name]

    patient.birthDate = FHIRDate(birth_date) if birth_date else None

    if patient.telecom is None:
        patient.telecom = []

    for system, value, use in (
        ("email", email, "work"),
        ("phone", phone_number, "mobile"),
    ):
        contact = next((t for t in patient.telecom if t.system == system), None)
        if contact is None:
            contact = _contact_point(system, None, use)
            patient.telecom.append(contact)
        contact.value = value

    patient.gender = gender
    return patient


def patient_first_name(patient: Patient) -> str:
    """First given name, ``Unknown`` when missing."""
    if patient.name and patient.name[0].given:
        return patient.name[0].given[0] or UNKNOWN_NAME
    return UNKNOWN_NAME


def patient_last_name(patient: Patient) -> str:
    """Family name, ``Unknown`` when missing."""
    if patient.name and patient.name[0].family:
        return patient.name[0].family
    return UNKNOWN_NAME


def patient_telecom(patient: Patient, system: str) -> str:
    """First contact point value for ``system``, empty when missing."""
    for contact in patient.telecom or []:
        if contact.system == system and contact.value:
            return str(contact.value)
    return ""


def patient_birth_date(patient: Patient) -> str:
    """Birth date as ``YYYY-MM-DD``, empty when missing."""
    if patient.birthDate is None:
        return ""
    return str(patient.birthDate.as_json() or "")


# Appointments


def build_appointment(
    fhir_patient_id: str,
    start: datetime,
    end: datetime,
    status: AppointmentStatus,
    description: Optional[str] = None,
) -> Appointment:
    """Create a new Appointment resource with one accepted patient participant."""
    appointment = Appointment()
    appointment.status = status_to_remote(status)
    appointment.start = to_instant(start)
    appointment.end = to_instant(end)
    appointment.description = description

    participant = AppointmentParticipant()
    participant.actor = patient_reference(fhir_patient_id)
    participant.status = "accepted"
    appointment.participant = [participant]

    return appointment


def find_patient_participant(appointment: Appointment) -> Optional[AppointmentParticipant]:
    """First participant whose actor references a Patient."""
    for participant in appointment.participant or []:
        actor = participant.actor
        if actor is not None and (actor.reference or "").startswith(
            PATIENT_REFERENCE_PREFIX
        ):
            return participant
    return None


def apply_appointment_changes(
    appointment: Appointment,
    fhir_patient_id: str,
    start: datetime,
    end: datetime,
    status: AppointmentStatus,
    description: Optional[str],
) -> Appointment:
    """Merge changed fields into a fetched Appointment in place.

    The existing patient participant is repointed at ``fhir_patient_id``; if
    there is none, an accepted participant is appended.
    """
    if appointment.participant is None:
        appointment.participant = []

    participant = find_patient_participant(appointment)
    if participant is not None:
        participant.actor = patient_reference(fhir_patient_id)
    else:
        participant = AppointmentParticipant()
        participant.actor = patient_reference(fhir_patient_id)
        participant.status = "accepted"
        appointment.participant.append(participant)

    appointment.status = status_to_remote(status)
    appointment.start = to_instant(start)
    appointment.end = to_instant(end)
    appointment.description = description
    return appointment


def appointment_patient_id(appointment: Appointment) -> Optional[str]:
    """FHIR id of the patient participant, if any."""
    participant = find_patient_participant(appointment)
    if participant is None:
        return None
    return str(participant.actor.reference)[len(PATIENT_REFERENCE_PREFIX) :]


# Parsing


def parse_patient(data: Dict[str, Any]) -> Patient:
    """Patient resource from server JSON."""
    return Patient(data, strict=False)


def parse_appointment(data: Dict[str, Any]) -> Appointment:
    """Appointment resource from server JSON."""
    return Appointment(data, strict=False)


def bundle_resources(bundle: Optional[Dict[str, Any]], resource_type: str) -> List[Dict[str, Any]]:
    """Resources of ``resource_type`` from a searchset Bundle."""
    if not bundle:
        return []
    resources = []
    for entry in bundle.get("entry") or []:
        resource = entry.get("resource") or {}
        if resource.get("resourceType") == resource_type:
            resources.append(resource)
    return resources
