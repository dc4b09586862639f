"""Tests for the local patient and appointment mirror store."""

import uuid

import pytest
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from telehealth_sync.core.exceptions import ConflictError
from telehealth_sync.models import Appointment, AppointmentStatus, Patient
from tests.factories import utc

pytestmark = [pytest.mark.asyncio, pytest.mark.hipaa_required]


def make_patient(email="jane@example.com", fhir_id=None, user_id="owner-1") -> Patient:
    return Patient(
        fhir_patient_id=fhir_id or f"pat-{uuid.uuid4().hex[:8]}",
        email=email,
        encrypted_name="ciphertext",
        user_id=user_id,
    )


def make_appointment(patient: Patient, start, end, fhir_id=None) -> Appointment:
    return Appointment(
        fhir_appointment_id=fhir_id or f"appt-{uuid.uuid4().hex[:8]}",
        patient_id=patient.id,
        start_time=start,
        end_time=end,
        status=AppointmentStatus.BOOKED.value,
    )


class TestPatientRows:
    """Patient lookups and writes."""

    async def test_upsert_and_lookup(self, store):
        patient = await store.upsert_patient(make_patient(fhir_id="pat-1"))

        assert (await store.get_patient_by_id(patient.id)).fhir_patient_id == "pat-1"
        assert (await store.get_patient_by_remote_id("pat-1")).id == patient.id
        assert await store.get_patient_by_remote_id("pat-2") is None

    async def test_email_is_not_unique(self, store):
        await store.upsert_patient(make_patient())
        await store.upsert_patient(make_patient())

        assert len(await store.find_patients_by_email("jane@example.com")) == 2
        assert await store.find_patients_by_email("other@example.com") == []

    async def test_remote_id_is_unique(self, store):
        await store.upsert_patient(make_patient(fhir_id="pat-1"))

        with pytest.raises(IntegrityError):
            await store.upsert_patient(make_patient(fhir_id="pat-1"))

    async def test_rows_without_remote_id_do_not_collide(self, store):
        for _ in range(2):
            patient = make_patient()
            patient.fhir_patient_id = None
            await store.upsert_patient(patient)

        assert len(await store.find_patients_by_email("jane@example.com")) == 2

    async def test_delete_patient(self, store):
        patient = await store.upsert_patient(make_patient())

        await store.delete_patient(patient)

        assert await store.get_patient_by_id(patient.id) is None

    async def test_unowned_patients(self, store):
        owned = await store.upsert_patient(make_patient(user_id="owner-1"))
        unowned = await store.upsert_patient(make_patient(user_id=None))

        found = await store.find_unowned_patients()

        assert [p.id for p in found] == [unowned.id]
        assert await store.delete_patients(found) == 1
        assert await store.get_patient_by_id(owned.id) is not None

    async def test_delete_patients_with_empty_list(self, store):
        assert await store.delete_patients([]) == 0


class TestReferentialIntegrity:
    """A patient still referenced by appointments cannot be deleted."""

    async def test_delete_patient_with_appointments_is_rejected(self, store):
        patient = await store.upsert_patient(make_patient())
        await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )

        assert await store.has_appointments(patient.id)
        with pytest.raises(ConflictError):
            await store.delete_patient(patient)

        assert await store.get_patient_by_id(patient.id) is not None

    async def test_database_enforces_restrict(self, store, session):
        patient = await store.upsert_patient(make_patient())
        await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )

        with pytest.raises(IntegrityError):
            await session.execute(delete(Patient).where(Patient.id == patient.id))
            await session.commit()
        await session.rollback()

    async def test_appointment_requires_existing_patient(self, store):
        ghost = make_patient()

        with pytest.raises(IntegrityError):
            await store.upsert_appointment(
                make_appointment(ghost, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
            )

    async def test_end_must_follow_start(self, store):
        patient = await store.upsert_patient(make_patient())

        with pytest.raises(IntegrityError):
            await store.upsert_appointment(
                make_appointment(patient, utc(2025, 1, 1, 10), utc(2025, 1, 1, 10))
            )


class TestAppointmentRows:
    """Appointment lookups, overlap queries and writes."""

    async def test_times_come_back_as_utc(self, store):
        patient = await store.upsert_patient(make_patient())
        await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10), "appt-1")
        )
        store.session.expunge_all()

        loaded = await store.get_appointment_by_remote_id("appt-1")

        assert loaded.start_time == utc(2025, 1, 1, 9)
        assert loaded.start_time.tzinfo is not None
        assert loaded.status_enum is AppointmentStatus.BOOKED

    async def test_overlap_query_is_half_open(self, store):
        patient = await store.upsert_patient(make_patient())
        booked = await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )

        overlapping = await store.get_appointments_overlapping(
            patient.id, utc(2025, 1, 1, 9, 30), utc(2025, 1, 1, 10, 30)
        )
        abutting_after = await store.get_appointments_overlapping(
            patient.id, utc(2025, 1, 1, 10), utc(2025, 1, 1, 11)
        )
        abutting_before = await store.get_appointments_overlapping(
            patient.id, utc(2025, 1, 1, 8), utc(2025, 1, 1, 9)
        )

        assert [a.id for a in overlapping] == [booked.id]
        assert abutting_after == []
        assert abutting_before == []

    async def test_overlap_query_excludes_own_row_and_other_patients(self, store):
        patient = await store.upsert_patient(make_patient())
        other = await store.upsert_patient(make_patient(email="john@example.com"))
        own = await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )
        await store.upsert_appointment(
            make_appointment(other, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )

        found = await store.get_appointments_overlapping(
            patient.id, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10), exclude_local_id=own.id
        )

        assert found == []

    async def test_appointments_for_patient_are_ordered(self, store):
        patient = await store.upsert_patient(make_patient())
        later = await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 2, 9), utc(2025, 1, 2, 10))
        )
        earlier = await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10))
        )

        found = await store.get_appointments_for_patient(patient.id)

        assert [a.id for a in found] == [earlier.id, later.id]

    async def test_delete_appointment(self, store):
        patient = await store.upsert_patient(make_patient())
        appointment = await store.upsert_appointment(
            make_appointment(patient, utc(2025, 1, 1, 9), utc(2025, 1, 1, 10), "appt-1")
        )

        await store.delete_appointment(appointment)

        assert await store.get_appointment_by_remote_id("appt-1") is None
        assert not await store.has_appointments(patient.id)
