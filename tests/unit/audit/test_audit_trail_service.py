"""Tests for the audit trail writer."""

import json

import pytest
from sqlalchemy.exc import OperationalError

from telehealth_sync.audit.audit_service import AuditTrailService, serialize_details
from telehealth_sync.core.exceptions import UnexpectedError
from tests.factories import utc

pytestmark = [pytest.mark.asyncio, pytest.mark.audit_required]


class TestSerializeDetails:
    """JSON encoding of the details payload."""

    async def test_empty(self):
        assert serialize_details(None) == "{}"

    async def test_non_json_values_are_stringified(self):
        encoded = serialize_details({"StartTime": utc(2025, 1, 1, 9), "Count": 2})

        assert json.loads(encoded) == {
            "Count": 2,
            "StartTime": "2025-01-01 09:00:00+00:00",
        }


class TestAuditTrailService:
    """Persisting audit events."""

    async def test_record_persists_event(self, audit, audit_log):
        await audit.record(
            user_id="user-123",
            action="CREATE_PATIENT_SUCCESS",
            details={"FhirPatientId": "pat-1"},
            resource_type="Patient",
            resource_id="pat-1",
        )

        entries = await audit_log()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.user_id == "user-123"
        assert entry.action == "CREATE_PATIENT_SUCCESS"
        assert entry.details_dict == {"FhirPatientId": "pat-1"}
        assert entry.resource_type == "Patient"
        assert entry.resource_id == "pat-1"
        assert entry.timestamp.tzinfo is not None

    async def test_missing_resource_is_stored_empty(self, audit, audit_log):
        await audit.record(user_id="user-123", action="CREATE_APPOINTMENT_CONFLICT")

        entry = (await audit_log())[0]
        assert entry.resource_type == ""
        assert entry.resource_id == ""
        assert entry.to_dict()["resource_id"] is None

    async def test_events_keep_their_order(self, audit, audit_actions):
        for action in ("A_FIRST", "B_SECOND", "C_THIRD"):
            await audit.record(user_id="user-123", action=action)

        assert await audit_actions() == ["A_FIRST", "B_SECOND", "C_THIRD"]

    async def test_independent_of_caller_session(self, audit, session, audit_log):
        # An open, uncommitted request session does not hold the event back
        await audit.record(user_id="user-123", action="GET_PATIENT_SUCCESS")
        await session.rollback()

        assert len(await audit_log()) == 1

    async def test_write_failure_is_unexpected_error(self):
        class BrokenSession:
            async def __aenter__(self):
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

            async def __aexit__(self, *exc_info):
                return False

        audit = AuditTrailService(session_factory=lambda: BrokenSession())

        with pytest.raises(UnexpectedError, match="CREATE_PATIENT_SUCCESS"):
            await audit.record(user_id="user-123", action="CREATE_PATIENT_SUCCESS")
