"""Test configuration for the Telehealth Sync project.

This module configures the test environment: a throwaway SQLite database
per test, an in-memory FHIR server behind the real FHIR client, and the
sync services wired to both.
"""

import os
from typing import AsyncGenerator, Awaitable, Callable, List

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set testing environment BEFORE any other imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-phi-0001")
os.environ.setdefault("ENCRYPTION_IV", "test-iv-material")

from telehealth_sync.audit.audit_service import AuditTrailService  # noqa: E402
from telehealth_sync.core.database import (  # noqa: E402
    build_async_engine,
    build_session_factory,
    get_async_db,
    init_async_db,
)
from telehealth_sync.healthcare.fhir_client_async import FHIRClient  # noqa: E402
from telehealth_sync.models import AuditLog  # noqa: E402
from telehealth_sync.repositories.local_store import LocalStore  # noqa: E402
from telehealth_sync.schemas import PatientModel  # noqa: E402
from telehealth_sync.security.encryption import EncryptionCodec  # noqa: E402
from telehealth_sync.services import (  # noqa: E402
    AppointmentSyncService,
    PatientSyncService,
)
from telehealth_sync.sync import ReconciliationService  # noqa: E402
from tests.factories import ACTOR_ID, jane_doe  # noqa: E402
from tests.mocks.fhir_server import BASE_URL, InMemoryFHIRServer  # noqa: E402

TEST_ENCRYPTION_KEY = "test-encryption-key-for-phi-0001"
TEST_ENCRYPTION_IV = "test-iv-material"


# Medical compliance markers - register custom markers
def pytest_configure(config):
    """Register custom markers for medical compliance."""
    config.addinivalue_line(
        "markers", "fhir_compliance: mark test as requiring FHIR compliance"
    )
    config.addinivalue_line(
        "markers", "hipaa_required: mark test as requiring HIPAA compliance"
    )
    config.addinivalue_line(
        "markers", "phi_encryption: mark test as requiring PHI encryption"
    )
    config.addinivalue_line(
        "markers", "audit_required: mark test as requiring audit logging"
    )


# Database


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file database with all tables, removed after the test."""
    db_engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'telehealth.db'}")
    await init_async_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session, as the services get in production."""
    async with get_async_db(session_factory) as db_session:
        yield db_session


@pytest.fixture
def store(session: AsyncSession) -> LocalStore:
    return LocalStore(session)


@pytest.fixture
def codec() -> EncryptionCodec:
    return EncryptionCodec(key=TEST_ENCRYPTION_KEY, iv=TEST_ENCRYPTION_IV)


@pytest.fixture
def audit(session_factory: async_sessionmaker[AsyncSession]) -> AuditTrailService:
    return AuditTrailService(session_factory)


@pytest.fixture
def audit_log(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[], Awaitable[List[AuditLog]]]:
    """Reads back every audit event in insertion order."""

    async def _read() -> List[AuditLog]:
        async with session_factory() as db_session:
            result = await db_session.execute(
                select(AuditLog).order_by(AuditLog.timestamp)
            )
            return list(result.scalars().all())

    return _read


@pytest.fixture
def audit_actions(audit_log) -> Callable[[], Awaitable[List[str]]]:
    """Reads back the action of every audit event."""

    async def _read() -> List[str]:
        return [entry.action for entry in await audit_log()]

    return _read


# FHIR server


@pytest.fixture
def fhir_server() -> InMemoryFHIRServer:
    return InMemoryFHIRServer()


@pytest_asyncio.fixture
async def fhir_client(fhir_server: InMemoryFHIRServer) -> AsyncGenerator[FHIRClient, None]:
    async with FHIRClient(BASE_URL, timeout=5, transport=fhir_server.transport) as client:
        yield client


# Services


@pytest.fixture
def patient_service(
    store: LocalStore,
    fhir_client: FHIRClient,
    audit: AuditTrailService,
    codec: EncryptionCodec,
) -> PatientSyncService:
    return PatientSyncService(store, fhir_client, audit, codec)


@pytest.fixture
def appointment_service(
    store: LocalStore,
    fhir_client: FHIRClient,
    audit: AuditTrailService,
    codec: EncryptionCodec,
) -> AppointmentSyncService:
    return AppointmentSyncService(store, fhir_client, audit, codec)


@pytest.fixture
def reconciliation_service(
    store: LocalStore, fhir_client: FHIRClient, audit: AuditTrailService
) -> ReconciliationService:
    return ReconciliationService(store, fhir_client, audit)


@pytest_asyncio.fixture
async def jane(patient_service: PatientSyncService) -> PatientModel:
    """Jane Doe created through the sync service."""
    return await patient_service.create_patient(jane_doe(), ACTOR_ID)

