"""Maintenance entry point.

Removes local patient rows that have no owning user. Run out of the normal
request flow, e.g. from a scheduled job::

    telehealth-sync-purge --actor-id SystemCleanup
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from telehealth_sync.audit.audit_service import AuditTrailService
from telehealth_sync.config import get_settings
from telehealth_sync.core.database import (
    dispose_engine,
    get_async_db,
    get_session_factory,
    init_async_db,
)
from telehealth_sync.core.exceptions import TelehealthSyncError
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.security.encryption import EncryptionCodec
from telehealth_sync.services.patient_service import DeletionResult, PatientSyncService
from telehealth_sync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def purge_unowned_patients(actor_id: str) -> DeletionResult:
    """Create tables if needed and purge patients with no owning user."""
    settings = get_settings()
    await init_async_db()

    try:
        async with FHIRClient(settings.fhir_server_url, settings.fhir_timeout) as client:
            async with get_async_db() as session:
                service = PatientSyncService(
                    store=LocalStore(session),
                    fhir_client=client,
                    audit=AuditTrailService(get_session_factory()),
                    codec=EncryptionCodec(),
                )
                return await service.purge_unowned_patients(actor_id)
    finally:
        await dispose_engine()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Delete local patient records that have no owning user"
    )
    parser.add_argument(
        "--actor-id",
        default=settings.cleanup_actor_id,
        help="User id recorded in the audit trail (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    setup_logging()

    try:
        result = asyncio.run(purge_unowned_patients(args.actor_id))
    except TelehealthSyncError as e:
        logger.error("purge_failed", error=str(e))
        print(f"Purge failed: {e}", file=sys.stderr)
        return 1

    logger.info("purge_completed", count=result.count)
    print(result.message)
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
