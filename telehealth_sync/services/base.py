"""Base service class for the patient and appointment sync services."""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, NoReturn, Optional

from telehealth_sync.audit.audit_service import AuditTrailService
from telehealth_sync.core.exceptions import (
    RemoteFailure,
    TelehealthSyncError,
    UnexpectedError,
    ValidationError,
)
from telehealth_sync.healthcare.fhir_client_async import FHIRClient
from telehealth_sync.repositories.local_store import LocalStore
from telehealth_sync.security.encryption import EncryptionCodec
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)


class AuditScope:
    """Mutable audit context for one service call."""

    def __init__(self, resource_id: Optional[str] = None) -> None:
        self.resource_id = resource_id


class BaseSyncService:
    """Common plumbing for services that write to both stores.

    Every public operation records exactly one audit event: the success event
    at the end, or one failure event on the branch that stops it.
    """

    resource_type: str = ""

    def __init__(
        self,
        store: LocalStore,
        fhir_client: FHIRClient,
        audit: AuditTrailService,
        codec: Optional[EncryptionCodec] = None,
    ) -> None:
        """Initialize service with both stores, the audit trail and the PHI codec."""
        self.store = store
        self.fhir_client = fhir_client
        self.audit = audit
        self.codec = codec or EncryptionCodec()

    async def record(
        self,
        actor_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        """Write one audit event for this service's resource type."""
        await self.audit.record(
            user_id=actor_id,
            action=action,
            details=details,
            resource_type=self.resource_type,
            resource_id=resource_id,
        )

    async def fail(
        self,
        actor_id: str,
        action: str,
        error: TelehealthSyncError,
        details: Optional[Dict[str, Any]] = None,
        resource_id: Optional[str] = None,
    ) -> NoReturn:
        """Audit a failure branch and raise ``error``."""
        logger.warning(
            "sync_operation_rejected",
            action=action,
            resource_type=self.resource_type,
            resource_id=resource_id,
            error_type=type(error).__name__,
        )
        await self.record(
            actor_id, action, {**(details or {}), "Error": str(error)}, resource_id
        )
        error.audited = True
        raise error

    @asynccontextmanager
    async def audited_failures(
        self, actor_id: str, operation: str, resource_id: Optional[str] = None
    ) -> AsyncGenerator[AuditScope, None]:
        """Audit remote and unexpected failures raised inside the block.

        Failures already audited, e.g. raised through ``fail``, pass through
        untouched. Any other ``RemoteFailure`` is audited as
        ``<operation>_FAILED_REMOTE`` and re-raised. Any other ``Exception``,
        e.g. a database error or a malformed FHIR payload, is audited as
        ``<operation>_FAILED_UNEXPECTED`` and re-raised as ``UnexpectedError``.
        Cancellation is not an ``Exception`` and passes through unaudited.
        """
        scope = AuditScope(resource_id)
        try:
            yield scope
        except TelehealthSyncError as e:
            if e.audited or not isinstance(e, RemoteFailure):
                raise
            logger.error(
                "sync_remote_failure",
                operation=operation,
                resource_type=self.resource_type,
                resource_id=scope.resource_id,
                status_code=e.status_code,
                reason=e.reason,
            )
            await self.record(
                actor_id,
                f"{operation}_FAILED_REMOTE",
                {"Reason": e.reason, "StatusCode": e.status_code},
                scope.resource_id,
            )
            e.audited = True
            raise
        except Exception as e:
            logger.exception(
                "sync_unexpected_failure",
                operation=operation,
                resource_type=self.resource_type,
                resource_id=scope.resource_id,
                error_type=type(e).__name__,
            )
            await self.record(
                actor_id,
                f"{operation}_FAILED_UNEXPECTED",
                {"ErrorType": type(e).__name__},
                scope.resource_id,
            )
            error = UnexpectedError(
                f"{operation.replace('_', ' ').capitalize()} failed unexpectedly."
            )
            error.audited = True
            raise error from e


def require(value: Optional[str], name: str) -> str:
    """Reject a blank identifier argument; not audited, nothing has happened yet."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} cannot be empty.")
    return value
