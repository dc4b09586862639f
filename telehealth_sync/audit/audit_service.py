"""
Audit Trail Service.

Append-only writer of audit events for every patient and appointment
operation. Each call opens its own session, so an audit row is committed
independently of the business write it describes and concurrent writes are
ordered only by their stored timestamp.
"""

import json
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telehealth_sync.core.database import get_session_factory
from telehealth_sync.core.exceptions import UnexpectedError
from telehealth_sync.models.audit_log import AuditLog
from telehealth_sync.models.db_types import utcnow
from telehealth_sync.utils.logging import get_logger

logger = get_logger(__name__)

__all__ = ["AuditTrailService", "serialize_details"]


def serialize_details(details: Optional[Dict[str, Any]]) -> str:
    """Serialize a structured details payload to JSON text."""
    return json.dumps(details or {}, default=str, sort_keys=True)


class AuditTrailService:
    """Persists audit events."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        """Initialize with the factory used to open one session per event."""
        self.session_factory = session_factory or get_session_factory()

    async def record(
        self,
        user_id: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> AuditLog:
        """Write one audit event.

        Args:
            user_id: Actor performing the operation
            action: Fixed-vocabulary action name, e.g. ``CREATE_PATIENT_SUCCESS``
            details: Structured payload describing the outcome
            resource_type: ``Patient`` or ``Appointment``
            resource_id: Remote id of the resource, when known

        Returns:
            The persisted AuditLog row

        Raises:
            UnexpectedError: if the event could not be stored
        """
        entry = AuditLog(
            user_id=user_id,
            action=action,
            timestamp=utcnow(),
            details=serialize_details(details),
            resource_type=resource_type or "",
            resource_id=resource_id or "",
        )

        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "audit_event_write_failed", action=action, user_id=user_id, error=str(e)
            )
            raise UnexpectedError(f"Failed to record audit event {action}") from e

        logger.info(
            "audit_event_recorded",
            action=action,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        return entry
