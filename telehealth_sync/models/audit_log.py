"""
Audit Log Model.

Append-only record of every state-changing attempt made through the sync
services, successful or not. Rows are never updated or deleted by the core;
retention is handled outside it.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel
from .db_types import UTCDateTime, utcnow


class AuditLog(BaseModel):
    """Immutable audit event."""

    __tablename__ = "audit_logs"

    user_id: Mapped[Optional[str]] = mapped_column(String(450), index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    details: Mapped[Optional[str]] = mapped_column(Text)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    resource_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    __table_args__ = (
        Index("idx_audit_timestamp", "timestamp"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    @property
    def details_dict(self) -> Dict[str, Any]:
        """Decoded details payload."""
        if not self.details:
            return {}
        decoded: Dict[str, Any] = json.loads(self.details)
        return decoded

    def __repr__(self) -> str:
        """Return string representation of AuditLog."""
        return f"<AuditLog(action={self.action}, user={self.user_id})>"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "action": self.action,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "details": self.details_dict,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id or None,
        }
