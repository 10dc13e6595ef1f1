"""
Audit event model - structured record of delivery outcomes and registry changes.
Written through the audit sink; never read on the delivery path.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class Severity:
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_type: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # webhook.delivery.failed, webhook.endpoint.deactivated, notification.sent, etc.
    severity: Mapped[str] = mapped_column(String(20), default=Severity.INFO, nullable=False)

    organization_id: Mapped[Optional[str]] = mapped_column(String(64))
    resource_type: Mapped[Optional[str]] = mapped_column(String(50))
    resource_id: Mapped[Optional[str]] = mapped_column(String(64))

    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_org_created", "organization_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent {self.event_type} severity={self.severity}>"
