"""
Delivery attempts - one row per HTTP try of one event to one endpoint.
Append-only history: retries add rows, they never rewrite earlier ones.
endpoint_id is deliberately not a foreign key so history outlives the endpoint.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class DeliveryStatus:
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DeliveryAttempt(Base):
    __tablename__ = "webhook_delivery_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    endpoint_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Snapshot of the endpoint URL at attempt time
    endpoint_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)

    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DeliveryStatus.PENDING, nullable=False
    )  # PENDING, SUCCESS, FAILED
    is_retry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    http_status_code: Mapped[Optional[int]] = mapped_column(Integer)
    response_body: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)

    # Exact serialized body that was signed; replayed verbatim on manual retry
    request_body: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint(
            "event_id", "endpoint_id", "attempt_number", name="uq_delivery_attempt_number"
        ),
        Index("ix_delivery_attempts_endpoint_created", "endpoint_id", "created_at"),
        Index("ix_delivery_attempts_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<DeliveryAttempt #{self.attempt_number} {self.status} endpoint={self.endpoint_id}>"
