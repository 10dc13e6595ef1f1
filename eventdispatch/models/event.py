"""
Event model - immutable domain facts emitted by the billing services.
Retained for audit and replay; webhook attempts reference them by id.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class EventType:
    """Event types endpoints can subscribe to."""
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SUBSCRIPTION_TRIAL_ENDING = "subscription.trial_ending"
    SUBSCRIPTION_TRIAL_ENDED = "subscription.trial_ended"
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    USAGE_RECORDED = "usage.recorded"
    USAGE_THRESHOLD_EXCEEDED = "usage.threshold_exceeded"

    # Subscribes an endpoint to every event type
    WILDCARD = "*"

    ALL = (
        SUBSCRIPTION_CREATED,
        SUBSCRIPTION_UPDATED,
        SUBSCRIPTION_CANCELLED,
        SUBSCRIPTION_RENEWED,
        SUBSCRIPTION_TRIAL_ENDING,
        SUBSCRIPTION_TRIAL_ENDED,
        INVOICE_CREATED,
        INVOICE_PAID,
        INVOICE_PAYMENT_FAILED,
        CUSTOMER_CREATED,
        CUSTOMER_UPDATED,
        PAYMENT_SUCCEEDED,
        PAYMENT_FAILED,
        PAYMENT_REFUNDED,
        USAGE_RECORDED,
        USAGE_THRESHOLD_EXCEEDED,
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_events_org_type", "organization_id", "type"),
        Index("ix_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.type} id={self.id}>"
