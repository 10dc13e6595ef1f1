"""
Notification records - the in-app source of truth for every notify() call.
Channel outcomes are merged into data under <channel>Delivery keys.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class NotificationType:
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"

    ALL = (INFO, SUCCESS, WARNING, ERROR)


class NotificationChannel:
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    SMS = "SMS"
    PUSH = "PUSH"

    ALL = (IN_APP, EMAIL, SMS, PUSH)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    organization_id: Mapped[Optional[str]] = mapped_column(String(64))

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(
        String(20), default=NotificationType.INFO, nullable=False
    )  # INFO, SUCCESS, WARNING, ERROR

    # deliveryChannels plus emailDelivery / smsDelivery / pushDelivery
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Bumped on every data merge; concurrent channel tasks compare-and-swap on it
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read"),
        Index("ix_notifications_org_read", "organization_id", "read"),
        Index("ix_notifications_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Notification {self.type} {self.title!r} read={self.read}>"
