"""
Per-user and per-organization channel preferences, keyed by notification type.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class OwnerType:
    USER = "user"
    ORGANIZATION = "organization"


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False)  # user, organization
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Ordered list of channels, e.g. ["EMAIL", "SMS"]
    channels: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_type", "owner_id", "notification_type", name="uq_notification_preference_owner_type"
        ),
    )

    def __repr__(self) -> str:
        return f"<NotificationPreference {self.owner_type}:{self.owner_id} {self.notification_type}>"
