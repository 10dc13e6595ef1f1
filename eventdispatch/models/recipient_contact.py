"""
Contact directory for notification channels.
Looked up user first, then organization.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from eventdispatch.database import Base


class RecipientContact(Base):
    __tablename__ = "recipient_contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False)  # user, organization
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    push_token: Mapped[Optional[str]] = mapped_column(String(512))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("owner_type", "owner_id", name="uq_recipient_contact_owner"),
    )

    def __repr__(self) -> str:
        return f"<RecipientContact {self.owner_type}:{self.owner_id}>"
