"""
Notification request and channel delivery schemas.
"""
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from eventdispatch.models.notification import NotificationChannel, NotificationType


class NotificationRequest(BaseModel):
    """
    Input to notify(); at least one of user_id or organization_id is required.
    Either title and message, or a template_id whose placeholders are filled
    from template_data.
    """
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    message: Optional[str] = Field(None, min_length=1)
    template_id: Optional[str] = None
    template_data: dict[str, Any] = Field(default_factory=dict)
    type: str = NotificationType.INFO
    data: dict[str, Any] = Field(default_factory=dict)
    channels_override: Optional[list[str]] = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in NotificationType.ALL:
            raise ValueError(f"Unknown notification type: {value}")
        return value

    @field_validator("channels_override")
    @classmethod
    def _known_channels(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return value
        unknown = [c for c in value if c not in NotificationChannel.ALL]
        if unknown:
            raise ValueError(f"Unknown channels: {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _has_owner(self) -> "NotificationRequest":
        if not self.user_id and not self.organization_id:
            raise ValueError("user_id or organization_id is required")
        return self

    @model_validator(mode="after")
    def _has_content(self) -> "NotificationRequest":
        if self.template_id is None and (self.title is None or self.message is None):
            raise ValueError("title and message are required unless template_id is given")
        return self


class Recipient(BaseModel):
    """Resolved contact details for one notification."""
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None


class ChannelContent(BaseModel):
    """Rendered content handed to a channel sender."""
    notification_id: str
    type: str
    title: str
    subject: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)


class SendResult(BaseModel):
    """Outcome reported by a channel sender."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
