"""
Notification resolver - persist the in-app record, then fan out to the
external channels the recipient asked for.

Channel precedence: explicit override, then the user's preference for the
notification type, then the organization's, then in-app only. IN_APP is
always included. External channels are best-effort: a failing channel is
recorded on the notification and never fails notify(). A request may name a
stored template instead of carrying its own title and message.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from eventdispatch.config import Settings, get_settings
from eventdispatch.errors import ValidationError
from eventdispatch.models.audit_event import Severity
from eventdispatch.models.notification import Notification, NotificationChannel, NotificationType
from eventdispatch.models.notification_preference import NotificationPreference, OwnerType
from eventdispatch.models.notification_template import NotificationTemplate
from eventdispatch.models.recipient_contact import RecipientContact
from eventdispatch.schemas.notifications import (
    ChannelContent,
    NotificationRequest,
    Recipient,
    SendResult,
)
from eventdispatch.services.audit import AuditSink, record_safely
from eventdispatch.services.channels import ChannelSender
from eventdispatch.services.event_store import EventStore, IdLike
from eventdispatch.services.notification_templates import TemplateRenderer
from eventdispatch.utils.phone import normalize_phone_e164

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 140
TITLE_MAX_LENGTH = 255

DELIVERY_KEYS = {
    NotificationChannel.EMAIL: "emailDelivery",
    NotificationChannel.SMS: "smsDelivery",
    NotificationChannel.PUSH: "pushDelivery",
}

TYPE_PREFIXES = {
    NotificationType.ERROR: "[Error] ",
    NotificationType.WARNING: "[Warning] ",
    NotificationType.SUCCESS: "[Success] ",
    NotificationType.INFO: "[Info] ",
}


def render_subject(notification_type: str, title: str) -> str:
    return f"{TYPE_PREFIXES.get(notification_type, '')}{title}"


def render_sms(notification_type: str, title: str, message: str) -> str:
    """Single SMS line, capped at 140 characters."""
    text = f"{TYPE_PREFIXES.get(notification_type, '')}{title}: {message}"
    if len(text) > SMS_MAX_LENGTH:
        text = text[: SMS_MAX_LENGTH - 3] + "..."
    return text


def _dedupe(channels: list[str]) -> list[str]:
    seen: list[str] = []
    for channel in channels:
        if channel not in seen:
            seen.append(channel)
    return seen


class NotificationService:
    """Creates notifications and delivers them over the resolved channels."""

    def __init__(
        self,
        store: EventStore,
        senders: Optional[dict[str, ChannelSender]] = None,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
        templates: Optional[TemplateRenderer] = None,
    ):
        self._store = store
        self._senders = senders or {}
        self._audit = audit_sink
        self._settings = settings or get_settings()
        self.templates = templates or TemplateRenderer(
            store, cache_ttl=self._settings.notification_template_cache_ttl_seconds
        )
        self._semaphore = asyncio.Semaphore(self._settings.notification_max_concurrency)

    async def resolve_channels(self, request: NotificationRequest) -> list[str]:
        if request.channels_override is not None:
            channels = list(request.channels_override)
        else:
            channels = None
            if request.user_id:
                channels = await self._store.get_preference_channels(
                    OwnerType.USER, request.user_id, request.type
                )
            if channels is None and request.organization_id:
                channels = await self._store.get_preference_channels(
                    OwnerType.ORGANIZATION, request.organization_id, request.type
                )
            channels = [c for c in (channels or []) if c in NotificationChannel.ALL]

        channels = _dedupe(channels)
        if NotificationChannel.IN_APP not in channels:
            channels.insert(0, NotificationChannel.IN_APP)
        return channels

    async def notify(self, request: Union[NotificationRequest, dict]) -> Notification:
        """
        Create a notification and deliver it.
        PersistenceError from the initial write propagates; nothing is sent then.
        A template that is unknown or missing variables fails before anything is stored.
        """
        if not isinstance(request, NotificationRequest):
            try:
                request = NotificationRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid notification request: {e.errors()[0]['msg']}") from e

        title, message, data = await self._content(request)
        channels = await self.resolve_channels(request)
        notification = await self._store.create_notification(
            user_id=request.user_id,
            organization_id=request.organization_id,
            title=title,
            message=message,
            type=request.type,
            data={**data, "deliveryChannels": channels},
            read=False,
            version=1,
        )
        log_extra = {"notification_id": str(notification.id), "organization_id": request.organization_id}
        logger.info("Notification created: channels=%s", ",".join(channels), extra=log_extra)

        external = [c for c in channels if c != NotificationChannel.IN_APP]
        if external:
            recipient, lookup_error = await self._resolve_recipient(request)
            results = await asyncio.gather(
                *(
                    self._deliver_channel(notification, channel, recipient, lookup_error)
                    for channel in external
                ),
                return_exceptions=True,
            )
            for channel, result in zip(external, results):
                if isinstance(result, BaseException):
                    logger.error(
                        "Channel task crashed: %s", str(result),
                        extra={**log_extra, "channel": channel},
                    )

            refreshed = await self._safe_get(notification.id)
            if refreshed is not None:
                notification = refreshed

        await record_safely(
            self._audit,
            "notification.created",
            Severity.INFO,
            {"notification_id": str(notification.id), "type": request.type, "channels": channels},
            organization_id=request.organization_id,
            resource_type="notification",
            resource_id=str(notification.id),
        )
        return notification

    async def _content(self, request: NotificationRequest) -> tuple[str, str, dict]:
        """Title, message and data; a template, when given, supplies title and message."""
        if request.template_id is None:
            return request.title, request.message, dict(request.data)

        title, message = await self.templates.render(request.template_id, request.template_data)
        if not title.strip() or not message.strip():
            raise ValidationError(f"Template {request.template_id} rendered an empty title or message")
        if len(title) > TITLE_MAX_LENGTH:
            raise ValidationError(f"Rendered title exceeds {TITLE_MAX_LENGTH} characters")
        return title, message, {**request.data, "templateId": request.template_id}

    async def _resolve_recipient(self, request: NotificationRequest) -> tuple[Recipient, Optional[str]]:
        """Merge user contact details over organization ones. Lookup errors are reported, not raised."""
        recipient = Recipient(user_id=request.user_id, organization_id=request.organization_id)
        try:
            user_contact = None
            org_contact = None
            if request.user_id:
                user_contact = await self._store.get_contact(OwnerType.USER, request.user_id)
            if request.organization_id:
                org_contact = await self._store.get_contact(OwnerType.ORGANIZATION, request.organization_id)
        except Exception as e:
            logger.warning("Recipient lookup failed: %s", str(e))
            return recipient, f"Recipient lookup failed: {str(e)}"

        for field in ("name", "email", "phone", "push_token"):
            value = None
            for contact in (user_contact, org_contact):
                if contact is not None and getattr(contact, field):
                    value = getattr(contact, field)
                    break
            setattr(recipient, field, value)
        return recipient, None

    async def _deliver_channel(
        self,
        notification: Notification,
        channel: str,
        recipient: Recipient,
        lookup_error: Optional[str],
    ) -> SendResult:
        log_extra = {"notification_id": str(notification.id), "channel": channel}
        async with self._semaphore:
            if lookup_error:
                result = SendResult(success=False, error=lookup_error)
            else:
                try:
                    result = await self._send(notification, channel, recipient)
                except Exception as e:
                    logger.error("%s sender raised: %s", channel, str(e), extra=log_extra)
                    result = SendResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            logger.info("Notification sent via %s", channel, extra=log_extra)
        else:
            logger.warning("Notification not sent via %s: %s", channel, result.error, extra=log_extra)
            await record_safely(
                self._audit,
                "notification.channel.failed",
                Severity.WARNING,
                {"notification_id": str(notification.id), "channel": channel, "error": result.error},
                organization_id=notification.organization_id,
                resource_type="notification",
                resource_id=str(notification.id),
            )

        await self._annotate(notification.id, channel, result)
        return result

    async def _send(self, notification: Notification, channel: str, recipient: Recipient) -> SendResult:
        """Check channel preconditions, render and hand off to the sender."""
        body = notification.message
        if channel == NotificationChannel.EMAIL:
            if not recipient.email:
                return SendResult(success=False, error="No email recipient")
        elif channel == NotificationChannel.SMS:
            if not recipient.phone:
                return SendResult(success=False, error="No phone number")
            phone = normalize_phone_e164(recipient.phone, self._settings.notification_default_region)
            if phone is None:
                return SendResult(success=False, error="Invalid phone number")
            recipient = recipient.model_copy(update={"phone": phone})
            body = render_sms(notification.type, notification.title, notification.message)
        elif channel == NotificationChannel.PUSH:
            if not recipient.push_token and not recipient.user_id:
                return SendResult(success=False, error="No push recipient")

        sender = self._senders.get(channel)
        if sender is None:
            return SendResult(success=False, error=f"No sender configured for {channel}")

        content = ChannelContent(
            notification_id=str(notification.id),
            type=notification.type,
            title=notification.title,
            subject=render_subject(notification.type, notification.title),
            body=body,
            data={k: v for k, v in (notification.data or {}).items() if not k.endswith("Delivery")},
        )
        return await sender.send(recipient, content)

    async def _annotate(self, notification_id, channel: str, result: SendResult) -> None:
        annotation = {
            "status": "SENT" if result.success else "FAILED",
            "messageId": result.provider_message_id,
            "error": result.error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            merged = await self._store.update_notification_data(
                notification_id, {DELIVERY_KEYS[channel]: annotation}
            )
            if not merged:
                logger.warning(
                    "Delivery status for %s not recorded: too many concurrent updates", channel,
                    extra={"notification_id": str(notification_id), "channel": channel},
                )
        except Exception as e:
            logger.warning(
                "Delivery status for %s not recorded: %s", channel, str(e),
                extra={"notification_id": str(notification_id), "channel": channel},
            )

    async def _safe_get(self, notification_id) -> Optional[Notification]:
        try:
            return await self._store.get_notification(notification_id)
        except Exception as e:
            logger.warning("Could not reload notification %s: %s", notification_id, str(e))
            return None

    async def mark_as_read(self, notification_id: IdLike) -> Notification:
        """Idempotent: marking an already-read notification changes nothing."""
        return await self._store.mark_notification_read(notification_id)

    async def mark_all_as_read(
        self, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        if not user_id and not organization_id:
            raise ValidationError("user_id or organization_id is required")
        count = await self._store.mark_all_notifications_read(user_id=user_id, organization_id=organization_id)
        logger.info("Marked %d notifications as read", count, extra={"organization_id": organization_id})
        return count

    async def list_notifications(
        self,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        include_read: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        """
        Returns: {"notifications": [Notification], "total": int, "unread": int}
        """
        if not user_id and not organization_id:
            raise ValidationError("user_id or organization_id is required")
        items, total, unread = await self._store.list_notifications(
            user_id=user_id,
            organization_id=organization_id,
            include_read=include_read,
            limit=limit,
            offset=offset,
        )
        return {"notifications": items, "total": total, "unread": unread}

    async def set_preference(
        self, owner_type: str, owner_id: str, notification_type: str, channels: list[str]
    ) -> NotificationPreference:
        if owner_type not in (OwnerType.USER, OwnerType.ORGANIZATION):
            raise ValidationError(f"Unknown owner type: {owner_type}")
        if notification_type not in NotificationType.ALL:
            raise ValidationError(f"Unknown notification type: {notification_type}")
        unknown = [c for c in channels if c not in NotificationChannel.ALL]
        if unknown:
            raise ValidationError(f"Unknown channels: {', '.join(unknown)}")
        return await self._store.set_preference(owner_type, owner_id, notification_type, _dedupe(channels))

    async def set_contact(self, owner_type: str, owner_id: str, **fields: Any) -> RecipientContact:
        if owner_type not in (OwnerType.USER, OwnerType.ORGANIZATION):
            raise ValidationError(f"Unknown owner type: {owner_type}")
        unknown = set(fields) - {"name", "email", "phone", "push_token"}
        if unknown:
            raise ValidationError(f"Cannot set contact fields: {', '.join(sorted(unknown))}")
        return await self._store.upsert_contact(owner_type, owner_id, **fields)

    async def create_template(self, name: str, subject: str, body: str) -> NotificationTemplate:
        return await self.templates.create(name, subject, body)

    async def update_template(self, template_id: IdLike, **fields: Any) -> NotificationTemplate:
        return await self.templates.update(template_id, **fields)
