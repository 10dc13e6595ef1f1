"""
Database models - import all models here so Alembic can discover them.
"""
from eventdispatch.models.event import Event
from eventdispatch.models.webhook_endpoint import WebhookEndpoint
from eventdispatch.models.delivery_attempt import DeliveryAttempt
from eventdispatch.models.notification import Notification
from eventdispatch.models.notification_preference import NotificationPreference
from eventdispatch.models.recipient_contact import RecipientContact
from eventdispatch.models.notification_template import NotificationTemplate
from eventdispatch.models.audit_event import AuditEvent

__all__ = [
    "Event",
    "WebhookEndpoint",
    "DeliveryAttempt",
    "Notification",
    "NotificationPreference",
    "RecipientContact",
    "NotificationTemplate",
    "AuditEvent",
]
