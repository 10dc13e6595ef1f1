"""
Dispatch core - the interface the billing services talk to.

Wires the event store, endpoint registry, webhook dispatcher, webhook
monitor and notification resolver together. emit_webhook() persists the
event and returns at once; delivery runs as a tracked background task.
"""
import asyncio
import logging
from typing import Any, Optional, Union

import httpx

from eventdispatch.config import Settings, get_settings
from eventdispatch.models.delivery_attempt import DeliveryAttempt
from eventdispatch.models.event import Event
from eventdispatch.models.notification import Notification, NotificationChannel
from eventdispatch.models.notification_template import NotificationTemplate
from eventdispatch.models.webhook_endpoint import WebhookEndpoint
from eventdispatch.schemas.event_payloads import validate_event_payload
from eventdispatch.schemas.notifications import NotificationRequest
from eventdispatch.services.audit import AuditSink, DatabaseAuditSink
from eventdispatch.services.channels import (
    ChannelSender,
    HttpPushSender,
    SendGridEmailSender,
    TwilioSmsSender,
)
from eventdispatch.services.endpoint_registry import EndpointRegistry
from eventdispatch.services.event_store import EventStore, IdLike, SqlEventStore
from eventdispatch.services.notifications import NotificationService
from eventdispatch.services.webhook_delivery import WebhookDispatcher
from eventdispatch.services.webhook_monitor import WebhookMonitor
from eventdispatch.utils.logging import ensure_correlation_id
from eventdispatch.utils.rate_limiter import RateLimiter
from eventdispatch.utils.webhook_signatures import verify

logger = logging.getLogger(__name__)


class DispatchCore:
    """One per process. Construct with from_settings() or inject collaborators directly."""

    def __init__(
        self,
        store: EventStore,
        http_client: httpx.AsyncClient,
        audit_sink: Optional[AuditSink] = None,
        senders: Optional[dict[str, ChannelSender]] = None,
        settings: Optional[Settings] = None,
        rate_limiter=None,
        sleep=asyncio.sleep,
        owns_http_client: bool = False,
    ):
        self._settings = settings or get_settings()
        self._store = store
        self._http = http_client
        self._owns_http_client = owns_http_client
        self._tasks: set[asyncio.Task] = set()

        self.registry = EndpointRegistry(store, audit_sink)
        self.dispatcher = WebhookDispatcher(
            store,
            http_client,
            audit_sink=audit_sink,
            settings=self._settings,
            rate_limiter=rate_limiter,
            sleep=sleep,
        )
        self.notifications = NotificationService(
            store, senders=senders, audit_sink=audit_sink, settings=self._settings
        )
        self.monitor = WebhookMonitor(store, audit_sink, settings=self._settings)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DispatchCore":
        """Production wiring: SQL store, database audit sink, Redis rate limiter, provider senders."""
        from eventdispatch.database import get_session_factory

        settings = settings or get_settings()
        store = SqlEventStore(get_session_factory())
        http_client = httpx.AsyncClient(
            timeout=settings.webhook_timeout_seconds,
            follow_redirects=False,
        )
        senders = {
            NotificationChannel.EMAIL: SendGridEmailSender(settings),
            NotificationChannel.SMS: TwilioSmsSender(settings),
            NotificationChannel.PUSH: HttpPushSender(http_client, settings),
        }
        return cls(
            store,
            http_client,
            audit_sink=DatabaseAuditSink(store),
            senders=senders,
            settings=settings,
            rate_limiter=RateLimiter(),
            owns_http_client=True,
        )

    async def __aenter__(self) -> "DispatchCore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # Webhooks

    async def emit_webhook(self, organization_id: str, event_type: str, data: Any) -> Event:
        """
        Persist an event and schedule its webhook delivery.
        ValidationError for unknown types or bad payloads; PersistenceError if
        the event cannot be stored. Delivery failures never surface here.
        """
        payload = validate_event_payload(event_type, data)
        correlation_id = ensure_correlation_id()
        event = await self._store.create_event(
            organization_id, event_type, payload, correlation_id=correlation_id
        )
        logger.info(
            "Event emitted: %s", event_type,
            extra={"event_id": str(event.id), "organization_id": organization_id},
        )

        task = asyncio.create_task(self._dispatch_in_background(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return event

    async def _dispatch_in_background(self, event: Event) -> None:
        try:
            await self.dispatcher.dispatch(event)
        except Exception as e:
            logger.error(
                "Dispatch failed for event %s: %s", event.id, str(e),
                exc_info=True,
                extra={"event_id": str(event.id), "organization_id": event.organization_id},
            )

    async def register_webhook_endpoint(
        self,
        organization_id: str,
        url: str,
        event_types: list[str],
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> WebhookEndpoint:
        return await self.registry.register(
            organization_id, url, event_types, description=description, metadata=metadata
        )

    async def update_webhook_endpoint(self, endpoint_id: IdLike, **fields: Any) -> WebhookEndpoint:
        return await self.registry.update(endpoint_id, **fields)

    async def delete_webhook_endpoint(self, endpoint_id: IdLike) -> None:
        await self.registry.delete(endpoint_id)

    async def rotate_secret(self, endpoint_id: IdLike) -> str:
        return await self.registry.rotate_secret(endpoint_id)

    async def list_webhook_endpoints(
        self, organization_id: str, include_inactive: bool = True
    ) -> list[WebhookEndpoint]:
        return await self.registry.list_for_organization(organization_id, include_inactive=include_inactive)

    async def retry_delivery(self, attempt_id: IdLike) -> DeliveryAttempt:
        return await self.dispatcher.retry_delivery(attempt_id)

    def verify_incoming_signature(
        self, signature: str, secret: str, body: Union[str, bytes], tolerance: Optional[int] = None
    ) -> bool:
        if tolerance is None:
            tolerance = self._settings.webhook_signature_tolerance_seconds
        return verify(signature, secret, body, tolerance=tolerance)

    async def webhook_stats(self, organization_id: str, window_hours: Optional[int] = None) -> dict:
        return await self.monitor.organization_stats(organization_id, window_hours=window_hours)

    # Notifications

    async def notify(self, request: Union[NotificationRequest, dict]) -> Notification:
        return await self.notifications.notify(request)

    async def mark_as_read(self, notification_id: IdLike) -> Notification:
        return await self.notifications.mark_as_read(notification_id)

    async def mark_all_as_read(
        self, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        return await self.notifications.mark_all_as_read(user_id=user_id, organization_id=organization_id)

    async def create_notification_template(self, name: str, subject: str, body: str) -> NotificationTemplate:
        return await self.notifications.create_template(name, subject, body)

    async def update_notification_template(self, template_id: IdLike, **fields: Any) -> NotificationTemplate:
        return await self.notifications.update_template(template_id, **fields)

    # Lifecycle

    @property
    def pending_deliveries(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled delivery, including ones scheduled while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding deliveries and release the HTTP client."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if self._owns_http_client:
            await self._http.aclose()
