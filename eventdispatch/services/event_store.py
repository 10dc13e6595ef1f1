"""
Event store - persistence for events, endpoints, delivery attempts,
notifications, templates, preferences, contacts and audit events.

EventStore is the interface the dispatch core consumes; SqlEventStore is the
SQLAlchemy implementation. Every database failure surfaces as PersistenceError.
Coordination between processes happens here: conditional updates, the
attempt-number unique constraint and optimistic versioning on notification data.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventdispatch.errors import NotFoundError, PersistenceError
from eventdispatch.models.audit_event import AuditEvent
from eventdispatch.models.delivery_attempt import DeliveryAttempt, DeliveryStatus
from eventdispatch.models.event import Event
from eventdispatch.models.notification import Notification
from eventdispatch.models.notification_preference import NotificationPreference
from eventdispatch.models.notification_template import NotificationTemplate
from eventdispatch.models.recipient_contact import RecipientContact
from eventdispatch.models.webhook_endpoint import WebhookEndpoint

logger = logging.getLogger(__name__)

IdLike = Union[uuid.UUID, str]

NOTIFICATION_UPDATE_RETRIES = 5


def as_uuid(value: IdLike) -> uuid.UUID:
    """Coerce an id; anything that is not a UUID cannot exist in the store."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError) as e:
        raise NotFoundError(f"Unknown id: {value}") from e


class EventStore(ABC):
    """Persistence interface consumed by the registry, dispatcher and resolver."""

    # Events

    @abstractmethod
    async def create_event(
        self,
        organization_id: str,
        event_type: str,
        payload: dict,
        correlation_id: Optional[str] = None,
    ) -> Event:
        ...

    @abstractmethod
    async def get_event(self, event_id: IdLike) -> Optional[Event]:
        ...

    # Endpoints

    @abstractmethod
    async def create_endpoint(self, **fields: Any) -> WebhookEndpoint:
        ...

    @abstractmethod
    async def get_endpoint(self, endpoint_id: IdLike) -> Optional[WebhookEndpoint]:
        ...

    @abstractmethod
    async def update_endpoint(self, endpoint_id: IdLike, values: dict) -> Optional[WebhookEndpoint]:
        """Apply values; returns the updated endpoint or None if it does not exist."""
        ...

    @abstractmethod
    async def deactivate_endpoint_if_active(self, endpoint_id: IdLike, reason: str) -> bool:
        """Flip active to False only if it is currently True. Returns whether this call did it."""
        ...

    @abstractmethod
    async def delete_endpoint(self, endpoint_id: IdLike) -> bool:
        ...

    @abstractmethod
    async def list_endpoints(
        self, organization_id: str, include_inactive: bool = True
    ) -> list[WebhookEndpoint]:
        ...

    @abstractmethod
    async def find_endpoints_by_org_and_event_type(
        self, organization_id: str, event_type: str
    ) -> list[WebhookEndpoint]:
        """Active endpoints of the organization subscribed to event_type (or "*")."""
        ...

    # Delivery attempts

    @abstractmethod
    async def create_delivery(
        self,
        event: Event,
        endpoint: WebhookEndpoint,
        request_body: str,
        is_retry: bool = False,
    ) -> DeliveryAttempt:
        """Append a PENDING attempt numbered latest + 1 for the pair."""
        ...

    @abstractmethod
    async def update_delivery(self, attempt_id: IdLike, values: dict) -> None:
        ...

    @abstractmethod
    async def get_delivery(self, attempt_id: IdLike) -> Optional[DeliveryAttempt]:
        ...

    @abstractmethod
    async def has_successful_delivery(self, event_id: IdLike, endpoint_id: IdLike) -> bool:
        ...

    @abstractmethod
    async def list_deliveries(
        self,
        endpoint_id: IdLike,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryAttempt], int]:
        ...

    @abstractmethod
    async def list_attempt_outcomes(
        self, endpoint_id: IdLike, since: datetime
    ) -> list[tuple[uuid.UUID, str]]:
        """(event_id, status) for every attempt of the endpoint created since `since`."""
        ...

    @abstractmethod
    async def list_organization_attempts(
        self, organization_id: str, since: datetime
    ) -> list[DeliveryAttempt]:
        """Attempts for the organization's events created since `since`, newest first."""
        ...

    @abstractmethod
    async def fail_stale_deliveries(self, older_than: datetime, reason: str) -> int:
        ...

    # Notifications

    @abstractmethod
    async def create_notification(self, **fields: Any) -> Notification:
        ...

    @abstractmethod
    async def get_notification(self, notification_id: IdLike) -> Optional[Notification]:
        ...

    @abstractmethod
    async def update_notification_data(self, notification_id: IdLike, patch: dict) -> bool:
        """Merge patch into data without losing concurrent merges. Returns False if retries ran out."""
        ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: IdLike) -> Notification:
        ...

    @abstractmethod
    async def mark_all_notifications_read(
        self, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        ...

    @abstractmethod
    async def list_notifications(
        self,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        include_read: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Notification], int, int]:
        ...

    # Preferences and contacts

    @abstractmethod
    async def get_preference_channels(
        self, owner_type: str, owner_id: str, notification_type: str
    ) -> Optional[list[str]]:
        ...

    @abstractmethod
    async def set_preference(
        self, owner_type: str, owner_id: str, notification_type: str, channels: list[str]
    ) -> NotificationPreference:
        ...

    @abstractmethod
    async def get_contact(self, owner_type: str, owner_id: str) -> Optional[RecipientContact]:
        ...

    @abstractmethod
    async def upsert_contact(self, owner_type: str, owner_id: str, **fields: Any) -> RecipientContact:
        ...

    # Templates

    @abstractmethod
    async def create_template(self, **fields: Any) -> NotificationTemplate:
        ...

    @abstractmethod
    async def get_template(self, template_id: IdLike) -> Optional[NotificationTemplate]:
        ...

    @abstractmethod
    async def update_template(self, template_id: IdLike, **fields: Any) -> NotificationTemplate:
        """NotFoundError if the template does not exist."""
        ...

    # Audit

    @abstractmethod
    async def create_audit_event(self, **fields: Any) -> AuditEvent:
        ...


class SqlEventStore(EventStore):
    """EventStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self):
        """One session, one transaction; commits on exit."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Event store operation failed: %s", str(e))
            raise PersistenceError(str(e)) from e

    # Events

    async def create_event(
        self,
        organization_id: str,
        event_type: str,
        payload: dict,
        correlation_id: Optional[str] = None,
    ) -> Event:
        event = Event(
            organization_id=organization_id,
            type=event_type,
            payload=payload,
            correlation_id=correlation_id,
            created_at=datetime.now(timezone.utc),
        )
        async with self._transaction() as session:
            session.add(event)
        return event

    async def get_event(self, event_id: IdLike) -> Optional[Event]:
        async with self._transaction() as session:
            return await session.get(Event, as_uuid(event_id))

    # Endpoints

    async def create_endpoint(self, **fields: Any) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(**fields)
        async with self._transaction() as session:
            session.add(endpoint)
        return endpoint

    async def get_endpoint(self, endpoint_id: IdLike) -> Optional[WebhookEndpoint]:
        async with self._transaction() as session:
            return await session.get(WebhookEndpoint, as_uuid(endpoint_id))

    async def update_endpoint(self, endpoint_id: IdLike, values: dict) -> Optional[WebhookEndpoint]:
        async with self._transaction() as session:
            endpoint = await session.get(WebhookEndpoint, as_uuid(endpoint_id))
            if endpoint is None:
                return None
            for key, value in values.items():
                setattr(endpoint, key, value)
            endpoint.updated_at = datetime.now(timezone.utc)
        return endpoint

    async def deactivate_endpoint_if_active(self, endpoint_id: IdLike, reason: str) -> bool:
        now = datetime.now(timezone.utc)
        async with self._transaction() as session:
            result = await session.execute(
                update(WebhookEndpoint)
                .where(
                    WebhookEndpoint.id == as_uuid(endpoint_id),
                    WebhookEndpoint.active.is_(True),
                )
                .values(
                    active=False,
                    deactivated_at=now,
                    deactivation_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def delete_endpoint(self, endpoint_id: IdLike) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(WebhookEndpoint)
                .where(WebhookEndpoint.id == as_uuid(endpoint_id))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def list_endpoints(
        self, organization_id: str, include_inactive: bool = True
    ) -> list[WebhookEndpoint]:
        query = select(WebhookEndpoint).where(WebhookEndpoint.organization_id == organization_id)
        if not include_inactive:
            query = query.where(WebhookEndpoint.active.is_(True))
        query = query.order_by(WebhookEndpoint.created_at.desc())
        async with self._transaction() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_endpoints_by_org_and_event_type(
        self, organization_id: str, event_type: str
    ) -> list[WebhookEndpoint]:
        # Subscription lists are JSON; filtered here to stay portable across backends
        endpoints = await self.list_endpoints(organization_id, include_inactive=False)
        return [e for e in endpoints if e.subscribes_to(event_type)]

    # Delivery attempts

    async def create_delivery(
        self,
        event: Event,
        endpoint: WebhookEndpoint,
        request_body: str,
        is_retry: bool = False,
    ) -> DeliveryAttempt:
        async with self._transaction() as session:
            latest = await session.scalar(
                select(func.max(DeliveryAttempt.attempt_number)).where(
                    DeliveryAttempt.event_id == event.id,
                    DeliveryAttempt.endpoint_id == endpoint.id,
                )
            )
            attempt = DeliveryAttempt(
                event_id=event.id,
                endpoint_id=endpoint.id,
                endpoint_url=endpoint.url,
                event_type=event.type,
                attempt_number=(latest or 0) + 1,
                status=DeliveryStatus.PENDING,
                is_retry=is_retry,
                request_body=request_body,
                created_at=datetime.now(timezone.utc),
            )
            session.add(attempt)
        return attempt

    async def update_delivery(self, attempt_id: IdLike, values: dict) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                update(DeliveryAttempt)
                .where(DeliveryAttempt.id == as_uuid(attempt_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Delivery attempt {attempt_id} not found")

    async def get_delivery(self, attempt_id: IdLike) -> Optional[DeliveryAttempt]:
        async with self._transaction() as session:
            return await session.get(DeliveryAttempt, as_uuid(attempt_id))

    async def has_successful_delivery(self, event_id: IdLike, endpoint_id: IdLike) -> bool:
        async with self._transaction() as session:
            count = await session.scalar(
                select(func.count(DeliveryAttempt.id)).where(
                    DeliveryAttempt.event_id == as_uuid(event_id),
                    DeliveryAttempt.endpoint_id == as_uuid(endpoint_id),
                    DeliveryAttempt.status == DeliveryStatus.SUCCESS,
                )
            )
            return bool(count)

    async def list_deliveries(
        self,
        endpoint_id: IdLike,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> tuple[list[DeliveryAttempt], int]:
        conditions = [DeliveryAttempt.endpoint_id == as_uuid(endpoint_id)]
        if status:
            conditions.append(DeliveryAttempt.status == status)
        if since:
            conditions.append(DeliveryAttempt.created_at >= since)
        if until:
            conditions.append(DeliveryAttempt.created_at <= until)

        async with self._transaction() as session:
            total = await session.scalar(
                select(func.count(DeliveryAttempt.id)).where(*conditions)
            )
            result = await session.execute(
                select(DeliveryAttempt)
                .where(*conditions)
                .order_by(DeliveryAttempt.created_at.desc(), DeliveryAttempt.attempt_number.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total or 0

    async def list_attempt_outcomes(
        self, endpoint_id: IdLike, since: datetime
    ) -> list[tuple[uuid.UUID, str]]:
        async with self._transaction() as session:
            result = await session.execute(
                select(DeliveryAttempt.event_id, DeliveryAttempt.status).where(
                    DeliveryAttempt.endpoint_id == as_uuid(endpoint_id),
                    DeliveryAttempt.created_at >= since,
                )
            )
            return [(row.event_id, row.status) for row in result.all()]

    async def list_organization_attempts(
        self, organization_id: str, since: datetime
    ) -> list[DeliveryAttempt]:
        async with self._transaction() as session:
            result = await session.execute(
                select(DeliveryAttempt)
                .join(Event, Event.id == DeliveryAttempt.event_id)
                .where(
                    Event.organization_id == organization_id,
                    DeliveryAttempt.created_at >= since,
                )
                .order_by(DeliveryAttempt.created_at.desc(), DeliveryAttempt.attempt_number.desc())
            )
            return list(result.scalars().all())

    async def fail_stale_deliveries(self, older_than: datetime, reason: str) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(DeliveryAttempt)
                .where(
                    DeliveryAttempt.status == DeliveryStatus.PENDING,
                    DeliveryAttempt.created_at < older_than,
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    error_message=reason,
                    completed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # Notifications

    async def create_notification(self, **fields: Any) -> Notification:
        fields.setdefault("created_at", datetime.now(timezone.utc))
        notification = Notification(**fields)
        async with self._transaction() as session:
            session.add(notification)
        return notification

    async def get_notification(self, notification_id: IdLike) -> Optional[Notification]:
        async with self._transaction() as session:
            return await session.get(Notification, as_uuid(notification_id))

    async def update_notification_data(self, notification_id: IdLike, patch: dict) -> bool:
        nid = as_uuid(notification_id)
        for _ in range(NOTIFICATION_UPDATE_RETRIES):
            async with self._transaction() as session:
                row = (
                    await session.execute(
                        select(Notification.data, Notification.version).where(Notification.id == nid)
                    )
                ).one_or_none()
                if row is None:
                    raise NotFoundError(f"Notification {notification_id} not found")

                merged = {**(row.data or {}), **patch}
                result = await session.execute(
                    update(Notification)
                    .where(Notification.id == nid, Notification.version == row.version)
                    .values(data=merged, version=row.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return True
            logger.debug("Notification %s data changed concurrently, retrying merge", nid)
        return False

    async def mark_notification_read(self, notification_id: IdLike) -> Notification:
        nid = as_uuid(notification_id)
        async with self._transaction() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == nid, Notification.read.is_(False))
                .values(read=True, read_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            notification = await session.get(Notification, nid)
            if notification is None:
                raise NotFoundError(f"Notification {notification_id} not found")
            return notification

    async def mark_all_notifications_read(
        self, user_id: Optional[str] = None, organization_id: Optional[str] = None
    ) -> int:
        conditions = [Notification.read.is_(False)]
        if user_id:
            conditions.append(Notification.user_id == user_id)
        if organization_id:
            conditions.append(Notification.organization_id == organization_id)

        async with self._transaction() as session:
            result = await session.execute(
                update(Notification)
                .where(*conditions)
                .values(read=True, read_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def list_notifications(
        self,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        include_read: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Notification], int, int]:
        owner = []
        if user_id:
            owner.append(Notification.user_id == user_id)
        if organization_id:
            owner.append(Notification.organization_id == organization_id)

        listed = list(owner)
        if not include_read:
            listed.append(Notification.read.is_(False))

        async with self._transaction() as session:
            total = await session.scalar(select(func.count(Notification.id)).where(*listed))
            unread = await session.scalar(
                select(func.count(Notification.id)).where(*owner, Notification.read.is_(False))
            )
            result = await session.execute(
                select(Notification)
                .where(*listed)
                .order_by(Notification.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total or 0, unread or 0

    # Preferences and contacts

    async def get_preference_channels(
        self, owner_type: str, owner_id: str, notification_type: str
    ) -> Optional[list[str]]:
        async with self._transaction() as session:
            return await session.scalar(
                select(NotificationPreference.channels).where(
                    NotificationPreference.owner_type == owner_type,
                    NotificationPreference.owner_id == owner_id,
                    NotificationPreference.notification_type == notification_type,
                )
            )

    async def set_preference(
        self, owner_type: str, owner_id: str, notification_type: str, channels: list[str]
    ) -> NotificationPreference:
        async with self._transaction() as session:
            result = await session.execute(
                select(NotificationPreference).where(
                    NotificationPreference.owner_type == owner_type,
                    NotificationPreference.owner_id == owner_id,
                    NotificationPreference.notification_type == notification_type,
                )
            )
            preference = result.scalar_one_or_none()
            if preference is None:
                preference = NotificationPreference(
                    owner_type=owner_type,
                    owner_id=owner_id,
                    notification_type=notification_type,
                )
                session.add(preference)
            preference.channels = list(channels)
        return preference

    async def get_contact(self, owner_type: str, owner_id: str) -> Optional[RecipientContact]:
        async with self._transaction() as session:
            result = await session.execute(
                select(RecipientContact).where(
                    RecipientContact.owner_type == owner_type,
                    RecipientContact.owner_id == owner_id,
                )
            )
            return result.scalar_one_or_none()

    async def upsert_contact(self, owner_type: str, owner_id: str, **fields: Any) -> RecipientContact:
        async with self._transaction() as session:
            result = await session.execute(
                select(RecipientContact).where(
                    RecipientContact.owner_type == owner_type,
                    RecipientContact.owner_id == owner_id,
                )
            )
            contact = result.scalar_one_or_none()
            if contact is None:
                contact = RecipientContact(owner_type=owner_type, owner_id=owner_id)
                session.add(contact)
            for key, value in fields.items():
                setattr(contact, key, value)
        return contact

    # Templates

    async def create_template(self, **fields: Any) -> NotificationTemplate:
        template = NotificationTemplate(**fields)
        async with self._transaction() as session:
            session.add(template)
        return template

    async def get_template(self, template_id: IdLike) -> Optional[NotificationTemplate]:
        async with self._transaction() as session:
            return await session.get(NotificationTemplate, as_uuid(template_id))

    async def update_template(self, template_id: IdLike, **fields: Any) -> NotificationTemplate:
        async with self._transaction() as session:
            template = await session.get(NotificationTemplate, as_uuid(template_id))
            if template is None:
                raise NotFoundError(f"Template not found: {template_id}")
            for key, value in fields.items():
                setattr(template, key, value)
        return template

    # Audit

    async def create_audit_event(self, **fields: Any) -> AuditEvent:
        fields.setdefault("created_at", datetime.now(timezone.utc))
        audit_event = AuditEvent(**fields)
        async with self._transaction() as session:
            session.add(audit_event)
        return audit_event
