"""
Endpoint registry - CRUD over organization webhook endpoints.

Secrets are generated here and never derivable from anything else; rotating
one takes effect on the next attempt because signing happens per attempt.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from eventdispatch.errors import NotFoundError, ValidationError
from eventdispatch.models.audit_event import Severity
from eventdispatch.models.delivery_attempt import DeliveryAttempt, DeliveryStatus
from eventdispatch.models.event import EventType
from eventdispatch.models.webhook_endpoint import WebhookEndpoint
from eventdispatch.services.audit import AuditSink, record_safely
from eventdispatch.services.event_store import EventStore, IdLike
from eventdispatch.utils.metrics import success_rate
from eventdispatch.utils.webhook_signatures import generate_webhook_secret

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("url", "event_types", "description", "active", "metadata")


def validate_endpoint_url(url: Any) -> str:
    """Require an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("Webhook URL is required")
    try:
        parsed = httpx.URL(url.strip())
    except httpx.InvalidURL as e:
        raise ValidationError(f"Invalid webhook URL: {url}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError(f"Invalid webhook URL: {url}")
    return str(parsed)


def validate_event_types(event_types: Any) -> list[str]:
    """Known event types or "*", de-duplicated in the given order."""
    if not event_types or isinstance(event_types, str):
        raise ValidationError("At least one event type is required")
    cleaned: list[str] = []
    for event_type in event_types:
        if event_type != EventType.WILDCARD and event_type not in EventType.ALL:
            raise ValidationError(f"Unknown event type: {event_type}")
        if event_type not in cleaned:
            cleaned.append(event_type)
    return cleaned


class EndpointRegistry:
    """Registration, update and inspection of webhook endpoints."""

    def __init__(self, store: EventStore, audit_sink: Optional[AuditSink] = None):
        self._store = store
        self._audit = audit_sink

    async def register(
        self,
        organization_id: str,
        url: str,
        event_types: list[str],
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> WebhookEndpoint:
        if not organization_id:
            raise ValidationError("organization_id is required")
        clean_url = validate_endpoint_url(url)
        types = validate_event_types(event_types)

        endpoint = await self._store.create_endpoint(
            organization_id=organization_id,
            url=clean_url,
            description=description,
            secret=generate_webhook_secret(),
            subscribed_event_types=types,
            active=True,
            metadata_=metadata or {},
        )
        logger.info(
            "Webhook endpoint registered: %s types=%s",
            clean_url, ",".join(types),
            extra={"endpoint_id": str(endpoint.id), "organization_id": organization_id},
        )
        await record_safely(
            self._audit,
            "webhook.endpoint.created",
            Severity.INFO,
            {"url": clean_url, "event_types": types},
            organization_id=organization_id,
            resource_type="webhook_endpoint",
            resource_id=str(endpoint.id),
        )
        return endpoint

    async def get(self, endpoint_id: IdLike) -> WebhookEndpoint:
        endpoint = await self._store.get_endpoint(endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Webhook endpoint {endpoint_id} not found")
        return endpoint

    async def update(self, endpoint_id: IdLike, **fields: Any) -> WebhookEndpoint:
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        values: dict[str, Any] = {}
        if "url" in fields:
            values["url"] = validate_endpoint_url(fields["url"])
        if "event_types" in fields:
            values["subscribed_event_types"] = validate_event_types(fields["event_types"])
        if "description" in fields:
            values["description"] = fields["description"]
        if "metadata" in fields:
            values["metadata_"] = fields["metadata"] or {}
        if "active" in fields:
            values["active"] = bool(fields["active"])
            if values["active"]:
                values["deactivated_at"] = None
                values["deactivation_reason"] = None

        endpoint = await self._store.update_endpoint(endpoint_id, values)
        if endpoint is None:
            raise NotFoundError(f"Webhook endpoint {endpoint_id} not found")

        await record_safely(
            self._audit,
            "webhook.endpoint.updated",
            Severity.INFO,
            {"fields": sorted(fields)},
            organization_id=endpoint.organization_id,
            resource_type="webhook_endpoint",
            resource_id=str(endpoint.id),
        )
        return endpoint

    async def rotate_secret(self, endpoint_id: IdLike) -> str:
        secret = generate_webhook_secret()
        endpoint = await self._store.update_endpoint(
            endpoint_id, {"secret": secret, "secret_rotated_at": datetime.now(timezone.utc)}
        )
        if endpoint is None:
            raise NotFoundError(f"Webhook endpoint {endpoint_id} not found")

        logger.info("Webhook secret rotated", extra={"endpoint_id": str(endpoint.id)})
        await record_safely(
            self._audit,
            "webhook.endpoint.secret_rotated",
            Severity.INFO,
            {},
            organization_id=endpoint.organization_id,
            resource_type="webhook_endpoint",
            resource_id=str(endpoint.id),
        )
        return secret

    async def delete(self, endpoint_id: IdLike) -> None:
        endpoint = await self.get(endpoint_id)
        if not await self._store.delete_endpoint(endpoint.id):
            raise NotFoundError(f"Webhook endpoint {endpoint_id} not found")

        logger.info("Webhook endpoint deleted: %s", endpoint.url, extra={"endpoint_id": str(endpoint.id)})
        await record_safely(
            self._audit,
            "webhook.endpoint.deleted",
            Severity.INFO,
            {"url": endpoint.url},
            organization_id=endpoint.organization_id,
            resource_type="webhook_endpoint",
            resource_id=str(endpoint.id),
        )

    async def list_subscribed(self, organization_id: str, event_type: str) -> list[WebhookEndpoint]:
        return await self._store.find_endpoints_by_org_and_event_type(organization_id, event_type)

    async def list_for_organization(
        self, organization_id: str, include_inactive: bool = True
    ) -> list[WebhookEndpoint]:
        return await self._store.list_endpoints(organization_id, include_inactive=include_inactive)

    async def list_deliveries(
        self,
        endpoint_id: IdLike,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        """
        Paged delivery history for an endpoint.
        Returns: {"deliveries": [DeliveryAttempt], "total": int, "limit": int, "offset": int}
        """
        if status and status not in (DeliveryStatus.PENDING, DeliveryStatus.SUCCESS, DeliveryStatus.FAILED):
            raise ValidationError(f"Unknown delivery status: {status}")
        deliveries, total = await self._store.list_deliveries(
            endpoint_id, status=status, since=since, until=until, limit=limit, offset=offset
        )
        return {"deliveries": deliveries, "total": total, "limit": limit, "offset": offset}

    async def delivery_stats(self, endpoint_id: IdLike, start: datetime, end: datetime) -> dict:
        """
        Aggregate delivery outcomes for an endpoint between start and end.
        Returns: {"total", "successful", "failed", "pending", "success_rate",
                  "average_duration_ms", "daily": [{"date", "total", "successful", "failed"}]}
        """
        await self.get(endpoint_id)
        attempts, _ = await self._store.list_deliveries(
            endpoint_id, since=start, until=end, limit=None
        )
        return summarize_attempts(attempts)

    @staticmethod
    def available_event_types() -> list[str]:
        return list(EventType.ALL)


def summarize_attempts(attempts: list[DeliveryAttempt]) -> dict:
    successful = sum(1 for a in attempts if a.status == DeliveryStatus.SUCCESS)
    failed = sum(1 for a in attempts if a.status == DeliveryStatus.FAILED)
    pending = sum(1 for a in attempts if a.status == DeliveryStatus.PENDING)

    durations = [a.duration_ms for a in attempts if a.duration_ms is not None]
    average = round(sum(durations) / len(durations)) if durations else 0

    daily: dict[str, dict] = defaultdict(lambda: {"total": 0, "successful": 0, "failed": 0})
    for attempt in attempts:
        bucket = daily[attempt.created_at.date().isoformat()]
        bucket["total"] += 1
        if attempt.status == DeliveryStatus.SUCCESS:
            bucket["successful"] += 1
        elif attempt.status == DeliveryStatus.FAILED:
            bucket["failed"] += 1

    return {
        "total": len(attempts),
        "successful": successful,
        "failed": failed,
        "pending": pending,
        "success_rate": success_rate(successful, len(attempts)),
        "average_duration_ms": average,
        "daily": [{"date": day, **counts} for day, counts in sorted(daily.items())],
    }
