"""
Webhook delivery dispatcher - fans an event out to every subscribed endpoint.

Each endpoint gets an independent attempt chain: sign, POST, record, and on
failure retry on a fixed schedule (1s, 5s, 15s) up to the attempt budget.
Attempts are strictly sequential within a chain and concurrent across
endpoints. A terminal failure triggers the endpoint health check, which
deactivates endpoints that keep failing.

CRITICAL: nothing in here raises to the code that emitted the event.
"""
import asyncio
import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

import httpx

from eventdispatch.config import Settings, get_settings
from eventdispatch.errors import (
    DeliveryError,
    InvalidStateError,
    LockTimeoutError,
    NotFoundError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from eventdispatch.models.audit_event import Severity
from eventdispatch.models.delivery_attempt import DeliveryAttempt, DeliveryStatus
from eventdispatch.models.event import Event
from eventdispatch.models.webhook_endpoint import WebhookEndpoint
from eventdispatch.services.audit import AuditSink, record_safely
from eventdispatch.services.event_store import EventStore, IdLike
from eventdispatch.utils.locks import delivery_lock
from eventdispatch.utils.metrics import Timer
from eventdispatch.utils.webhook_signatures import sign

logger = logging.getLogger(__name__)

DEACTIVATION_REASON = "High failure rate"
CANCELLED_REASON = "endpoint deactivated"
RATE_LIMITED_REASON = "Outbound rate limit exceeded"


def _iso8601(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_payload_body(event: Event) -> str:
    """
    Serialize the delivery body once per chain.
    id is the event id, so receivers can dedupe across retries and endpoints.
    """
    payload = {
        "id": str(event.id),
        "type": event.type,
        "createdAt": _iso8601(event.created_at),
        "data": event.payload or {},
    }
    return json.dumps(payload, separators=(",", ":"), default=str)


def classify_response(status_code: int, body: str) -> None:
    """Raise the matching DeliveryError for a non-2xx response."""
    if 200 <= status_code < 300:
        return
    message = f"HTTP {status_code}"
    if 400 <= status_code < 500 and status_code != 429:
        raise PermanentDeliveryError(message, status_code=status_code, response_body=body)
    raise TransientDeliveryError(message, status_code=status_code, response_body=body)


class WebhookDispatcher:
    """Owns the per-(event, endpoint) retry state machine and the health circuit-breaker."""

    def __init__(
        self,
        store: EventStore,
        http_client: httpx.AsyncClient,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
        rate_limiter=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._http = http_client
        self._audit = audit_sink
        self._settings = settings or get_settings()
        self._rate_limiter = rate_limiter
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self._settings.webhook_max_concurrency)

    def _pair_lock(self, event: Event, endpoint: WebhookEndpoint):
        return delivery_lock(
            str(event.id),
            str(endpoint.id),
            ttl=self._settings.webhook_lock_ttl_seconds,
            wait=self._settings.webhook_lock_wait_seconds,
        )

    def retry_delay(self, attempt_number: int) -> float:
        """Delay after attempt `attempt_number` (1-based) before the next one."""
        delays = self._settings.webhook_retry_delays_seconds
        if not delays:
            return 0.0
        return delays[min(attempt_number, len(delays)) - 1]

    async def dispatch(self, event: Event) -> list[dict]:
        """
        Deliver event to every active endpoint subscribed to its type.
        Returns one summary per endpoint: {"endpoint_id", "status", "attempts"}.
        """
        endpoints = await self._store.find_endpoints_by_org_and_event_type(
            event.organization_id, event.type
        )
        if not endpoints:
            logger.debug(
                "No endpoints subscribed to %s", event.type,
                extra={"event_id": str(event.id), "organization_id": event.organization_id},
            )
            return []

        results = await asyncio.gather(
            *(self._run_chain(event, endpoint) for endpoint in endpoints),
            return_exceptions=True,
        )

        summaries = []
        for endpoint, result in zip(endpoints, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Delivery chain crashed for %s: %s", endpoint.url, str(result),
                    extra={"event_id": str(event.id), "endpoint_id": str(endpoint.id)},
                )
                summaries.append({"endpoint_id": endpoint.id, "status": DeliveryStatus.FAILED, "attempts": 0})
            else:
                summaries.append(result)
        return summaries

    async def _run_chain(self, event: Event, endpoint: WebhookEndpoint) -> dict:
        async with self._semaphore:
            return await self._deliver_with_retries(event, endpoint)

    async def _deliver_with_retries(self, event: Event, endpoint: WebhookEndpoint) -> dict:
        log_extra = {"event_id": str(event.id), "endpoint_id": str(endpoint.id)}
        body = build_payload_body(event)
        max_attempts = max(1, self._settings.webhook_max_attempts)

        current = endpoint
        last_attempt: Optional[DeliveryAttempt] = None
        made = 0

        for number in range(1, max_attempts + 1):
            if number > 1:
                await self._sleep(self.retry_delay(number - 1))
                # Picks up deactivation, deletion, a rotated secret or a new URL
                current = await self._store.get_endpoint(endpoint.id)
                if current is None or not current.active:
                    if last_attempt is not None:
                        await self._store.update_delivery(
                            last_attempt.id, {"error_message": CANCELLED_REASON}
                        )
                    logger.info("Delivery chain cancelled: endpoint deactivated", extra=log_extra)
                    return {"endpoint_id": endpoint.id, "status": DeliveryStatus.FAILED, "attempts": made}

            made += 1
            try:
                async with self._pair_lock(event, endpoint):
                    if await self._store.has_successful_delivery(event.id, endpoint.id):
                        logger.info("Pair already delivered, stopping chain", extra=log_extra)
                        return {"endpoint_id": endpoint.id, "status": DeliveryStatus.SUCCESS, "attempts": made - 1}
                    last_attempt = await self._perform_attempt(event, current, body, is_retry=number > 1)
            except LockTimeoutError as e:
                logger.warning("Attempt %d skipped: %s", number, str(e), extra=log_extra)
                continue

            if last_attempt.status == DeliveryStatus.SUCCESS:
                return {"endpoint_id": endpoint.id, "status": DeliveryStatus.SUCCESS, "attempts": made}

        logger.warning(
            "Webhook delivery failed after %d attempts: %s", made, endpoint.url, extra=log_extra,
        )
        await record_safely(
            self._audit,
            "webhook.delivery.failed",
            Severity.ERROR,
            {
                "event_id": str(event.id),
                "event_type": event.type,
                "endpoint_id": str(endpoint.id),
                "url": endpoint.url,
                "attempts": made,
                "last_status_code": last_attempt.http_status_code if last_attempt else None,
                "error": last_attempt.error_message if last_attempt else None,
            },
            organization_id=event.organization_id,
            resource_type="webhook_endpoint",
            resource_id=str(endpoint.id),
        )
        await self.check_endpoint_health(endpoint.id)
        return {"endpoint_id": endpoint.id, "status": DeliveryStatus.FAILED, "attempts": made}

    async def _perform_attempt(
        self,
        event: Event,
        endpoint: WebhookEndpoint,
        body: str,
        is_retry: bool,
    ) -> DeliveryAttempt:
        """Create, send and record one attempt. Caller holds the pair lock."""
        attempt = await self._store.create_delivery(event, endpoint, body, is_retry=is_retry)
        log_extra = {
            "event_id": str(event.id),
            "endpoint_id": str(endpoint.id),
            "attempt_id": str(attempt.id),
        }

        if not await self._within_rate_limit(endpoint):
            values = {
                "status": DeliveryStatus.FAILED,
                "error_message": RATE_LIMITED_REASON,
                "duration_ms": 0,
                "completed_at": datetime.now(timezone.utc),
            }
            await self._store.update_delivery(attempt.id, values)
            _apply(attempt, values)
            logger.warning("Attempt not sent: %s", RATE_LIMITED_REASON, extra=log_extra)
            return attempt

        timer = Timer().start()
        values: dict = {}
        try:
            status_code, response_body = await asyncio.wait_for(
                self._post(endpoint, attempt, event.type, body, is_retry),
                timeout=self._settings.webhook_timeout_seconds,
            )
            values = {
                "status": DeliveryStatus.SUCCESS,
                "http_status_code": status_code,
                "response_body": response_body,
            }
            logger.info("Webhook delivered: HTTP %d", status_code, extra=log_extra)
        except DeliveryError as e:
            values = {
                "status": DeliveryStatus.FAILED,
                "http_status_code": e.status_code,
                "response_body": e.response_body,
                "error_message": str(e),
            }
            logger.warning(
                "Webhook attempt #%d failed: %s", attempt.attempt_number, str(e),
                extra={**log_extra, "status_code": e.status_code},
            )
        except asyncio.TimeoutError:
            values = {
                "status": DeliveryStatus.FAILED,
                "error_message": f"Timed out after {self._settings.webhook_timeout_seconds}s",
            }
            logger.warning("Webhook attempt #%d timed out", attempt.attempt_number, extra=log_extra)
        except Exception as e:
            values = {
                "status": DeliveryStatus.FAILED,
                "error_message": f"Unexpected error: {str(e) or type(e).__name__}",
            }
            logger.error(
                "Webhook attempt #%d crashed: %s", attempt.attempt_number, str(e),
                exc_info=True, extra=log_extra,
            )

        values["duration_ms"] = timer.stop()
        values["completed_at"] = datetime.now(timezone.utc)
        await self._store.update_delivery(attempt.id, values)
        _apply(attempt, values)
        return attempt

    async def _post(
        self,
        endpoint: WebhookEndpoint,
        attempt: DeliveryAttempt,
        event_type: str,
        body: str,
        is_retry: bool,
    ) -> tuple[int, str]:
        """POST the signed body. Returns (status, truncated body) on 2xx, raises DeliveryError otherwise."""
        timestamp = int(time.time())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.webhook_user_agent,
            "X-Webhook-Signature": sign(endpoint.secret, timestamp, body),
            "X-Webhook-ID": str(attempt.id),
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": str(timestamp),
        }
        if is_retry:
            headers["X-Webhook-Retry"] = "true"

        try:
            response = await self._http.post(
                endpoint.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self._settings.webhook_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Request timed out: {type(e).__name__}") from e
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"Request failed: {str(e) or type(e).__name__}") from e

        response_body = response.text[: self._settings.webhook_response_body_limit]
        classify_response(response.status_code, response_body)
        return response.status_code, response_body

    async def _within_rate_limit(self, endpoint: WebhookEndpoint) -> bool:
        limit = self._settings.webhook_endpoint_rate_limit
        if self._rate_limiter is None or limit <= 0:
            return True
        try:
            return await self._rate_limiter.check_and_consume(
                f"webhook:{endpoint.id}", limit, self._settings.webhook_endpoint_rate_window_seconds
            )
        except Exception as e:
            # Same fail-open rule as the Redis limiter itself
            logger.warning("Rate limiter error, sending anyway: %s", str(e), extra={"endpoint_id": str(endpoint.id)})
            return True

    async def check_endpoint_health(self, endpoint_id: IdLike) -> bool:
        """
        Deactivate the endpoint if its trailing-window failure rate is too high.

        A delivery is one (event, endpoint) pair: succeeded if any attempt
        succeeded, skipped while any attempt is pending, failed otherwise.
        Returns True only for the call that performed the deactivation.
        """
        since = datetime.now(timezone.utc) - timedelta(hours=self._settings.health_check_window_hours)
        outcomes = await self._store.list_attempt_outcomes(endpoint_id, since)

        statuses_by_event: dict = defaultdict(set)
        for event_id, status in outcomes:
            statuses_by_event[event_id].add(status)

        total = failed = 0
        for statuses in statuses_by_event.values():
            if DeliveryStatus.SUCCESS in statuses:
                total += 1
            elif DeliveryStatus.PENDING in statuses:
                continue
            else:
                total += 1
                failed += 1

        if total < self._settings.health_check_min_deliveries:
            return False
        failure_rate = failed / total
        if failure_rate <= self._settings.health_check_failure_threshold:
            return False

        deactivated = await self._store.deactivate_endpoint_if_active(endpoint_id, DEACTIVATION_REASON)
        if deactivated:
            endpoint = await self._store.get_endpoint(endpoint_id)
            logger.warning(
                "Webhook endpoint deactivated: %d/%d deliveries failed", failed, total,
                extra={"endpoint_id": str(endpoint_id)},
            )
            await record_safely(
                self._audit,
                "webhook.endpoint.deactivated",
                Severity.WARNING,
                {
                    "reason": DEACTIVATION_REASON,
                    "failure_rate": round(failure_rate, 4),
                    "total_deliveries": total,
                    "failed_deliveries": failed,
                },
                organization_id=endpoint.organization_id if endpoint else None,
                resource_type="webhook_endpoint",
                resource_id=str(endpoint_id),
            )
        return deactivated

    async def retry_delivery(self, attempt_id: IdLike) -> DeliveryAttempt:
        """
        Operator-triggered re-delivery of a failed attempt.
        Replays the stored body as one more attempt; no automatic chain follows.
        """
        original = await self._store.get_delivery(attempt_id)
        if original is None:
            raise NotFoundError(f"Delivery attempt {attempt_id} not found")
        if original.status == DeliveryStatus.SUCCESS:
            raise InvalidStateError("Delivery already succeeded")
        if original.status == DeliveryStatus.PENDING:
            raise InvalidStateError("Delivery attempt is still in progress")

        endpoint = await self._store.get_endpoint(original.endpoint_id)
        if endpoint is None:
            raise NotFoundError(f"Webhook endpoint {original.endpoint_id} no longer exists")
        if not endpoint.active:
            raise InvalidStateError("Webhook endpoint is inactive")

        event = await self._store.get_event(original.event_id)
        if event is None:
            raise NotFoundError(f"Event {original.event_id} not found")

        async with self._pair_lock(event, endpoint):
            if await self._store.has_successful_delivery(event.id, endpoint.id):
                raise InvalidStateError("Delivery already succeeded")
            attempt = await self._perform_attempt(event, endpoint, original.request_body, is_retry=True)

        logger.info(
            "Manual retry #%d finished: %s", attempt.attempt_number, attempt.status,
            extra={"event_id": str(event.id), "endpoint_id": str(endpoint.id), "attempt_id": str(attempt.id)},
        )
        if attempt.status == DeliveryStatus.FAILED:
            await record_safely(
                self._audit,
                "webhook.delivery.retry_failed",
                Severity.WARNING,
                {
                    "event_id": str(event.id),
                    "endpoint_id": str(endpoint.id),
                    "attempt_number": attempt.attempt_number,
                    "error": attempt.error_message,
                },
                organization_id=event.organization_id,
                resource_type="webhook_endpoint",
                resource_id=str(endpoint.id),
            )
            await self.check_endpoint_health(endpoint.id)
        return attempt


def _apply(attempt: DeliveryAttempt, values: dict) -> None:
    for key, value in values.items():
        setattr(attempt, key, value)
