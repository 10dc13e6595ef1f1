"""
Webhook monitor - organization-wide delivery stats and anomaly alerts.

Anomalies are recorded through the audit sink at WARNING. Each
(organization, anomaly) pair has a cooldown held in Redis (SET NX EX) so a
persistent condition is reported once per cooldown, not on every stats call.
Falls back to an in-process cooldown when Redis is unavailable.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from eventdispatch.config import Settings, get_settings
from eventdispatch.models.audit_event import Severity
from eventdispatch.models.delivery_attempt import DeliveryAttempt
from eventdispatch.services.audit import AuditSink, record_safely
from eventdispatch.services.endpoint_registry import summarize_attempts
from eventdispatch.services.event_store import EventStore
from eventdispatch.utils.metrics import error_rate, percentile

logger = logging.getLogger(__name__)

RECENT_DELIVERIES = 10


class AnomalyType:
    """Anomaly type constants."""
    HIGH_ERROR_RATE = "high_error_rate"
    HIGH_RESPONSE_TIME = "high_response_time"
    HIGH_PENDING_DELIVERIES = "high_pending_deliveries"


def _recent(attempt: DeliveryAttempt) -> dict:
    return {
        "id": str(attempt.id),
        "event_id": str(attempt.event_id),
        "endpoint_id": str(attempt.endpoint_id),
        "event_type": attempt.event_type,
        "attempt_number": attempt.attempt_number,
        "status": attempt.status,
        "http_status_code": attempt.http_status_code,
        "duration_ms": attempt.duration_ms,
        "created_at": attempt.created_at.isoformat() if attempt.created_at else None,
    }


class WebhookMonitor:

    def __init__(
        self,
        store: EventStore,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        self._store = store
        self._audit = audit_sink
        self._settings = settings or get_settings()
        self._local_cooldowns: dict[str, float] = {}

    async def organization_stats(
        self, organization_id: str, window_hours: Optional[int] = None
    ) -> dict:
        """
        Delivery health for every endpoint of an organization over the window.

        Returns: {"organization_id", "window_hours", "endpoints", "active_endpoints",
                  "total", "successful", "failed", "pending", "success_rate", "error_rate",
                  "average_duration_ms", "p95_duration_ms", "p99_duration_ms",
                  "recent": [dict], "anomalies": [dict]}
        Detected anomalies are also reported to the audit sink.
        """
        window_hours = window_hours or self._settings.monitor_window_hours
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)

        endpoints = await self._store.list_endpoints(organization_id, include_inactive=True)
        attempts = await self._store.list_organization_attempts(organization_id, since)

        summary = summarize_attempts(attempts)
        durations = [a.duration_ms for a in attempts if a.duration_ms is not None]
        stats = {
            "organization_id": organization_id,
            "window_hours": window_hours,
            "endpoints": len(endpoints),
            "active_endpoints": sum(1 for e in endpoints if e.active),
            "total": summary["total"],
            "successful": summary["successful"],
            "failed": summary["failed"],
            "pending": summary["pending"],
            "success_rate": summary["success_rate"],
            "error_rate": error_rate(summary["failed"], summary["total"]),
            "average_duration_ms": summary["average_duration_ms"],
            "p95_duration_ms": percentile(durations, 95),
            "p99_duration_ms": percentile(durations, 99),
            "recent": [_recent(a) for a in attempts[:RECENT_DELIVERIES]],
        }

        stats["anomalies"] = self.detect_anomalies(stats)
        for anomaly in stats["anomalies"]:
            await self._report(organization_id, anomaly)
        return stats

    def detect_anomalies(self, stats: dict) -> list[dict]:
        anomalies = []
        if stats["error_rate"] > self._settings.monitor_error_rate_threshold:
            anomalies.append({
                "type": AnomalyType.HIGH_ERROR_RATE,
                "value": stats["error_rate"],
                "threshold": self._settings.monitor_error_rate_threshold,
                "message": f"Webhook error rate is {stats['error_rate']}%",
            })
        if stats["p95_duration_ms"] > self._settings.monitor_p95_duration_threshold_ms:
            anomalies.append({
                "type": AnomalyType.HIGH_RESPONSE_TIME,
                "value": stats["p95_duration_ms"],
                "threshold": self._settings.monitor_p95_duration_threshold_ms,
                "message": f"Webhook p95 response time is {stats['p95_duration_ms']:.0f}ms",
            })
        if stats["pending"] > self._settings.monitor_pending_threshold:
            anomalies.append({
                "type": AnomalyType.HIGH_PENDING_DELIVERIES,
                "value": stats["pending"],
                "threshold": self._settings.monitor_pending_threshold,
                "message": f"{stats['pending']} webhook deliveries pending",
            })
        return anomalies

    async def _report(self, organization_id: str, anomaly: dict) -> None:
        if not await self._acquire_cooldown(organization_id, anomaly["type"]):
            logger.debug(
                "Anomaly %s still cooling down", anomaly["type"],
                extra={"organization_id": organization_id},
            )
            return
        logger.warning(
            "Webhook anomaly [%s]: %s", anomaly["type"], anomaly["message"],
            extra={"organization_id": organization_id},
        )
        await record_safely(
            self._audit,
            f"webhook.anomaly.{anomaly['type']}",
            Severity.WARNING,
            anomaly,
            organization_id=organization_id,
            resource_type="organization",
            resource_id=organization_id,
        )

    async def _acquire_cooldown(self, organization_id: str, anomaly_type: str) -> bool:
        """Atomic check-and-set of the per-(organization, anomaly) cooldown."""
        cooldown = self._settings.monitor_alert_cooldown_seconds
        key = f"eventdispatch:anomaly_cooldown:{organization_id}:{anomaly_type}"
        try:
            from eventdispatch.utils.cache import get_redis
            redis = await get_redis()
            acquired = await redis.set(key, "1", nx=True, ex=cooldown)
            return bool(acquired)
        except Exception as e:
            logger.debug("Anomaly cooldown Redis check failed, using in-memory fallback: %s", str(e))
            now = time.monotonic()
            if now < self._local_cooldowns.get(key, 0):
                return False
            self._local_cooldowns[key] = now + cooldown
            return True
