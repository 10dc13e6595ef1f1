"""
Audit sink - structured outcome events for observability.
Recording is fire-and-forget: record_safely() never lets a sink failure
reach the delivery or notification path.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional

from eventdispatch.models.audit_event import Severity
from eventdispatch.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class AuditSink(ABC):
    """Abstract sink for audit events."""

    @abstractmethod
    async def record_event(
        self,
        event_type: str,
        severity: str,
        metadata: dict,
        organization_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        ...


class DatabaseAuditSink(AuditSink):
    """Writes audit events to the audit_events table through the event store."""

    def __init__(self, store):
        self._store = store

    async def record_event(
        self,
        event_type: str,
        severity: str,
        metadata: dict,
        organization_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        await self._store.create_audit_event(
            event_type=event_type,
            severity=severity,
            organization_id=organization_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata_=metadata,
            correlation_id=get_correlation_id(),
        )


class LoggingAuditSink(AuditSink):
    """Emits audit events as log lines. Used when no database sink is wanted."""

    def __init__(self, logger_name: str = "eventdispatch.audit"):
        self._logger = logging.getLogger(logger_name)

    async def record_event(
        self,
        event_type: str,
        severity: str,
        metadata: dict,
        organization_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        self._logger.log(
            _SEVERITY_LEVELS.get(severity, logging.INFO),
            "%s %s",
            event_type,
            json.dumps(metadata, default=str),
            extra={"organization_id": organization_id},
        )


async def record_safely(
    sink: Optional[AuditSink],
    event_type: str,
    severity: str = Severity.INFO,
    metadata: Optional[dict] = None,
    organization_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> None:
    """Record an audit event; any sink failure is logged and dropped."""
    if sink is None:
        return
    try:
        await sink.record_event(
            event_type,
            severity,
            metadata or {},
            organization_id=organization_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
    except Exception as e:
        logger.warning("Audit event %s not recorded: %s", event_type, str(e))
