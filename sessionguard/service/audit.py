from __future__ import annotations

import threading
from dataclasses import replace
from typing import List, Optional, Protocol

from sessionguard.logging import get_logger, sanitize_error_message
from sessionguard.service.geolocation import format_location
from sessionguard.storage.models import AuditEvent, AuditEventType

logger = get_logger(__name__)


class AuditSink(Protocol):
    def log_event(self, event: AuditEvent) -> None:
        ...


class StructlogAuditSink:
    """Writes audit events to the ``audit`` structlog logger."""

    def __init__(self, logger_name: str = "audit") -> None:
        self._logger = get_logger(logger_name)

    def log_event(self, event: AuditEvent) -> None:
        device = event.device
        self._logger.info(
            event.event_type.value,
            status=event.status.value,
            category=event.category.value,
            action=event.action,
            user_id=event.user_id,
            session_token=event.session_token,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            device_fingerprint=device.fingerprint if device else None,
            device_type=device.type.value if device else None,
            location=format_location(event.geolocation) if event.geolocation else None,
            error_message=event.error_message,
            data=event.data,
            occurred_at=event.occurred_at.isoformat(),
        )


class InMemoryAuditSink:
    """Keeps events in a list; used by tests and local runs."""

    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def log_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def emit_audit(sink: Optional[AuditSink], event: AuditEvent) -> bool:
    """Send ``event`` to ``sink``; failures are logged and never raised."""

    if sink is None:
        return False
    if event.error_message:
        event = replace(event, error_message=sanitize_error_message(event.error_message))
    try:
        sink.log_event(event)
        return True
    except Exception as exc:
        logger.error(
            "audit_emit_failed",
            event_type=event.event_type.value,
            action=event.action,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False
