"""
Security event sink.

Every policy decision or anomaly the gate observes is recorded as a
SecurityEvent: a structured warning log line, a Prometheus counter
increment and, when SECURITY_EVENTS_PERSIST is enabled, a row in the
security events table written from a worker thread. Recording never raises
into the caller and never waits on the database.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from civicgate.config.config import Config
from civicgate.db.security_events import create_security_event
from civicgate.services.prometheus_metrics import record_security_event

logger = logging.getLogger(__name__)


class SecurityEventType(str, Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_REQUEST = "SUSPICIOUS_REQUEST"
    IP_BLOCKED = "IP_BLOCKED"
    MIDDLEWARE_ERROR = "MIDDLEWARE_ERROR"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEvent(BaseModel):
    event_type: SecurityEventType
    severity: Severity = Severity.MEDIUM
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SecurityAudit:
    """Fire-and-forget recorder for security events."""

    def __init__(self, persist: bool | None = None):
        self.persist = Config.SECURITY_EVENTS_PERSIST if persist is None else persist
        # Keep references so pending inserts are not garbage collected
        self._pending: set[asyncio.Task] = set()

    def log_security_event(
        self,
        event_type: SecurityEventType,
        details: dict[str, Any] | None = None,
        severity: Severity = Severity.MEDIUM,
    ) -> SecurityEvent:
        event = SecurityEvent(event_type=event_type, severity=severity, metadata=details or {})
        payload = event.model_dump(mode="json")

        logger.warning(
            f"Security Event: {event.event_type.value}",
            extra={"security_event": payload},
        )
        record_security_event(event.event_type.value, event.severity.value)

        if self.persist:
            self._schedule_persist(payload)

        return event

    def _schedule_persist(self, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop; {payload['event_type']} not persisted")
            return

        task = loop.create_task(asyncio.to_thread(create_security_event, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for pending inserts; used at shutdown."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
