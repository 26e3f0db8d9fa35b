"""Audit sink that logs events and fans them out on the event bus."""

from __future__ import annotations

import logging
from collections import deque

from core.event_bus import EventBus
from scheduler.models import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)

_WARNING_EVENTS = {AuditEventType.RATE_LIMITED, AuditEventType.RETRY_EXHAUSTED}


class EventBusAuditSink:
    """AuditSink implementation.

    Every event is logged, published to ``bus`` subscribers of the tenant,
    and kept in a short per-tenant history for ``recent()``.
    """

    def __init__(self, bus: EventBus | None = None, history: int = 100):
        self.bus = bus or EventBus()
        self._history = history
        self._recent: dict[str, deque[AuditEvent]] = {}

    async def record(self, event: AuditEvent) -> None:
        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.INFO
        logger.log(
            level,
            "Audit event",
            extra={"event": event.event_type.value, "tenant_id": event.tenant_id,
                   "details": event.details},
        )
        self._recent.setdefault(event.tenant_id, deque(maxlen=self._history)).append(event)
        await self.bus.publish(event)

    def recent(self, tenant_id: str) -> list[AuditEvent]:
        return list(self._recent.get(tenant_id, []))
