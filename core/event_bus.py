"""In-process async publish/subscribe bus for audit events."""

from __future__ import annotations

import asyncio
from collections import defaultdict

from scheduler.models import AuditEvent


class EventBus:
    """Per-tenant fan-out backed by asyncio.Queue.

    Each subscriber of a tenant gets its own bounded queue; when a slow
    subscriber's queue is full the oldest event is dropped for that
    subscriber only.
    """

    def __init__(self, max_queue: int = 256) -> None:
        self._max_queue = max_queue
        self._queues: dict[str, list[asyncio.Queue[AuditEvent]]] = defaultdict(list)

    def subscribe(self, tenant_id: str) -> asyncio.Queue[AuditEvent]:
        q: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._queues[tenant_id].append(q)
        return q

    def unsubscribe(self, tenant_id: str, q: asyncio.Queue[AuditEvent]) -> None:
        try:
            self._queues[tenant_id].remove(q)
        except ValueError:
            pass
        if not self._queues[tenant_id]:
            del self._queues[tenant_id]

    def subscriber_count(self, tenant_id: str) -> int:
        return len(self._queues.get(tenant_id, []))

    async def publish(self, event: AuditEvent) -> None:
        for q in list(self._queues.get(event.tenant_id, [])):
            if q.full():
                q.get_nowait()
            q.put_nowait(event)
