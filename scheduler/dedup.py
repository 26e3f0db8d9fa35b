"""Content-hash duplicate suppression for outbound deliveries."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta

from scheduler.models import as_utc, utcnow

logger = logging.getLogger(__name__)


class DuplicateGuard:
    """Remembers digests of delivered payloads, per tenant.

    Usage around a send::

        digest = DuplicateGuard.hash(content)
        if not guard.is_duplicate(tenant_id, digest):
            await sink.deliver(tenant_id, content)
            guard.record(tenant_id, digest)

    Entries expire after ``retention``.  A tenant whose set grows past
    ``max_entries`` has it cleared wholesale; the worst outcome is one
    harmless re-send.
    """

    def __init__(self, retention: timedelta = timedelta(hours=24), max_entries: int = 100):
        self.retention = retention
        self.max_entries = max_entries
        self._seen: dict[str, dict[str, datetime]] = {}

    @staticmethod
    def hash(content: str | bytes) -> str:
        data = content.encode("utf-8") if isinstance(content, str) else content
        return hashlib.sha256(data).hexdigest()

    def is_duplicate(self, tenant_id: str, digest: str, now: datetime | None = None) -> bool:
        seen = self._prune(tenant_id, as_utc(now or utcnow()))
        return digest in seen

    def record(self, tenant_id: str, digest: str, now: datetime | None = None) -> None:
        now = as_utc(now or utcnow())
        seen = self._prune(tenant_id, now)
        seen.setdefault(digest, now)
        if len(seen) > self.max_entries:
            seen.clear()
            logger.info("Cleared duplicate guard", extra={"tenant_id": tenant_id})

    def size(self, tenant_id: str) -> int:
        return len(self._seen.get(tenant_id, {}))

    def forget(self, tenant_id: str) -> None:
        self._seen.pop(tenant_id, None)

    def _prune(self, tenant_id: str, now: datetime) -> dict[str, datetime]:
        seen = self._seen.setdefault(tenant_id, {})
        cutoff = now - self.retention
        for digest in [d for d, ts in seen.items() if ts <= cutoff]:
            del seen[digest]
        return seen
