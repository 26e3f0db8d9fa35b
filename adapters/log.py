"""Collaborators for running without external services."""

from __future__ import annotations

import logging

from scheduler.interfaces import FetchResult

logger = logging.getLogger(__name__)


class LogNotificationSink:
    """Writes each delivery to the log instead of a chat platform."""

    async def deliver(self, tenant_id: str, message: str) -> None:
        logger.info("Notification", extra={"tenant_id": tenant_id, "text": message})


class NullContentFetcher:
    """Never finds content; content-check tasks retry until exhausted."""

    async def fetch(self, tenant_id: str, period: str) -> FetchResult:
        return FetchResult.empty()
