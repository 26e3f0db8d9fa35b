"""HTTP collaborators: content fetcher and webhook notification sink."""

from __future__ import annotations

import logging

import httpx

from scheduler.errors import DeliveryFailed, FetchFailed
from scheduler.interfaces import FetchResult

logger = logging.getLogger(__name__)


class HttpContentFetcher:
    """GET ``url_template.format(tenant_id=..., period=...)``.

    404 or a blank body means the content is not published yet; any other
    error status or a transport failure raises FetchFailed.
    """

    def __init__(self, url_template: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.url_template = url_template
        self.timeout = timeout
        self._client = client

    async def fetch(self, tenant_id: str, period: str) -> FetchResult:
        url = self.url_template.format(tenant_id=tenant_id, period=period)
        try:
            response = await self._request(url)
        except httpx.HTTPError as e:
            raise FetchFailed(f"GET {url} failed: {e}") from e

        if response.status_code == 404:
            return FetchResult.empty()
        if response.is_error:
            raise FetchFailed(f"GET {url} returned HTTP {response.status_code}")
        body = response.text
        if not body.strip():
            return FetchResult.empty()
        return FetchResult(found=True, content=body)

    async def _request(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url)


class WebhookNotificationSink:
    """POST ``{"tenant_id": ..., "message": ...}`` to a webhook URL."""

    def __init__(self, url: str, timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def deliver(self, tenant_id: str, message: str) -> None:
        payload = {"tenant_id": tenant_id, "message": message}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryFailed(f"POST {self.url} failed: {e}") from e
        if response.is_error:
            raise DeliveryFailed(f"POST {self.url} returned HTTP {response.status_code}")
        logger.debug("Webhook delivered", extra={"tenant_id": tenant_id,
                                                 "status_code": response.status_code})
