"""HTTP utilities for sources that do not need a browser."""

from __future__ import annotations

import logging

import httpx

from .config import DEFAULT_USER_AGENT

LOGGER = logging.getLogger(__name__)


class HttpFetchError(RuntimeError):
    """Raised when an HTTP request fails irrecoverably."""


class HttpFetcher:
    """Lightweight async HTTP client with sane defaults for crawling."""

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._timeout = timeout
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.AsyncClient:
        kwargs: dict[str, object] = {
            "timeout": self._timeout,
            "headers": {"User-Agent": self._user_agent},
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def fetch_html(self, url: str) -> tuple[str, httpx.Response]:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise HttpFetchError(f"Request to {url} failed: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise HttpFetchError(f"Unexpected status {response.status_code} for {url}")

        content_type = response.headers.get("content-type", "")
        if "html" not in content_type:
            raise HttpFetchError(f"Unsupported content type '{content_type}' for {url}")
        LOGGER.debug("Fetched %s (%d bytes)", url, len(response.content))
        return response.text, response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpFetcher":  # pragma: no cover - convenience wrapper
        return self

    async def __aexit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        await self.aclose()
