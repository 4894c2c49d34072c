import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger

from sitemapper.errors import FetchError
from sitemapper.monitoring.metrics_server import (
    FAILED_REQUESTS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    SKIPPED_NON_HTML,
)
from sitemapper.utils.config_loader import DEFAULT_USER_AGENT


DEFAULT_TIMEOUT = 10.0
MAX_REDIRECTS = 10


@dataclass
class FetchResult:
    final_url: str
    status_code: int
    # None when the response is not text/html
    html: Optional[str]
    content_type: str = ""
    redirect_count: int = 0


def categorize_error(exc: BaseException) -> str:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "network_timeout"
    if isinstance(exc, httpx.TooManyRedirects):
        return "redirect_loop"
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return "invalid_url"
    if isinstance(exc, httpx.TransportError):
        return "connection_error"
    return "unexpected"


class PageFetcher:
    """HTTP GET with bounded timeout and redirects.

    Every HTTP status is returned normally; only network-level failures raise
    ``FetchError``. Use as an async context manager, or pass a ready client.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_redirects: int = MAX_REDIRECTS,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
        purpose: str = "crawl",
    ):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self.purpose = purpose
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "PageFetcher":
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=self.timeout),
                follow_redirects=True,
                max_redirects=self.max_redirects,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def fetch(self, url: str) -> FetchResult:
        if self.client is None:
            raise RuntimeError("HTTP client is not initialized")

        REQUEST_COUNT.labels(purpose=self.purpose).inc()
        start = time.perf_counter()

        try:
            resp = await self.client.get(
                url,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": (
                        "text/html,application/xhtml+xml,application/xml;q=0.9,"
                        "*/*;q=0.8"
                    ),
                },
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            category = categorize_error(exc)
            FAILED_REQUESTS.labels(purpose=self.purpose, category=category).inc()
            logger.debug(f"Fetch failed for {url} ({category}): {exc!r}")
            raise FetchError(url, f"Failed to fetch {url}: {exc}", category) from exc
        finally:
            REQUEST_LATENCY.labels(purpose=self.purpose).observe(time.perf_counter() - start)

        content_type = (resp.headers.get("Content-Type") or "").lower()
        is_html = "text/html" in content_type
        if not is_html:
            SKIPPED_NON_HTML.labels(purpose=self.purpose).inc()

        return FetchResult(
            final_url=str(resp.url),
            status_code=resp.status_code,
            html=(resp.text or "") if is_html else None,
            content_type=content_type,
            redirect_count=len(resp.history),
        )
