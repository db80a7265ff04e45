from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app import config

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Network failure or non-2xx response for a single page. Recoverable."""

    def __init__(self, url: str, reason: str, http_status: Optional[int] = None) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.http_status = http_status


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    http_status: int
    html: str


class Fetcher:
    """
    One HTTP GET per call over a shared httpx.AsyncClient.
    Every request carries the crawler User-Agent and a bounded timeout.
    """

    def __init__(
        self,
        user_agent: str = config.USER_AGENT,
        *,
        timeout: float = config.REQUEST_TIMEOUT_S,
        connect_timeout: float = config.CONNECT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.user_agent = user_agent
        self._client = httpx.AsyncClient(
            headers={"User-Agent": self.user_agent},
            timeout=httpx.Timeout(
                timeout=float(timeout),
                connect=float(connect_timeout),
            ),
            follow_redirects=True,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, url: str) -> FetchResult:
        try:
            resp = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise FetchError(url, f"timeout ({type(e).__name__})") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e

        if not 200 <= resp.status_code < 300:
            raise FetchError(url, f"HTTP {resp.status_code}", http_status=resp.status_code)

        ctype = (resp.headers.get("content-type") or "").lower()
        if ctype and "html" not in ctype:
            # still parsed; some servers mislabel HTML
            logger.debug("Non-HTML content-type %r for %s", ctype, url)

        return FetchResult(
            url=url,
            final_url=str(resp.url),
            http_status=resp.status_code,
            html=resp.text or "",
        )


class RateLimiter:
    """Fixed delay after every processed page. The crawl's only throttle."""

    def __init__(self, delay_s: float = config.CRAWL_DELAY_S) -> None:
        self.delay_s = max(0.0, float(delay_s))

    async def pause(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        if self.delay_s <= 0:
            return
        if cancel_event is None:
            await asyncio.sleep(self.delay_s)
            return
        # A cancel request ends the pause early
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.delay_s)
        except asyncio.TimeoutError:
            pass
