"""
Shared fixtures for crawler tests.

Network access is replaced by an in-process fake site served through
httpx.MockTransport, so every test is deterministic and offline.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from app.crawler import CrawlJobManager, CrawlJobRunner
from app.extract import Extractor
from app.fetcher import Fetcher, RateLimiter
from app.models import PageRecord
from app.store import InMemoryJobStore, PersistenceError


def page(title: str, *links: str) -> str:
    anchors = "\n".join(f'<li><a href="{href}">{href}</a></li>' for href in links)
    return f"<html><head><title>{title}</title></head><body><ul>{anchors}</ul></body></html>"


def _key(url: Union[str, httpx.URL]) -> str:
    u = httpx.URL(str(url))
    path = u.path or "/"
    query = f"?{u.query.decode()}" if u.query else ""
    return f"{u.scheme}://{u.host}{path}{query}"


class FakeSite:
    """
    Map of url -> HTML body or HTTP status code. Unknown URLs return 404.
    `hits` records every requested URL in order.
    """

    def __init__(self, pages: Dict[str, Union[str, int]]) -> None:
        self.pages = {_key(u): body for u, body in pages.items()}
        self.hits: List[str] = []
        self.headers: List[httpx.Headers] = []
        self.before_response: Optional[Callable[[httpx.Request], Any]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.hits.append(_key(request.url))
        self.headers.append(request.headers)
        if self.before_response is not None:
            self.before_response(request)
        body = self.pages.get(_key(request.url))
        if body is None:
            return httpx.Response(404, text="not found")
        if isinstance(body, int):
            return httpx.Response(body, text="error")
        return httpx.Response(200, html=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def hit_count(self, url: str) -> int:
        return self.hits.count(_key(url))


class RecordingStore(InMemoryJobStore):
    """Keeps every applied update_job call so tests can inspect the progress history."""

    def __init__(self) -> None:
        super().__init__()
        self.updates: List[Dict[str, Any]] = []

    async def update_job(self, job_id: str, **fields: Any) -> None:
        await super().update_job(job_id, **fields)
        fields.pop("expected_status", None)
        self.updates.append(dict(fields))


class FailingStore(InMemoryJobStore):
    """Fails the Nth page insert (1-based)."""

    def __init__(self, fail_on_insert: int) -> None:
        super().__init__()
        self.fail_on_insert = fail_on_insert
        self.inserts = 0

    async def insert_page_record(self, record: PageRecord) -> None:
        self.inserts += 1
        if self.inserts == self.fail_on_insert:
            raise PersistenceError("disk full")
        await super().insert_page_record(record)


class FailingUpdateStore(InMemoryJobStore):
    """
    Fails update_job calls picked by `should_fail(fields, call_number)`,
    where call_number counts progress-only updates (no status field), 1-based.
    """

    def __init__(self, should_fail: Callable[[Dict[str, Any], int], bool]) -> None:
        super().__init__()
        self.should_fail = should_fail
        self.progress_updates = 0

    async def update_job(self, job_id: str, **fields: Any) -> None:
        if "status" not in fields:
            self.progress_updates += 1
        if self.should_fail(fields, self.progress_updates):
            raise PersistenceError("write rejected")
        await super().update_job(job_id, **fields)


class CountingRateLimiter(RateLimiter):
    """Counts pauses without sleeping."""

    def __init__(self) -> None:
        super().__init__(0)
        self.pauses = 0

    async def pause(self, cancel_event: Optional[asyncio.Event] = None) -> None:
        self.pauses += 1


def make_runner(
    site: FakeSite,
    store: Optional[InMemoryJobStore] = None,
    *,
    extractor: Optional[Extractor] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> CrawlJobRunner:
    fetcher = Fetcher(transport=transport or site.transport())
    return CrawlJobRunner(
        store if store is not None else InMemoryJobStore(),
        fetcher,
        extractor=extractor,
        rate_limiter=rate_limiter or RateLimiter(0),
    )


async def wait_until(predicate: Callable[[], bool], ticks: int = 1000) -> None:
    for _ in range(ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def scenario_a_site() -> FakeSite:
    """Root links to three same-domain pages, each linking one level deeper."""
    return FakeSite(
        {
            "https://example.com/": page("Home", "/about", "/pricing", "/blog"),
            "https://example.com/about": page("About", "/about/team"),
            "https://example.com/pricing": page("Pricing", "/pricing/enterprise"),
            "https://example.com/blog": page("Blog", "/blog/post-1"),
            "https://example.com/about/team": page("Team"),
            "https://example.com/pricing/enterprise": page("Enterprise"),
            "https://example.com/blog/post-1": page("Post 1"),
        }
    )


def make_manager(site: FakeSite, store: Optional[InMemoryJobStore] = None, workers: int = 1) -> CrawlJobManager:
    return CrawlJobManager(make_runner(site, store), workers=workers)
