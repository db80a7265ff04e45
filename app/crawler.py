from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Deque, Dict, List, NamedTuple, Optional, Set, Tuple

from app import config
from app.extract import (
    ExtractionError,
    Extractor,
    RegexExtractor,
    hostname,
    is_crawlable_url,
    is_in_scope,
    resolve_url,
)
from app.fetcher import FetchError, Fetcher, RateLimiter
from app.models import CrawlJobRequest, CrawlResult, PageRecord
from app.store import JobRow, JobStateConflict, JobStore, PersistenceError, utc_now_iso

logger = logging.getLogger(__name__)


# -----------------------------
# Errors
# -----------------------------

class ValidationError(Exception):
    """Missing or unusable input. Raised before any job state changes."""


class CrawlError(Exception):
    """Crawl-level, unrecoverable failure. The job ends up failed."""

    def __init__(self, message: str, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class InvalidStartUrl(CrawlError):
    pass


class InvalidTransition(Exception):
    pass


# -----------------------------
# Job state
# -----------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in _TRANSITIONS.items() if not nxt)


@dataclass(frozen=True)
class CrawlConfig:
    max_depth: int = config.DEFAULT_MAX_DEPTH
    max_pages: int = config.DEFAULT_MAX_PAGES
    domain_only: bool = config.DEFAULT_DOMAIN_ONLY


class FrontierEntry(NamedTuple):
    url: str
    depth: int


class Frontier:
    """
    FIFO queue of (url, depth) plus the visited set of one run.

    Dedup is exact string match on the resolved URL. Besides the depth bound,
    enqueue is capped by the remaining page budget, so the queue never holds
    more entries than the run could still fetch.
    """

    def __init__(self, max_depth: int, max_pages: int) -> None:
        self.max_depth = max_depth
        self.max_pages = max_pages
        self._queue: Deque[FrontierEntry] = deque()
        self._queued: Set[str] = set()
        self._visited: Set[str] = set()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def visited_count(self) -> int:
        return len(self._visited)

    @property
    def budget_left(self) -> int:
        return max(0, self.max_pages - len(self._visited))

    def is_visited(self, url: str) -> bool:
        return url in self._visited

    def enqueue(self, url: str, depth: int) -> bool:
        if depth > self.max_depth:
            return False
        if url in self._visited or url in self._queued:
            return False
        if len(self._queue) >= self.budget_left:
            return False
        self._queue.append(FrontierEntry(url, depth))
        self._queued.add(url)
        return True

    def pop(self) -> Optional[FrontierEntry]:
        if not self._queue:
            return None
        entry = self._queue.popleft()
        self._queued.discard(entry.url)
        return entry

    def mark_visited(self, url: str) -> None:
        self._visited.add(url)


@dataclass
class CrawlJob:
    """One run's state. Owned by the runner executing it; never shared."""

    job_id: str
    venture_id: str
    start_url: str
    config: CrawlConfig
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    results: List[PageRecord] = field(default_factory=list)
    frontier: Frontier = field(init=False)

    def __post_init__(self) -> None:
        self.frontier = Frontier(self.config.max_depth, self.config.max_pages)

    def transition(self, new_status: JobStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(f"job {self.job_id}: {self.status.value} -> {new_status.value}")
        self.status = new_status

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in _TRANSITIONS[self.status]

    def progress(self) -> Dict[str, int]:
        return {"visited": self.frontier.visited_count, "queued": len(self.frontier)}

    def result(self) -> CrawlResult:
        return CrawlResult(job_id=self.job_id, total_pages=len(self.results), results=list(self.results))


# -----------------------------
# Job controller
# -----------------------------

class CrawlJobRunner:
    """
    Drives a crawl job from pending to a terminal state.

    Sequential by design: one fetch in flight per job, a fixed pause after
    every page. Every fetch attempt produces a persisted PageRecord before
    the loop moves on; per-page failures become failure records, storage
    failures fail the job.
    """

    def __init__(
        self,
        store: JobStore,
        fetcher: Fetcher,
        *,
        extractor: Optional[Extractor] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor or RegexExtractor()
        self.rate_limiter = rate_limiter or RateLimiter()

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    async def run(
        self, request: CrawlJobRequest, cancel_event: Optional[asyncio.Event] = None
    ) -> CrawlResult:
        job = await self.prepare(request)
        return await self.execute(job, cancel_event)

    async def prepare(self, request: CrawlJobRequest) -> CrawlJob:
        """Validate the request and create (or reuse) the pending job record."""
        if not request.start_url or not request.venture_id:
            raise ValidationError("Missing required fields")

        crawl_config = CrawlConfig(
            max_depth=request.max_depth,
            max_pages=request.max_pages,
            domain_only=request.domain_only,
        )

        try:
            if request.job_id:
                row = await self.store.get_job(request.job_id)
                _check_reusable(row, request)
                job_id = request.job_id
            else:
                job_id = await self.store.create_job(
                    venture_id=request.venture_id,
                    name=_job_name(request.start_url),
                    start_url=request.start_url,
                    config=asdict(crawl_config),
                )
        except PersistenceError as e:
            raise CrawlError(f"could not create crawl job: {e}") from e

        return CrawlJob(
            job_id=job_id,
            venture_id=request.venture_id,
            start_url=request.start_url,
            config=crawl_config,
        )

    async def execute(
        self, job: CrawlJob, cancel_event: Optional[asyncio.Event] = None
    ) -> CrawlResult:
        log_ctx = {"context": job.job_id}
        try:
            await self._claim(job)

            if not is_crawlable_url(job.start_url):
                raise InvalidStartUrl(f"Invalid start URL: {job.start_url!r}", job.job_id)

            logger.info(
                "Crawl started: %s (max_depth=%d, max_pages=%d, domain_only=%s)",
                job.start_url,
                job.config.max_depth,
                job.config.max_pages,
                job.config.domain_only,
                extra=log_ctx,
            )
            job.frontier.enqueue(job.start_url, 0)
            cancelled = await self._crawl(job, hostname(job.start_url), cancel_event)
            await self._finish(job, JobStatus.CANCELLED if cancelled else JobStatus.COMPLETED)

        except ValidationError:
            # another run owns the row; leave it alone
            raise
        except InvalidStartUrl as e:
            await self._abort(job, JobStatus.FAILED, str(e))
            raise
        except PersistenceError as e:
            logger.exception("Persistence failure, failing job", extra=log_ctx)
            await self._abort(job, JobStatus.FAILED, f"persistence failure: {e}")
            raise CrawlError(f"persistence failure: {e}", job.job_id) from e
        except asyncio.CancelledError:
            await self._abort(job, JobStatus.CANCELLED, "crawl task cancelled")
            raise
        except Exception as e:
            logger.exception("Unhandled crawl error", extra=log_ctx)
            await self._abort(job, JobStatus.FAILED, f"{type(e).__name__}: {e}")
            raise CrawlError(f"{type(e).__name__}: {e}", job.job_id) from e

        logger.info(
            "Crawl %s: %d page records (%d failed)",
            job.status.value,
            len(job.results),
            sum(1 for r in job.results if r.status == "failure"),
            extra=log_ctx,
        )
        return job.result()

    # -----------------------------
    # Loop
    # -----------------------------

    async def _crawl(
        self, job: CrawlJob, start_host: str, cancel_event: Optional[asyncio.Event]
    ) -> bool:
        """Run the BFS loop. Returns True when stopped by cancellation."""
        frontier = job.frontier
        cfg = job.config

        while len(frontier) and frontier.visited_count < cfg.max_pages:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Cancellation requested, stopping", extra={"context": job.job_id})
                return True

            entry = frontier.pop()
            if frontier.is_visited(entry.url) or entry.depth > cfg.max_depth:
                continue
            frontier.mark_visited(entry.url)

            record, base_url, hrefs = await self._visit(job, entry)

            # durable before anything else happens
            await self.store.insert_page_record(record)
            job.results.append(record)

            if entry.depth < cfg.max_depth:
                self._enqueue_links(job, entry, base_url, hrefs, start_host)

            await self.store.update_job(
                job.job_id, progress=job.progress(), results_count=len(job.results)
            )
            await self.rate_limiter.pause(cancel_event)

        return False

    async def _visit(self, job: CrawlJob, entry: FrontierEntry) -> Tuple[PageRecord, str, List[str]]:
        scraped_at = utc_now_iso()
        http_status: Optional[int] = None
        try:
            fetched = await self.fetcher.fetch(entry.url)
            http_status = fetched.http_status
            title = self.extractor.extract_title(fetched.html)
            hrefs = self.extractor.extract_links(fetched.html)
        except FetchError as e:
            logger.warning("Fetch failed for %s: %s", entry.url, e.reason, extra={"context": job.job_id})
            return self._record(job, entry, scraped_at, "failure", e.http_status, error=e.reason), entry.url, []
        except ExtractionError as e:
            logger.warning("Extraction failed for %s: %s", entry.url, e, extra={"context": job.job_id})
            return self._record(job, entry, scraped_at, "failure", http_status, error=str(e)), entry.url, []

        logger.debug(
            "Fetched %s (depth=%d, %d links)", entry.url, entry.depth, len(hrefs), extra={"context": job.job_id}
        )
        record = self._record(job, entry, scraped_at, "success", http_status, title=title)
        # relative links resolve against the post-redirect URL
        return record, fetched.final_url, hrefs

    def _enqueue_links(
        self, job: CrawlJob, entry: FrontierEntry, base_url: str, hrefs: List[str], start_host: str
    ) -> None:
        for href in hrefs:
            try:
                link = resolve_url(base_url, href)
            except ValueError:
                logger.debug("Unresolvable href %r on %s", href, entry.url, extra={"context": job.job_id})
                continue
            if is_in_scope(link, start_host, job.config.domain_only):
                job.frontier.enqueue(link, entry.depth + 1)

    @staticmethod
    def _record(
        job: CrawlJob,
        entry: FrontierEntry,
        scraped_at: str,
        status: str,
        http_status: Optional[int],
        *,
        title: str = "",
        error: Optional[str] = None,
    ) -> PageRecord:
        return PageRecord(
            job_id=job.job_id,
            venture_id=job.venture_id,
            url=entry.url,
            title=title,
            depth=entry.depth,
            scraped_at=scraped_at,
            status=status,
            http_status=http_status,
            error=error,
        )

    # -----------------------------
    # Start / finalization
    # -----------------------------

    async def _claim(self, job: CrawlJob) -> None:
        """
        Move the stored row pending -> running in one conditional write.

        The row also takes this run's start URL and config, so a resumed job
        reports what actually ran. If the row already left pending (another
        run claimed it first), raises ValidationError and writes nothing.
        """
        if not job.can_transition(JobStatus.RUNNING):
            raise InvalidTransition(f"job {job.job_id}: {job.status.value} -> running")
        started_at = utc_now_iso()
        try:
            await self.store.update_job(
                job.job_id,
                expected_status=JobStatus.PENDING.value,
                status=JobStatus.RUNNING.value,
                started_at=started_at,
                name=_job_name(job.start_url),
                start_url=job.start_url,
                config=asdict(job.config),
            )
        except JobStateConflict as e:
            raise ValidationError(
                f"Job {job.job_id} is {e.actual}; only pending jobs can be started"
            ) from e
        job.transition(JobStatus.RUNNING)
        job.started_at = started_at

    async def _finish(self, job: CrawlJob, status: JobStatus) -> None:
        if not job.can_transition(status):
            raise InvalidTransition(f"job {job.job_id}: {job.status.value} -> {status.value}")
        completed_at = utc_now_iso()
        # in-memory status moves only after the write succeeds
        await self.store.update_job(
            job.job_id,
            status=status.value,
            completed_at=completed_at,
            progress=job.progress(),
            results_count=len(job.results),
        )
        job.transition(status)
        job.completed_at = completed_at

    async def _abort(self, job: CrawlJob, status: JobStatus, error: str) -> None:
        """Best-effort terminal write; the caller re-raises the crawl error."""
        if not job.can_transition(status):
            return
        job.transition(status)
        job.error = error
        job.completed_at = utc_now_iso()
        try:
            await self.store.update_job(
                job.job_id,
                status=job.status.value,
                error=error,
                completed_at=job.completed_at,
                results_count=len(job.results),
            )
        except PersistenceError:
            logger.exception("Could not record %s status", status.value, extra={"context": job.job_id})


def _job_name(start_url: str) -> str:
    return f"Crawl {hostname(start_url) or start_url}"


def _check_reusable(row: Optional[JobRow], request: CrawlJobRequest) -> None:
    if row is None:
        raise ValidationError(f"Unknown job: {request.job_id}")
    if row.venture_id != request.venture_id:
        raise ValidationError(f"Job {request.job_id} belongs to another venture")
    if row.status != JobStatus.PENDING.value:
        raise ValidationError(f"Job {request.job_id} is {row.status}; only pending jobs can be resumed")


# -----------------------------
# Background jobs
# -----------------------------

class CrawlJobManager:
    """
    Async job API over a CrawlJobRunner:
      - crawl(...)       run in the caller's task and return the result
      - submit(...)      create the pending job now, run it on a worker
      - get_job / list_jobs / get_results
      - cancel(...)
      - start() / join() / aclose()
    Jobs share nothing but the store and the HTTP client.
    """

    def __init__(self, runner: CrawlJobRunner, *, workers: int = config.JOB_WORKERS) -> None:
        self.runner = runner
        self.store = runner.store
        self._n_workers = max(1, int(workers))
        self._queue: Optional[asyncio.Queue[CrawlJob]] = None
        self._workers: List[asyncio.Task] = []
        self._queued: Dict[str, CrawlJob] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def start(self) -> None:
        if self._queue is not None:
            return
        self._queue = asyncio.Queue()
        for i in range(self._n_workers):
            self._workers.append(asyncio.create_task(self._worker_loop(), name=f"crawl-worker-{i}"))
        logger.info("Started %d crawl workers", self._n_workers)

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def aclose(self) -> None:
        for t in self._workers:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._queue = None
        await self.runner.aclose()

    def _ensure_not_active(self, request: CrawlJobRequest) -> None:
        if request.job_id and (request.job_id in self._queued or request.job_id in self._cancel_events):
            raise ValidationError(f"Job {request.job_id} is already queued or running")

    async def crawl(self, request: CrawlJobRequest) -> CrawlResult:
        self._ensure_not_active(request)
        job = await self.runner.prepare(request)
        event = self._cancel_events.setdefault(job.job_id, asyncio.Event())
        try:
            return await self.runner.execute(job, event)
        finally:
            self._cancel_events.pop(job.job_id, None)

    async def submit(self, request: CrawlJobRequest) -> str:
        if self._queue is None:
            raise RuntimeError("CrawlJobManager.start() has not been called")
        self._ensure_not_active(request)
        job = await self.runner.prepare(request)
        self._cancel_events[job.job_id] = asyncio.Event()
        self._queued[job.job_id] = job
        await self._queue.put(job)
        return job.job_id

    async def get_job(self, job_id: str) -> Optional[JobRow]:
        return await self.store.get_job(job_id)

    async def list_jobs(self, venture_id: str) -> List[JobRow]:
        return await self.store.list_jobs(venture_id)

    async def get_results(self, job_id: str, *, offset: int, limit: int) -> Optional[List[PageRecord]]:
        if await self.store.get_job(job_id) is None:
            return None
        return await self.store.list_pages(job_id, offset=offset, limit=limit)

    async def cancel(self, job_id: str) -> Optional[bool]:
        """None if the job is unknown, False if it already finished, True otherwise."""
        row = await self.store.get_job(job_id)
        if row is None:
            return None
        if JobStatus(row.status) in TERMINAL_STATUSES:
            return False

        queued = self._queued.get(job_id)
        if queued is not None and queued.status is JobStatus.PENDING:
            # never started: skip the run entirely
            queued.transition(JobStatus.CANCELLED)
            queued.completed_at = utc_now_iso()
            await self.store.update_job(job_id, status=queued.status.value, completed_at=queued.completed_at)
            logger.info("Cancelled queued job", extra={"context": job_id})
            return True

        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested", extra={"context": job_id})
        return True

    async def _worker_loop(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                self._queued.pop(job.job_id, None)
                if job.status is not JobStatus.PENDING:
                    continue
                try:
                    await self.runner.execute(job, self._cancel_events.get(job.job_id))
                except CrawlError as e:
                    logger.error("Crawl job failed: %s", e, extra={"context": job.job_id})
                except ValidationError as e:
                    logger.warning("Crawl job skipped: %s", e, extra={"context": job.job_id})
            finally:
                self._cancel_events.pop(job.job_id, None)
                queue.task_done()
