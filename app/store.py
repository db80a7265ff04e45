from __future__ import annotations

import asyncio
import dataclasses
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.models import PageRecord


class PersistenceError(Exception):
    """A storage read/write failed. Escalates the whole crawl job to failed."""


class JobStateConflict(PersistenceError):
    """A conditional update found the job in another status."""

    def __init__(self, job_id: str, expected: str, actual: str) -> None:
        super().__init__(f"job {job_id} is {actual}, expected {expected}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobRow:
    """Stored shape of a crawl job."""

    job_id: str
    venture_id: str
    name: str
    start_url: str
    config: Dict[str, Any]
    status: str = "pending"
    progress: Dict[str, int] = field(default_factory=lambda: {"visited": 0, "queued": 0})
    results_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


_UPDATABLE = frozenset(
    {
        "name",
        "start_url",
        "config",
        "status",
        "progress",
        "results_count",
        "started_at",
        "completed_at",
        "error",
    }
)


class JobStore(ABC):
    """
    Persistence consumed by the crawler. The crawl loop itself only needs
    create_job / update_job / insert_page_record; the read side serves the API.
    All failures surface as PersistenceError.
    """

    @abstractmethod
    async def create_job(
        self, *, venture_id: str, name: str, start_url: str, config: Dict[str, Any]
    ) -> str:
        ...

    @abstractmethod
    async def update_job(
        self, job_id: str, *, expected_status: Optional[str] = None, **fields: Any
    ) -> None:
        """
        Apply `fields` to the job row. With `expected_status`, the check and
        the write happen atomically and a mismatch raises JobStateConflict.
        """

    @abstractmethod
    async def insert_page_record(self, record: PageRecord) -> None:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRow]:
        ...

    @abstractmethod
    async def list_jobs(self, venture_id: str) -> List[JobRow]:
        ...

    @abstractmethod
    async def list_pages(
        self, job_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> List[PageRecord]:
        ...


class InMemoryJobStore(JobStore):
    """Process-local store; rows are copied in and out so callers never share state."""

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRow] = {}
        self._pages: Dict[str, List[PageRecord]] = {}
        self._lock = asyncio.Lock()

    async def create_job(
        self, *, venture_id: str, name: str, start_url: str, config: Dict[str, Any]
    ) -> str:
        job_id = str(uuid.uuid4())
        row = JobRow(
            job_id=job_id,
            venture_id=venture_id,
            name=name,
            start_url=start_url,
            config=dict(config),
        )
        async with self._lock:
            self._jobs[job_id] = row
            self._pages[job_id] = []
        return job_id

    async def update_job(
        self, job_id: str, *, expected_status: Optional[str] = None, **fields: Any
    ) -> None:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise PersistenceError(f"cannot update job fields: {sorted(unknown)}")
        async with self._lock:
            row = self._jobs.get(job_id)
            if row is None:
                raise PersistenceError(f"job {job_id} not found")
            if expected_status is not None and row.status != expected_status:
                raise JobStateConflict(job_id, expected_status, row.status)
            for name, value in fields.items():
                setattr(row, name, dict(value) if isinstance(value, dict) else value)

    async def insert_page_record(self, record: PageRecord) -> None:
        async with self._lock:
            pages = self._pages.get(record.job_id)
            if pages is None:
                raise PersistenceError(f"job {record.job_id} not found")
            pages.append(record.model_copy())

    async def get_job(self, job_id: str) -> Optional[JobRow]:
        async with self._lock:
            row = self._jobs.get(job_id)
            return _copy_row(row) if row else None

    async def list_jobs(self, venture_id: str) -> List[JobRow]:
        # insertion order is creation order; newest first
        async with self._lock:
            return [
                _copy_row(r) for r in reversed(self._jobs.values()) if r.venture_id == venture_id
            ]

    async def list_pages(
        self, job_id: str, *, offset: int = 0, limit: Optional[int] = None
    ) -> List[PageRecord]:
        async with self._lock:
            pages = self._pages.get(job_id, [])
            end = None if limit is None else offset + limit
            return [p.model_copy() for p in pages[offset:end]]


def _copy_row(row: JobRow) -> JobRow:
    return dataclasses.replace(
        row,
        config=dict(row.config),
        progress=dict(row.progress),
    )
