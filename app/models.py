from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app import config

PageStatus = Literal["success", "failure"]
JobStatusValue = Literal["pending", "running", "completed", "failed", "cancelled"]


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; either spelling accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CrawlJobRequest(_WireModel):
    # Required, but checked by the handlers so a missing value maps to 400
    start_url: Optional[str] = None
    venture_id: Optional[str] = None

    job_id: Optional[str] = Field(
        default=None,
        description="Reuse an existing pending job instead of creating a new one.",
    )

    # ---- Crawl controls ----
    max_depth: int = Field(
        default=config.DEFAULT_MAX_DEPTH,
        ge=0,
        le=10,
        description="BFS depth from the start URL (0 = only the start page).",
    )
    max_pages: int = Field(
        default=config.DEFAULT_MAX_PAGES,
        ge=1,
        le=5000,
        description="Max pages to fetch (cap to avoid runaway crawls).",
    )
    domain_only: bool = Field(
        default=config.DEFAULT_DOMAIN_ONLY,
        description="Only follow links whose hostname exactly matches the start URL's hostname.",
    )


class PageRecord(_WireModel):
    job_id: str
    venture_id: str
    url: str
    title: str = ""
    depth: int
    scraped_at: str  # ISO8601, UTC
    status: PageStatus
    http_status: Optional[int] = None
    error: Optional[str] = None


class CrawlResult(_WireModel):
    job_id: str
    total_pages: int
    results: List[PageRecord]


class CrawlProgress(_WireModel):
    visited: int = 0
    queued: int = 0


class CrawlConfigOut(_WireModel):
    max_depth: int
    max_pages: int
    domain_only: bool


class JobStatusResponse(_WireModel):
    job_id: str
    venture_id: str
    name: str
    start_url: str
    config: CrawlConfigOut
    status: JobStatusValue
    progress: CrawlProgress
    results_count: int
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None


class JobSubmitResponse(_WireModel):
    job_id: str


class JobCancelResponse(_WireModel):
    job_id: str
    cancelled: bool


class JobResultsResponse(_WireModel):
    job_id: str
    offset: int
    limit: int
    total_returned: int
    results: List[PageRecord]


class JobListResponse(_WireModel):
    venture_id: str
    jobs: List[JobStatusResponse]

