from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request

from app import config
from app.crawler import CrawlError, CrawlJobManager, CrawlJobRunner, ValidationError
from app.fetcher import Fetcher, RateLimiter
from app.logger import setup_logger
from app.models import (
    CrawlConfigOut,
    CrawlJobRequest,
    CrawlProgress,
    CrawlResult,
    JobCancelResponse,
    JobListResponse,
    JobResultsResponse,
    JobStatusResponse,
    JobSubmitResponse,
)
from app.store import InMemoryJobStore, JobRow

logger = logging.getLogger(__name__)


def build_manager() -> CrawlJobManager:
    runner = CrawlJobRunner(
        InMemoryJobStore(),
        Fetcher(),
        rate_limiter=RateLimiter(config.CRAWL_DELAY_S),
    )
    return CrawlJobManager(runner, workers=config.JOB_WORKERS)


def create_app(manager: Optional[CrawlJobManager] = None) -> FastAPI:
    setup_logger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mgr = manager or build_manager()
        mgr.start()
        app.state.manager = mgr
        logger.info("Crawler API ready")
        yield
        await mgr.aclose()

    app = FastAPI(title="site-crawler", lifespan=lifespan)
    _register_routes(app)
    return app


def get_manager(request: Request) -> CrawlJobManager:
    return request.app.state.manager


def _status_response(row: JobRow) -> JobStatusResponse:
    return JobStatusResponse(
        job_id=row.job_id,
        venture_id=row.venture_id,
        name=row.name,
        start_url=row.start_url,
        config=CrawlConfigOut(**row.config),
        status=row.status,
        progress=CrawlProgress(**row.progress),
        results_count=row.results_count,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        error=row.error,
    )


def _register_routes(app: FastAPI) -> None:

    # -----------------------
    # Basic endpoints
    # -----------------------

    @app.get("/")
    def home() -> Dict[str, str]:
        return {"status": "ok", "message": "Crawler API running"}

    # --------------------------------------------------------------
    # Single-shot crawl: runs in-request and returns every record
    # --------------------------------------------------------------

    @app.post("/api/crawl", response_model=CrawlResult)
    async def crawl(
        payload: CrawlJobRequest, manager: CrawlJobManager = Depends(get_manager)
    ) -> CrawlResult:
        try:
            return await manager.crawl(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except CrawlError as e:
            raise HTTPException(status_code=500, detail=str(e))

    # ----------------------------------------------------------
    # Async jobs: submit, poll, page through results, cancel
    # ----------------------------------------------------------

    @app.post("/api/jobs", response_model=JobSubmitResponse)
    async def create_job(
        payload: CrawlJobRequest, manager: CrawlJobManager = Depends(get_manager)
    ) -> JobSubmitResponse:
        try:
            job_id = await manager.submit(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except CrawlError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return JobSubmitResponse(job_id=job_id)

    @app.get("/api/jobs/{job_id}", response_model=JobStatusResponse)
    async def job_status(
        job_id: str, manager: CrawlJobManager = Depends(get_manager)
    ) -> JobStatusResponse:
        row = await manager.get_job(job_id)
        if row is None:
            raise HTTPException(status_code=404, detail="job_id not found")
        return _status_response(row)

    @app.post("/api/jobs/{job_id}/cancel", response_model=JobCancelResponse)
    async def job_cancel(
        job_id: str, manager: CrawlJobManager = Depends(get_manager)
    ) -> JobCancelResponse:
        cancelled = await manager.cancel(job_id)
        if cancelled is None:
            raise HTTPException(status_code=404, detail="job_id not found")
        return JobCancelResponse(job_id=job_id, cancelled=cancelled)

    @app.get("/api/jobs/{job_id}/results", response_model=JobResultsResponse)
    async def job_results(
        job_id: str,
        offset: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        manager: CrawlJobManager = Depends(get_manager),
    ) -> JobResultsResponse:
        records = await manager.get_results(job_id, offset=offset, limit=limit)
        if records is None:
            raise HTTPException(status_code=404, detail="job_id not found")
        return JobResultsResponse(
            job_id=job_id,
            offset=offset,
            limit=limit,
            total_returned=len(records),
            results=records,
        )

    @app.get("/api/ventures/{venture_id}/jobs", response_model=JobListResponse)
    async def venture_jobs(
        venture_id: str, manager: CrawlJobManager = Depends(get_manager)
    ) -> JobListResponse:
        rows = await manager.list_jobs(venture_id)
        return JobListResponse(venture_id=venture_id, jobs=[_status_response(r) for r in rows])


app = create_app()
