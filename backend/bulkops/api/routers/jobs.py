"""Job submission, tracking and control endpoints."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from redis import Redis
from sqlalchemy.orm import Session

from bulkops.api.dependencies.db import get_session
from bulkops.api.dependencies.jobs import (
    get_actor_id,
    get_enqueue,
    get_redis,
    get_rollback_enqueue,
    rate_limited,
)
from bulkops.api.routers.job_helpers import serialize_job, serialize_snapshot, to_http_error
from bulkops.api.schemas.job import JobDetail, JobStatus, JobSubmitRequest, JobSubmitResponse
from bulkops.core.exceptions import JobError
from bulkops.db.models.job_execution import TERMINAL_STATUSES, JobExecution
from bulkops.jobs.registry import get_kind
from bulkops.services import job_service
from bulkops.services.progress_tracker import fetch_progress
from bulkops.services.rollback import RollbackManager

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_POLL_SECONDS = 2


@router.post(
    "/",
    summary="Submit a bulk job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSubmitResponse,
    dependencies=[Depends(rate_limited("job_submission"))],
)
async def submit_job(
    payload: JobSubmitRequest,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    enqueue: Callable[[str], None] = Depends(get_enqueue),
) -> JobSubmitResponse:
    """Validate the request synchronously and enqueue the job for a worker."""
    try:
        job_id = job_service.submit_job(
            db,
            job_kind=payload.job_kind,
            input_reference=payload.input_reference,
            actor_id=actor_id,
            configuration=payload.configuration,
            job_id=payload.job_id,
            name=payload.name,
            enqueue=enqueue,
        )
    except JobError as exc:
        raise to_http_error(exc) from exc
    return JobSubmitResponse(job_id=job_id)


@router.get(
    "/",
    summary="List jobs",
    response_model=list[JobStatus],
)
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status_filter: str | None = Query(None, alias="status", description="Filter by status"),
    actor: str | None = Query(None, description="Filter by submitting actor"),
    db: Session = Depends(get_session),
) -> list[JobStatus]:
    """Newest first."""
    try:
        jobs = job_service.list_jobs(db, status=status_filter, actor_id=actor, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status_filter}'") from exc
    return [serialize_job(job) for job in jobs]


@router.get(
    "/{job_id}",
    summary="Fetch job state and recent progress log",
    response_model=JobDetail,
)
async def get_job(
    job_id: str,
    recent: int = Query(20, ge=0, le=500, description="Progress log rows to include"),
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> JobDetail:
    try:
        snapshot = job_service.get_job_snapshot(db, job_id, recent=recent)
    except JobError as exc:
        raise to_http_error(exc) from exc
    return serialize_snapshot(snapshot, fetch_progress(job_id, redis))


@router.get(
    "/{job_id}/stream",
    summary="Server-Sent Events stream for real-time progress",
)
async def stream_job_progress(
    job_id: str,
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> StreamingResponse:
    """Stream job progress updates via Server-Sent Events (SSE).

    Each ``data:`` event carries the latest job status as JSON. The stream
    closes once the job reaches a terminal status.
    """
    if db.get(JobExecution, job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def event_generator() -> AsyncGenerator[str, None]:
        # The dependency session closes when the endpoint returns.
        from bulkops.db.session import SessionLocal

        session = SessionLocal()
        last_payload = None
        try:
            while True:
                session.expire_all()
                job = session.get(JobExecution, job_id)
                if job is None:
                    yield f"event: error\ndata: {json.dumps({'error': 'Job not found'})}\n\n"
                    break
                data = serialize_job(job, fetch_progress(job_id, redis)).model_dump_json()
                if data != last_payload:
                    last_payload = data
                    yield f"data: {data}\n\n"
                if job.status in TERMINAL_STATUSES:
                    yield "event: close\ndata: {}\n\n"
                    break
                await asyncio.sleep(STREAM_POLL_SECONDS)
        finally:
            session.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@router.post("/{job_id}/pause", summary="Pause at the next chunk boundary", response_model=JobStatus)
async def pause_job(
    job_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> JobStatus:
    try:
        job = job_service.pause_job(db, job_id, actor_id, redis=redis)
    except JobError as exc:
        raise to_http_error(exc) from exc
    return serialize_job(job)


@router.post("/{job_id}/resume", summary="Resume a paused job", response_model=JobStatus)
async def resume_job(
    job_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
    enqueue: Callable[[str], None] = Depends(get_enqueue),
) -> JobStatus:
    try:
        job = job_service.resume_job(db, job_id, actor_id, enqueue=enqueue, redis=redis)
    except JobError as exc:
        raise to_http_error(exc) from exc
    return serialize_job(job)


@router.post("/{job_id}/cancel", summary="Cancel a job", response_model=JobStatus)
async def cancel_job(
    job_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    redis: Redis = Depends(get_redis),
) -> JobStatus:
    try:
        job = job_service.cancel_job(db, job_id, actor_id, redis=redis)
    except JobError as exc:
        raise to_http_error(exc) from exc
    return serialize_job(job)


@router.post(
    "/{job_id}/rollback",
    summary="Roll back a completed job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobStatus,
)
async def rollback_job(
    job_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    enqueue_rollback: Callable[[str, str], None] = Depends(get_rollback_enqueue),
) -> JobStatus:
    """Guards are checked here; the compensating replay runs on a worker."""
    try:
        snapshot = job_service.get_job_snapshot(db, job_id, recent=0)
        RollbackManager().ensure_available(snapshot.job, get_kind(snapshot.job.job_kind))
    except JobError as exc:
        raise to_http_error(exc) from exc
    enqueue_rollback(job_id, actor_id)
    logger.info(f"[job {job_id}] rollback queued by actor {actor_id}")
    return serialize_job(snapshot.job)
