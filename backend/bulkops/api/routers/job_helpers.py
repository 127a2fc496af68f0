"""Shared helpers for shaping job responses and mapping job errors to HTTP."""
from __future__ import annotations

import logging

from fastapi import HTTPException, status

from bulkops.api.schemas.job import JobDetail, JobStatus, ProgressLogRead
from bulkops.core.exceptions import (
    FatalInputError,
    InputValidationError,
    InvalidTransitionError,
    JobAlreadyExistsError,
    JobNotFoundError,
    RateLimitExceededError,
    RollbackFailedError,
    RollbackUnavailableError,
    SecurityViolationError,
)
from bulkops.db.models.job_execution import JobExecution
from bulkops.services.job_service import JobSnapshot

logger = logging.getLogger(__name__)


def serialize_job(job: JobExecution, progress_payload: dict | None = None) -> JobStatus:
    """Combine DB state + cached progress snapshot into a response schema."""
    return JobStatus(**_job_fields(job, progress_payload or {}))


def _job_fields(job: JobExecution, progress_payload: dict) -> dict:
    message = progress_payload.get("message")
    if not message:
        total_display = job.total_records if job.total_records else "?"
        message = f"Processed {job.processed_records}/{total_display} items"

    return {
        "id": job.version,
        "name": job.name,
        "type": job.job_kind,
        "status": job.status,
        "progress_percentage": job.progress_percentage,
        "message": message,
        "total_records": job.total_records,
        "processed_records": job.processed_records,
        "current_batch_number": job.current_batch_number,
        "current_batch_size": job.current_batch_size,
        "invalid_count": job.invalid_count,
        "retry_count": job.retry_count,
        "admin_id": job.admin_id,
        "error": job.structured_error_info(),
        "rollback_status": job.rollback_status,
        "rollback_report": job.rollback_report,
        "cancel_requested": job.cancel_requested,
        "pause_requested": job.pause_requested,
        "records_per_second": progress_payload.get("records_per_second")
        or job.average_records_per_second(),
        "estimated_completion_time": job.estimated_completion_time(),
        "execution_duration": job.execution_duration,
        "started_at": job.started_at or job.created_at,
        "completed_at": job.completed_at,
        "metrics": job.metrics or {},
    }


def serialize_snapshot(snapshot: JobSnapshot, progress_payload: dict | None = None) -> JobDetail:
    job = snapshot.job
    payload = progress_payload or {}
    return JobDetail(
        **_job_fields(job, payload),
        configuration=job.configuration or {},
        invalid_items=job.invalid_items or [],
        environment=job.environment,
        hostname=job.hostname,
        process_id=job.process_id,
        recent_logs=[ProgressLogRead.model_validate(e) for e in snapshot.recent_logs],
        live_progress=payload or None,
    )


def to_http_error(exc: Exception) -> HTTPException:
    """Translate job-framework errors into HTTP responses."""
    if isinstance(exc, RateLimitExceededError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": str(exc), "retry_after": int(exc.retry_after) + 1},
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
        )
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, SecurityViolationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (InputValidationError, FatalInputError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (InvalidTransitionError, RollbackUnavailableError, JobAlreadyExistsError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, RollbackFailedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": str(exc), "report": exc.report},
        )
    logger.error(f"Unexpected error: {exc}", exc_info=exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred",
    )
