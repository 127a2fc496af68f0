"""CSV upload endpoint: stage the file and submit a product import job."""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.orm import Session

from bulkops.api.dependencies.db import get_session
from bulkops.api.dependencies.jobs import get_actor_id, get_enqueue, rate_limited
from bulkops.api.routers.job_helpers import to_http_error
from bulkops.api.schemas.job import JobSubmitResponse
from bulkops.core.config import get_settings
from bulkops.core.exceptions import JobError
from bulkops.services import job_service
from bulkops.services.csv_ingest import stage_file
from bulkops.storage.uploads import delete_upload

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/",
    summary="Upload a CSV and start a product import job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobSubmitResponse,
    dependencies=[Depends(rate_limited("file_upload"))],
)
async def enqueue_import(
    file: UploadFile = File(...),
    batch_size: int | None = Form(None, ge=1),
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_session),
    enqueue: Callable[[str], None] = Depends(get_enqueue),
) -> JobSubmitResponse:
    """Persist the upload under the uploads directory, then submit the job.

    The staged file is removed again when submission is rejected.
    """
    settings = get_settings()
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required",
        )
    if not any(file.filename.lower().endswith(ext) for ext in settings.allowed_import_extensions):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV uploads are supported",
        )

    # Declared size first, then a capped copy for bodies that do not declare one.
    if file.size is not None and file.size > settings.max_upload_bytes:
        logger.error(f"Rejected upload {file.filename!r}: {file.size} bytes declared")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Upload exceeds the {settings.max_upload_bytes} byte limit",
        )

    try:
        staged_path = await stage_file(file, max_bytes=settings.max_upload_bytes)
    except JobError as exc:
        raise to_http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc

    configuration = {"batch_size": batch_size} if batch_size else None
    try:
        job_id = job_service.submit_job(
            db,
            job_kind="product_import",
            input_reference=str(staged_path),
            actor_id=actor_id,
            configuration=configuration,
            name=f"Import {file.filename}",
            enqueue=enqueue,
        )
    except JobError as exc:
        delete_upload(staged_path)
        raise to_http_error(exc) from exc

    logger.info(f"Created import job {job_id} for file {file.filename}")
    return JobSubmitResponse(job_id=job_id)
