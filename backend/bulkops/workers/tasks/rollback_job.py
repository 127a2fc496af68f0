"""Celery task for rolling back a completed job."""

from __future__ import annotations

import logging

from bulkops.core.exceptions import JobError
from bulkops.db.session import get_fresh_session
from bulkops.services import job_service
from bulkops.utils.redis_client import get_redis_client
from bulkops.workers.celery_app import celery_app, settings

logger = logging.getLogger(__name__)


def enqueue_rollback(job_id: str, actor_id: str) -> None:
    rollback_job_task.apply_async(args=(job_id, actor_id), queue=settings.jobs_queue)


@celery_app.task(bind=True, name="bulkops.workers.tasks.rollback_job")
def rollback_job_task(self, job_id: str, actor_id: str) -> str | None:
    session = get_fresh_session()
    try:
        record = job_service.rollback_job(session, job_id, actor_id, redis=get_redis_client())
        return record.status
    except JobError as e:
        logger.error(f"[job {job_id}] rollback failed: {e}", exc_info=True)
        return None
    finally:
        session.close()
