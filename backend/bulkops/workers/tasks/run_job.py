"""Celery task that drives a job execution through the runner."""

from __future__ import annotations

import logging

from bulkops.core.exceptions import JobAlreadyActiveError, JobNotFoundError
from bulkops.db.session import get_fresh_session
from bulkops.services.job_runner import JobRunner
from bulkops.utils.memory_monitor import log_memory_status
from bulkops.utils.redis_client import get_redis_client
from bulkops.workers.celery_app import celery_app, settings

logger = logging.getLogger(__name__)


def schedule_retry(job_id: str, countdown: float) -> None:
    """Re-enqueue the job; the runner resumes from its last committed chunk."""
    run_job_task.apply_async(args=(job_id,), countdown=countdown, queue=settings.jobs_queue)


def enqueue_job(job_id: str) -> None:
    run_job_task.apply_async(args=(job_id,), queue=settings.jobs_queue)


def build_runner() -> JobRunner:
    return JobRunner(
        get_fresh_session,
        get_redis_client(),
        settings=settings,
        retry_scheduler=schedule_retry,
    )


@celery_app.task(bind=True, name="bulkops.workers.tasks.run_job", max_retries=None)
def run_job_task(self, job_id: str) -> str | None:
    """Run or continue a job.

    A delivery that finds the job lock busy (a retry or resume enqueued while
    the previous runner winds down, or a redelivery after a worker crash)
    is tried again until the lock is free, as long as the job still needs a
    runner. The lock lapses on its own when its holder has died.
    """
    log_memory_status(f"job {job_id} task start")
    runner = build_runner()
    try:
        outcome = runner.run(job_id)
    except JobAlreadyActiveError as exc:
        if runner.awaits_runner(job_id):
            countdown = settings.job_lock_retry_seconds
            logger.warning(f"[job {job_id}] job lock busy; delivering again in {countdown}s")
            raise self.retry(exc=exc, countdown=countdown)
        logger.info(f"[job {job_id}] duplicate delivery ignored; job no longer needs a runner")
        return None
    except JobNotFoundError:
        logger.error(f"[job {job_id}] task received for a job that does not exist")
        return None
    logger.info(f"[job {job_id}] run finished: {outcome.value}")
    log_memory_status(f"job {job_id} task end")
    return outcome.value
