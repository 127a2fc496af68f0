"""Operational health heuristics: stalled jobs, error rates, queue backlog."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.orm import Session

from bulkops.core.config import Settings, get_settings
from bulkops.db.models.job_execution import JobExecution, JobStatus, as_utc, utcnow

logger = logging.getLogger(__name__)


def find_stalled_jobs(
    session: Session,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> list[JobExecution]:
    """Running jobs whose record has not been touched within the stall window."""
    settings = settings or get_settings()
    cutoff = (now or utcnow()) - timedelta(seconds=settings.stalled_job_seconds)
    running = session.execute(
        select(JobExecution).where(JobExecution.status == JobStatus.RUNNING.value)
    ).scalars()
    stalled = []
    for record in running:
        touched = as_utc(record.updated_at or record.started_at)
        if touched is not None and touched < cutoff:
            stalled.append(record)
    if stalled:
        logger.warning(f"{len(stalled)} running job(s) look stalled")
    return stalled


def high_error_rate_jobs(
    session: Session, settings: Settings | None = None
) -> list[tuple[JobExecution, float]]:
    """Jobs whose invalid-item ratio exceeds the threshold."""
    settings = settings or get_settings()
    rows = session.execute(
        select(JobExecution).where(
            JobExecution.processed_records > 0,
            JobExecution.invalid_count > 0,
        )
    ).scalars()
    flagged = []
    for record in rows:
        rate = record.invalid_count / record.processed_records
        if rate > settings.error_rate_threshold:
            flagged.append((record, round(rate, 4)))
    return flagged


def queue_backlog(
    redis: Redis,
    queues: list[str] | None = None,
    settings: Settings | None = None,
) -> dict[str, dict[str, int | bool]]:
    """Length of each Celery list queue in the broker and whether it is backlogged."""
    settings = settings or get_settings()
    queues = queues or [settings.jobs_queue, "celery"]
    report: dict[str, dict[str, int | bool]] = {}
    for queue_name in queues:
        try:
            length = int(redis.llen(queue_name))
        except RedisError as e:
            logger.warning(f"Could not read length of queue {queue_name}: {e}")
            continue
        report[queue_name] = {
            "length": length,
            "backlogged": length > settings.queue_backlog_threshold,
        }
    return report


def health_report(session: Session, redis: Redis, settings: Settings | None = None) -> dict:
    settings = settings or get_settings()
    return {
        "stalled_jobs": [r.version for r in find_stalled_jobs(session, settings)],
        "high_error_rate_jobs": [
            {"job_id": r.version, "error_rate": rate}
            for r, rate in high_error_rate_jobs(session, settings)
        ],
        "queues": queue_backlog(redis, settings=settings),
    }
