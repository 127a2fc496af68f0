"""Submission, query and control operations over job executions.

Every call takes the acting identity explicitly; nothing here reads
request-scoped globals. Control calls either succeed or raise the guard
they violated (InvalidTransitionError, RollbackUnavailableError, ...).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis import Redis
from sqlalchemy import select
from sqlalchemy.orm import Session

from bulkops.core.config import Settings, get_settings
from bulkops.core.exceptions import (
    InputValidationError,
    InvalidTransitionError,
    JobAlreadyActiveError,
    JobAlreadyExistsError,
    JobNotFoundError,
)
from bulkops.core.job_config import build_configuration, validate_configuration
from bulkops.db.models.job_execution import JobExecution, JobStatus, generate_version
from bulkops.db.models.progress_log import ProgressLogEntry
from bulkops.jobs.base import Capability
from bulkops.jobs.registry import get_kind
from bulkops.services.broadcaster import NotificationBroadcaster, build_event
from bulkops.services.job_lock import JobLock
from bulkops.services.rollback import RollbackManager

logger = logging.getLogger(__name__)

Enqueue = Callable[[str], None]


@dataclass
class JobSnapshot:
    job: JobExecution
    recent_logs: list[ProgressLogEntry]


def _load(session: Session, job_id: str) -> JobExecution:
    record = session.get(JobExecution, job_id)
    if record is None:
        raise JobNotFoundError(f"Job {job_id} not found")
    return record


def submit_job(
    session: Session,
    *,
    job_kind: str,
    input_reference: str,
    actor_id: str,
    configuration: dict[str, Any] | None = None,
    job_id: str | None = None,
    name: str | None = None,
    enqueue: Enqueue | None = None,
    fill_defaults: bool = True,
    settings: Settings | None = None,
) -> str:
    """Validate and persist a pending job, then hand it to the worker pool.

    Nothing is written when the kind, configuration or input fails its
    pre-flight check.
    """
    if not actor_id:
        raise InputValidationError("actor_id is required")
    if not input_reference:
        raise InputValidationError("input_reference is required")

    kind = get_kind(job_kind)
    if fill_defaults:
        configuration = build_configuration(configuration, settings)
    validate_configuration(configuration)
    kind.preflight(input_reference)

    if job_id is not None:
        existing = session.get(JobExecution, job_id)
        if existing is not None:
            if existing.is_active:
                raise JobAlreadyActiveError(
                    f"Job {job_id} is already {existing.status}"
                )
            raise JobAlreadyExistsError(f"Job {job_id} already exists ({existing.status})")

    record = JobExecution(
        version=job_id or generate_version(),
        name=name or f"{job_kind}:{input_reference}"[:255],
        job_kind=job_kind,
        input_reference=input_reference,
        admin_id=actor_id,
        configuration=configuration,
        environment=(settings or get_settings()).environment,
    )
    session.add(record)
    session.commit()
    logger.info(f"[job {record.version}] submitted {job_kind} by actor {actor_id}")

    if enqueue is not None:
        enqueue(record.version)
    return record.version


def get_job_snapshot(session: Session, job_id: str, recent: int | None = None) -> JobSnapshot:
    """Current record plus the latest ``recent`` progress log rows, oldest first."""
    record = _load(session, job_id)
    limit = recent if recent is not None else get_settings().recent_progress_logs
    rows = (
        session.execute(
            select(ProgressLogEntry)
            .where(ProgressLogEntry.job_version == job_id)
            .order_by(ProgressLogEntry.id.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return JobSnapshot(job=record, recent_logs=list(reversed(rows)))


def list_jobs(
    session: Session,
    status: str | None = None,
    actor_id: str | None = None,
    limit: int = 50,
) -> list[JobExecution]:
    query = select(JobExecution).order_by(JobExecution.created_at.desc()).limit(limit)
    if status:
        query = query.where(JobExecution.status == JobStatus(status).value)
    if actor_id:
        query = query.where(JobExecution.admin_id == actor_id)
    return list(session.execute(query).scalars().all())


def _announce(redis: Redis | None, record: JobExecution, message: str, terminal: bool) -> None:
    if redis is None:
        return
    event = build_event(
        record.version,
        "control",
        record.progress_percentage,
        record.processed_records,
        message,
        status=record.status if terminal else None,
    )
    NotificationBroadcaster(redis).publish(event, actor_id=record.admin_id)


def pause_job(session: Session, job_id: str, actor_id: str, redis: Redis | None = None) -> JobExecution:
    """Ask the runner to pause at the next chunk boundary."""
    record = _load(session, job_id)
    if not record.can_pause():
        raise InvalidTransitionError(record.status, "paused", "only running jobs can be paused")
    if not get_kind(record.job_kind).supports(Capability.RESUMABLE):
        raise InvalidTransitionError(
            record.status, "paused", f"job kind '{record.job_kind}' is not resumable"
        )
    record.pause_requested = True
    session.commit()
    logger.info(f"[job {job_id}] pause requested by actor {actor_id}")
    _announce(redis, record, f"Pause requested by {actor_id}", terminal=False)
    return record


def resume_job(
    session: Session,
    job_id: str,
    actor_id: str,
    enqueue: Enqueue | None = None,
    redis: Redis | None = None,
) -> JobExecution:
    record = _load(session, job_id)
    record.resume()
    record.pause_requested = False
    session.commit()
    logger.info(f"[job {job_id}] resumed by actor {actor_id}")
    _announce(redis, record, f"Resumed by {actor_id}", terminal=False)
    if enqueue is not None:
        enqueue(record.version)
    return record


def cancel_job(session: Session, job_id: str, actor_id: str, redis: Redis | None = None) -> JobExecution:
    """Pending and paused jobs cancel at once; running jobs at the next chunk boundary."""
    record = _load(session, job_id)
    if not record.can_cancel():
        raise InvalidTransitionError(record.status, "cancelled", f"job is already {record.status}")
    if record.status == JobStatus.RUNNING.value:
        record.cancel_requested = True
        session.commit()
        logger.info(f"[job {job_id}] cancellation requested by actor {actor_id}")
        _announce(redis, record, f"Cancellation requested by {actor_id}", terminal=False)
        return record
    record.cancel()
    session.commit()
    logger.info(f"[job {job_id}] cancelled by actor {actor_id}")
    _announce(redis, record, f"Cancelled by {actor_id}", terminal=True)
    return record


def rollback_job(
    session: Session,
    job_id: str,
    actor_id: str,
    redis: Redis | None = None,
    manager: RollbackManager | None = None,
    lock_ttl_seconds: int | None = None,
) -> JobExecution:
    """Replay the job's compensating actions; guards raise before any write."""
    record = _load(session, job_id)
    kind = get_kind(record.job_kind)
    manager = manager or RollbackManager()
    manager.ensure_available(record, kind)
    logger.info(f"[job {job_id}] rollback started by actor {actor_id}")

    if redis is not None:
        ttl = lock_ttl_seconds or get_settings().job_lock_ttl_seconds
        with JobLock(redis, job_id, ttl) as lock:
            manager.rollback(session, record, kind, lock=lock)
    else:
        manager.rollback(session, record, kind)

    _announce(redis, record, f"Rolled back by {actor_id}", terminal=True)
    return record
