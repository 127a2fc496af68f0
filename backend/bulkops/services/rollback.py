"""Capture compensating actions per chunk and replay them in reverse."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from bulkops.core.exceptions import (
    JobAlreadyActiveError,
    RollbackFailedError,
    RollbackUnavailableError,
)
from bulkops.db.models.job_execution import JobExecution, JobStatus, utcnow
from bulkops.jobs.base import Capability, JobKind, Rollbackable
from bulkops.services.job_lock import JobLock

logger = logging.getLogger(__name__)


class RollbackManager:
    def capture(
        self,
        record: JobExecution,
        batch_number: int,
        compensations: list[dict[str, Any]],
    ) -> None:
        """Append descriptors for one chunk, numbered in application order."""
        for compensation in compensations:
            step = len(record.rollback_data or [])
            record.append_rollback_descriptor(
                {
                    "step": step,
                    "batch_number": batch_number,
                    "operation": compensation.get("operation"),
                    "target": compensation.get("target"),
                    "data": compensation.get("data"),
                    "captured_at": utcnow().isoformat(),
                }
            )

    def ensure_available(self, record: JobExecution, kind: JobKind) -> None:
        if not kind.supports(Capability.ROLLBACKABLE) or not isinstance(kind, Rollbackable):
            raise RollbackUnavailableError(f"Job kind '{kind.name}' does not support rollback")
        if record.status != JobStatus.COMPLETED.value:
            raise RollbackUnavailableError(
                f"Only completed jobs can be rolled back (job is {record.status})"
            )
        if not record.rollback_data:
            raise RollbackUnavailableError(
                f"Job {record.version} has no captured rollback data"
            )

    def rollback(
        self,
        session: Session,
        record: JobExecution,
        kind: JobKind,
        lock: JobLock | None = None,
    ) -> dict[str, Any]:
        """Replay descriptors newest first, committing after each one.

        A failing step halts the replay: the record keeps status
        ``completed`` with ``rollback_status='partial'`` and a report of
        applied and pending steps, and RollbackFailedError is raised.
        """
        self.ensure_available(record, kind)
        descriptors = list(record.rollback_data)
        # Steps already undone by an earlier partial attempt are skipped.
        already_applied = set((record.rollback_report or {}).get("applied", []))
        applied = sorted(already_applied, reverse=True)

        for descriptor in reversed(descriptors):
            step = descriptor["step"]
            if step in already_applied:
                continue
            if lock is not None and not lock.renew():
                raise JobAlreadyActiveError(
                    f"Lost the job lock while rolling back {record.version}"
                )
            try:
                kind.compensate(descriptor, session)
                applied.append(step)
                record.rollback_report = {"applied": list(applied), "pending": []}
                session.commit()
            except Exception as e:
                session.rollback()
                pending = [d["step"] for d in reversed(descriptors) if d["step"] not in applied]
                report = {
                    "applied": list(applied),
                    "pending": pending,
                    "failed_step": step,
                    "error": str(e),
                }
                record.rollback_status = "partial"
                record.rollback_report = report
                session.commit()
                logger.error(
                    f"[job {record.version}] rollback halted at step {step}: {e}",
                    exc_info=True,
                )
                raise RollbackFailedError(
                    f"Rollback halted at step {step}: {e}", report
                ) from e

        record.mark_rolled_back()
        record.rollback_report = {"applied": list(applied), "pending": []}
        session.commit()
        logger.info(
            f"[job {record.version}] rolled back {len(applied)} step(s)"
        )
        return record.rollback_report
