"""Durable job execution record and its lifecycle state machine."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, Column, Float, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from bulkops.core.exceptions import InvalidTransitionError, RollbackUnavailableError
from bulkops.core.job_config import validate_configuration
from bulkops.db.base import Base, JSONType

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.PENDING.value: frozenset({"running", "failed", "cancelled"}),
    JobStatus.RUNNING.value: frozenset({"paused", "completed", "failed", "cancelled"}),
    JobStatus.PAUSED.value: frozenset({"running", "cancelled"}),
    JobStatus.COMPLETED.value: frozenset({"rolled_back"}),
    JobStatus.FAILED.value: frozenset(),
    JobStatus.CANCELLED.value: frozenset(),
    JobStatus.ROLLED_BACK.value: frozenset(),
}

ACTIVE_STATUSES = frozenset({"pending", "running", "paused"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "rolled_back"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def generate_version() -> str:
    """Timestamp-derived job identity with a random suffix."""
    return f"{utcnow().strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def compute_percentage(processed: int, total: int) -> float | None:
    """processed/total*100 clamped to [0, 100]; None when total is unknown."""
    if not total or total <= 0:
        return None
    return round(max(0.0, min(processed / total * 100, 100.0)), 2)


class JobExecution(Base):
    __tablename__ = "job_executions"

    version = Column(String(64), primary_key=True, default=generate_version)
    name = Column(String(255), nullable=False)
    job_kind = Column(String(64), nullable=False, index=True)
    input_reference = Column(Text, nullable=False)
    status = Column(String(32), nullable=False, default="pending", index=True)
    admin_id = Column(String(64), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))

    processed_records = Column(Integer, nullable=False, default=0)
    total_records = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Float)
    current_batch_number = Column(Integer, nullable=False, default=0)
    current_batch_size = Column(Integer)

    configuration = Column(JSONType, nullable=False, default=dict)
    rollback_data = Column(JSONType, nullable=False, default=list)
    rollback_status = Column(String(16), nullable=False, default="none")
    rollback_report = Column(JSONType)
    metrics = Column(JSONType, nullable=False, default=dict)
    invalid_items = Column(JSONType, nullable=False, default=list)
    invalid_count = Column(Integer, nullable=False, default=0)

    error_message = Column(Text)
    error_backtrace = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)

    pause_requested = Column(Boolean, nullable=False, default=False)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    environment = Column(String(64))
    hostname = Column(String(255))
    process_id = Column(Integer)

    progress_logs = relationship(
        "ProgressLogEntry",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="ProgressLogEntry.id",
    )

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("version", generate_version())
        kwargs.setdefault("status", JobStatus.PENDING.value)
        kwargs.setdefault("processed_records", 0)
        kwargs.setdefault("total_records", 0)
        kwargs.setdefault("current_batch_number", 0)
        kwargs.setdefault("configuration", {})
        kwargs.setdefault("rollback_data", [])
        kwargs.setdefault("rollback_status", "none")
        kwargs.setdefault("metrics", {})
        kwargs.setdefault("invalid_items", [])
        kwargs.setdefault("invalid_count", 0)
        kwargs.setdefault("retry_count", 0)
        kwargs.setdefault("pause_requested", False)
        kwargs.setdefault("cancel_requested", False)
        super().__init__(**kwargs)

    def __repr__(self) -> str:
        return f"<JobExecution {self.version} {self.job_kind} {self.status}>"

    # ------------------------------------------------------------------
    # Status queries
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, target: str) -> bool:
        return target in TRANSITIONS.get(self.status, frozenset())

    def can_pause(self) -> bool:
        return self.status == JobStatus.RUNNING.value

    def can_cancel(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def can_rollback(self) -> bool:
        return self.status == JobStatus.COMPLETED.value and bool(self.rollback_data)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition_to(self, target: str, reason: str | None = None) -> None:
        """Move to ``target`` or raise InvalidTransitionError."""
        target = JobStatus(target).value
        if not self.can_transition_to(target):
            if reason is None and self.is_terminal:
                reason = f"job is already {self.status}"
            raise InvalidTransitionError(self.status, target, reason)
        logger.info(f"[job {self.version}] {self.status} -> {target}")
        self.status = target

    def start(self, environment: str | None = None) -> None:
        """pending -> running; configuration must pass the schema first."""
        if self.status != JobStatus.PENDING.value:
            raise InvalidTransitionError(self.status, "running", "job is not pending")
        validate_configuration(self.configuration)
        self.transition_to(JobStatus.RUNNING.value)
        self.started_at = utcnow()
        self.hostname = socket.gethostname()
        self.process_id = os.getpid()
        if environment:
            self.environment = environment

    def pause(self) -> None:
        self.transition_to(JobStatus.PAUSED.value)
        self.pause_requested = False

    def resume(self) -> None:
        if self.status != JobStatus.PAUSED.value:
            raise InvalidTransitionError(
                self.status, "running", "only paused jobs can be resumed"
            )
        self.transition_to(JobStatus.RUNNING.value)

    def cancel(self) -> None:
        self.transition_to(JobStatus.CANCELLED.value)
        self.cancel_requested = False
        self.completed_at = utcnow()

    def mark_completed(self) -> None:
        self.transition_to(JobStatus.COMPLETED.value)
        self.completed_at = utcnow()
        if not self.total_records:
            self.total_records = self.processed_records
        self.progress_percentage = 100.0

    def mark_failed(self, message: str, backtrace: str | None = None) -> None:
        self.transition_to(JobStatus.FAILED.value)
        self.completed_at = utcnow()
        self.error_message = message
        self.error_backtrace = backtrace

    def mark_rolled_back(self) -> None:
        if not self.rollback_data:
            raise RollbackUnavailableError(
                f"Job {self.version} has no captured rollback data"
            )
        self.transition_to(JobStatus.ROLLED_BACK.value)
        self.rollback_status = "complete"

    # ------------------------------------------------------------------
    # Progress bookkeeping
    # ------------------------------------------------------------------

    def record_progress(
        self, processed: int, total: int | None = None, batch_number: int | None = None
    ) -> float | None:
        """Update counters; the percentage never moves backwards while running."""
        if self.status != JobStatus.RUNNING.value:
            raise InvalidTransitionError(
                self.status, "running", "progress is only recorded while running"
            )
        if total is not None:
            self.total_records = total
        if self.total_records and processed > self.total_records:
            logger.warning(
                f"[job {self.version}] processed {processed} exceeds counted total "
                f"{self.total_records}; raising total"
            )
            self.total_records = processed
        self.processed_records = processed
        if batch_number is not None:
            self.current_batch_number = batch_number
        percentage = compute_percentage(processed, self.total_records)
        if percentage is not None:
            self.progress_percentage = max(self.progress_percentage or 0.0, percentage)
        return self.progress_percentage

    def add_invalid_items(self, reports: list[dict[str, Any]], cap: int) -> None:
        """Append per-item failures; the stored list is capped, the count is not."""
        if not reports:
            return
        self.invalid_count = (self.invalid_count or 0) + len(reports)
        current = list(self.invalid_items or [])
        room = max(cap - len(current), 0)
        self.invalid_items = current + reports[:room]

    def append_rollback_descriptor(self, descriptor: dict[str, Any]) -> None:
        self.rollback_data = list(self.rollback_data or []) + [descriptor]

    # ------------------------------------------------------------------
    # Reporting helpers
    # ------------------------------------------------------------------

    @property
    def execution_duration(self) -> float | None:
        if not (self.started_at and self.completed_at):
            return None
        return (as_utc(self.completed_at) - as_utc(self.started_at)).total_seconds()

    def average_records_per_second(self, now: datetime | None = None) -> float:
        if not self.started_at or not self.processed_records:
            return 0.0
        end = as_utc(self.completed_at) or now or utcnow()
        elapsed = (end - as_utc(self.started_at)).total_seconds()
        if elapsed <= 0:
            return 0.0
        return round(self.processed_records / elapsed, 2)

    def estimated_completion_time(self, now: datetime | None = None) -> datetime | None:
        if (
            self.status != JobStatus.RUNNING.value
            or not self.started_at
            or not self.progress_percentage
        ):
            return None
        started = as_utc(self.started_at)
        elapsed = (now or utcnow()) - started
        return started + elapsed * (100.0 / self.progress_percentage)

    def structured_error_info(self) -> dict[str, Any] | None:
        if not self.error_message:
            return None
        latest = self.progress_logs[-1] if self.progress_logs else None
        return {
            "message": self.error_message,
            "backtrace": self.error_backtrace.split("\n") if self.error_backtrace else [],
            "retry_count": self.retry_count,
            "occurred_at": self.completed_at or self.updated_at,
            "phase": latest.phase if latest else None,
        }
