"""Drive one job execution from pending (or a checkpoint) to an outcome."""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from redis import Redis
from sqlalchemy.orm import Session, sessionmaker

from bulkops.core.config import Settings, get_settings
from bulkops.core.exceptions import (
    FatalInputError,
    InvalidTransitionError,
    ItemValidationError,
    JobNotFoundError,
)
from bulkops.core.job_config import JobConfiguration, validate_configuration
from bulkops.db.models.job_execution import JobExecution, JobStatus
from bulkops.db.models.progress_log import ProgressLogEntry
from bulkops.jobs.base import Capability, JobKind
from bulkops.jobs.registry import get_kind
from bulkops.services.broadcaster import build_event
from bulkops.services.job_lock import JobLock
from bulkops.services.progress_tracker import ProgressTracker
from bulkops.services.retry_classifier import FailureKind, backoff_seconds, classify
from bulkops.services.rollback import RollbackManager
from bulkops.utils.batching import Batch, BatchProcessor
from bulkops.utils.memory_monitor import ResourceMonitor, force_gc, log_memory_status

logger = logging.getLogger(__name__)

PHASE_INITIALIZATION = "initialization"
PHASE_BATCH_APPLY = "batch-apply"
PHASE_VALIDATION = "validation"

GC_EVERY_CHUNKS = 10

RetryScheduler = Callable[[str, float], None]


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RETRY_SCHEDULED = "retry_scheduled"
    SKIPPED = "skipped"


@dataclass
class PreRunContext:
    record: JobExecution
    kind: JobKind | None = None
    configuration: JobConfiguration | None = None
    total: int = 0


def _resolve_kind(ctx: PreRunContext, session: Session) -> None:
    ctx.kind = get_kind(ctx.record.job_kind)


def _validate_configuration(ctx: PreRunContext, session: Session) -> None:
    ctx.configuration = validate_configuration(ctx.record.configuration)


def _check_input(ctx: PreRunContext, session: Session) -> None:
    ctx.kind.preflight(ctx.record.input_reference)


def _count_items(ctx: PreRunContext, session: Session) -> None:
    ctx.total = max(int(ctx.kind.count_items(ctx.record.input_reference, session)), 0)


# Ordered stages; the first failure stops the pipeline.
START_STAGES = (
    ("kind", _resolve_kind),
    ("configuration", _validate_configuration),
    ("input", _check_input),
    ("count", _count_items),
)
RESUME_STAGES = START_STAGES[:3]


def _format_backtrace(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def default_monitor_factory(config: JobConfiguration) -> ResourceMonitor:
    return ResourceMonitor(
        memory_threshold_mb=config.memory_threshold,
        cpu_threshold=config.cpu_threshold,
        sample_every_chunks=config.sample_every_chunks,
        sample_interval_seconds=config.sample_interval_seconds,
    )


@dataclass
class _RunState:
    record: JobExecution
    kind: JobKind
    config: JobConfiguration
    tracker: ProgressTracker
    lock: JobLock
    totals: dict[str, int] = field(default_factory=dict)


class JobRunner:
    """Composes batching, monitoring, progress, rollback capture and retry policy.

    ``run`` is safe to call repeatedly for the same job: a running record
    continues from its last committed chunk, so a retry or a resume picks up
    where the previous attempt stopped.
    """

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session],
        redis: Redis,
        *,
        settings: Settings | None = None,
        retry_scheduler: RetryScheduler | None = None,
        monitor_factory: Callable[[JobConfiguration], Any] = default_monitor_factory,
        rollback_manager: RollbackManager | None = None,
        classifier: Callable[[BaseException], FailureKind] = classify,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self.retry_scheduler = retry_scheduler
        self.monitor_factory = monitor_factory
        self.rollback_manager = rollback_manager or RollbackManager()
        self.classifier = classifier
        self.clock = clock
        self._retry_delay: float | None = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, job_id: str) -> RunOutcome:
        self._retry_delay = None
        session = self.session_factory()
        try:
            record = session.get(JobExecution, job_id)
            if record is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if record.status not in (JobStatus.PENDING.value, JobStatus.RUNNING.value):
                logger.info(f"[job {job_id}] nothing to run (status={record.status})")
                return RunOutcome.SKIPPED

            with JobLock(self.redis, job_id, self.settings.job_lock_ttl_seconds) as lock:
                session.refresh(record)
                outcome = self._run_locked(session, record, lock)
        finally:
            session.close()

        # Only once the lock is free, so the next attempt is not turned away.
        if outcome is RunOutcome.RETRY_SCHEDULED:
            self.retry_scheduler(job_id, self._retry_delay)
        return outcome

    def awaits_runner(self, job_id: str) -> bool:
        """True while the job still needs a runner (pending or running)."""
        session = self.session_factory()
        try:
            record = session.get(JobExecution, job_id)
            return record is not None and record.status in (
                JobStatus.PENDING.value,
                JobStatus.RUNNING.value,
            )
        finally:
            session.close()

    def _tracker_for(self, record: JobExecution, config: JobConfiguration | None) -> ProgressTracker:
        return ProgressTracker(
            self.redis,
            record.version,
            actor_id=record.admin_id,
            window=config.throughput_window if config else 5,
            broadcast_every_chunks=(
                config.broadcast_every_chunks if config else self.settings.broadcast_every_chunks
            ),
            broadcast_interval_seconds=(
                config.broadcast_interval_seconds
                if config
                else self.settings.broadcast_interval_seconds
            ),
            ttl_running_seconds=self.settings.progress_ttl_running_seconds,
            ttl_terminal_seconds=self.settings.progress_ttl_terminal_seconds,
            clock=self.clock,
        )

    def _run_locked(self, session: Session, record: JobExecution, lock: JobLock) -> RunOutcome:
        starting = record.status == JobStatus.PENDING.value
        ctx = PreRunContext(record=record)
        stages = START_STAGES if starting else RESUME_STAGES
        for stage_name, stage in stages:
            try:
                stage(ctx, session)
            except Exception as exc:
                logger.error(
                    f"[job {record.version}] pre-run stage '{stage_name}' failed: {exc}"
                )
                tracker = self._tracker_for(record, ctx.configuration)
                return self._handle_failure(
                    session, record, tracker, exc, ctx.configuration, PHASE_INITIALIZATION
                )

        # A control request may have landed while the stages ran.
        session.refresh(record, with_for_update=True)
        expected = JobStatus.PENDING.value if starting else JobStatus.RUNNING.value
        if record.status != expected:
            session.rollback()
            logger.info(
                f"[job {record.version}] status changed to {record.status} before start; not running"
            )
            return RunOutcome.SKIPPED

        tracker = self._tracker_for(record, ctx.configuration)
        state = _RunState(
            record=record,
            kind=ctx.kind,
            config=ctx.configuration,
            tracker=tracker,
            lock=lock,
            totals=dict((record.metrics or {}).get("stats", {})),
        )

        if starting:
            record.start(environment=self.settings.environment)
            record.total_records = ctx.total
            if ctx.total:
                record.progress_percentage = 0.0
            message = f"Started {record.job_kind} with {ctx.total or 'unknown'} item(s)"
        else:
            message = (
                f"Resuming after chunk {record.current_batch_number} "
                f"({record.processed_records} item(s) done)"
            )
        entry = self._log(session, record, PHASE_INITIALIZATION, message)
        session.commit()
        logger.info(f"[job {record.version}] {message}")
        if tracker.start(
            PHASE_INITIALIZATION,
            record.total_records,
            processed=record.processed_records,
            percentage=record.progress_percentage,
            message=message,
        ):
            entry.mark_broadcasted()
            session.commit()

        return self._execute(session, state)

    # ------------------------------------------------------------------
    # Batch loop
    # ------------------------------------------------------------------

    def _execute(self, session: Session, state: _RunState) -> RunOutcome:
        record, kind, config = state.record, state.kind, state.config
        start_size = min(config.batch_size, record.current_batch_size or config.batch_size)
        monitor = self.monitor_factory(config)
        processor = BatchProcessor(
            batch_size=start_size,
            min_batch_size=min(config.min_batch_size, start_size),
            shrink_factor=config.shrink_factor,
            monitor=monitor,
            exhaustion_pause_after=config.exhaustion_pause_after,
            start_number=record.current_batch_number + 1,
            start_position=record.processed_records,
            clock=self.clock,
        )

        batches = None
        stop: tuple[JobStatus, str | None, str] | None = None
        lock_lost = False
        try:
            source = kind.iter_items(
                record.input_reference, session, offset=record.processed_records
            )
            batches = processor.iter_batches(source)
            for batch in batches:
                if not state.lock.renew():
                    lock_lost = True
                    break
                # Chunk boundary: the only place control requests are honoured.
                session.refresh(record)
                if record.cancel_requested:
                    stop = (JobStatus.CANCELLED, None, "info")
                    break
                if record.pause_requested and kind.supports(Capability.RESUMABLE):
                    stop = (JobStatus.PAUSED, None, "info")
                    break

                self._apply_batch(session, state, batch, monitor, processor)

                if batch.number % GC_EVERY_CHUNKS == 0:
                    force_gc()
                    log_memory_status(f"job {record.version} chunk {batch.number}")
            else:
                if processor.exhausted:
                    stop = (
                        JobStatus.PAUSED,
                        f"Resources exhausted at minimum batch size "
                        f"{processor.min_batch_size}; paused until resumed",
                        "warn",
                    )
                else:
                    session.refresh(record)
                    kind.validate_result(session, state.totals)
        except Exception as exc:
            return self._handle_failure(
                session, record, state.tracker, exc, config, PHASE_BATCH_APPLY
            )
        finally:
            if batches is not None:
                batches.close()

        if lock_lost:
            session.rollback()
            logger.error(
                f"[job {record.version}] stopped after chunk {record.current_batch_number}: "
                f"job lock lost to another runner"
            )
            return RunOutcome.SKIPPED
        if stop is not None:
            target, message, level = stop
            return self._stop(session, state, target, message=message, level=level)
        return self._complete(session, state)

    def _validate_items(self, kind: JobKind, batch: Batch) -> tuple[list[tuple[int, Any]], list[dict]]:
        valid: list[tuple[int, Any]] = []
        invalid: list[dict] = []
        for index, item in enumerate(batch.items):
            position = batch.start_position + index
            try:
                valid.append((position, kind.validate_item(item, position)))
            except ItemValidationError as e:
                if e.position is None:
                    e.position = position
                invalid.append(e.to_report())
        return valid, invalid

    def _apply_with_item_isolation(
        self, session: Session, kind: JobKind, valid: list[tuple[int, Any]], invalid: list[dict]
    ):
        """Re-apply the chunk without any item the kind rejects mid-apply."""
        while True:
            try:
                return kind.apply_chunk([item for _, item in valid], session)
            except ItemValidationError as e:
                session.rollback()
                index = next(
                    (
                        i
                        for i, (position, item) in enumerate(valid)
                        if (e.position is not None and position == e.position)
                        or (e.position is None and item is e.item)
                    ),
                    None,
                )
                if index is None:
                    raise FatalInputError(
                        f"Item failure could not be attributed to an item: {e}"
                    ) from e
                position, _ = valid.pop(index)
                e.position = position
                invalid.append(e.to_report())
                logger.warning(f"Dropped item at position {position}: {e}")

    def _apply_batch(
        self,
        session: Session,
        state: _RunState,
        batch: Batch,
        monitor: Any,
        processor: BatchProcessor,
    ) -> None:
        record, kind = state.record, state.kind
        started = self.clock()

        valid, invalid = self._validate_items(kind, batch)
        result = self._apply_with_item_isolation(session, kind, valid, invalid)

        processed = batch.start_position + len(batch.items)
        if state.config.dry_run:
            # Report what the chunk would do, keep none of it.
            session.rollback()
        else:
            self.rollback_manager.capture(record, batch.number, result.compensations)
        if invalid:
            record.add_invalid_items(invalid, self.settings.max_invalid_items_recorded)
            logger.warning(
                f"[job {record.version}] chunk {batch.number}: {len(invalid)} invalid item(s)"
            )
        record.current_batch_size = batch.size
        percentage = record.record_progress(processed, batch_number=batch.number)

        for key, value in result.stats.items():
            state.totals[key] = state.totals.get(key, 0) + value
        state.totals["invalid"] = state.totals.get("invalid", 0) + len(invalid)

        elapsed = self.clock() - started
        message = f"Processed {processed}/{record.total_records or '?'} item(s)"
        update = state.tracker.record_chunk(
            phase=PHASE_BATCH_APPLY,
            processed=processed,
            total=record.total_records,
            percentage=percentage,
            chunk_records=len(batch.items),
            chunk_seconds=elapsed,
            message=message,
            meta=dict(state.totals),
        )
        resources = monitor.metrics()
        record.metrics = {
            "stats": dict(state.totals),
            "records_per_second": update.records_per_second,
            "resources": resources,
            "batching": processor.statistics(),
            "dry_run": state.config.dry_run,
        }
        entry = self._log(
            session,
            record,
            PHASE_BATCH_APPLY,
            message,
            level="warn" if invalid else "info",
            records_per_second=update.records_per_second,
            eta=update.eta_seconds,
            metrics=resources or None,
        )
        session.commit()

        if update.should_broadcast:
            event = build_event(
                record.version, PHASE_BATCH_APPLY, percentage, processed, message
            )
            if state.tracker.emit(event):
                entry.mark_broadcasted()
                session.commit()
        if batch.number % self.settings.broadcast_every_chunks == 0:
            logger.info(f"[job {record.version}] chunk {batch.number}: {message}")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _log(
        self,
        session: Session,
        record: JobExecution,
        phase: str,
        message: str,
        level: str = "info",
        records_per_second: float | None = None,
        eta: float | None = None,
        metrics: dict | None = None,
    ) -> ProgressLogEntry:
        entry = ProgressLogEntry(
            job_version=record.version,
            phase=phase,
            progress_percentage=record.progress_percentage,
            processed_records=record.processed_records or 0,
            current_batch_size=record.current_batch_size,
            current_batch_number=record.current_batch_number or 0,
            message=message,
            log_level=level,
            records_per_second=records_per_second,
            estimated_remaining_seconds=eta,
            metrics=metrics,
            broadcasted=False,
        )
        session.add(entry)
        return entry

    def _finish(
        self,
        session: Session,
        record: JobExecution,
        tracker: ProgressTracker,
        entry: ProgressLogEntry,
        phase: str,
        message: str,
        error_summary: str | None = None,
    ) -> None:
        published = tracker.finish(
            status=record.status,
            phase=phase,
            processed=record.processed_records,
            total=record.total_records,
            percentage=record.progress_percentage,
            message=message,
            error_summary=error_summary,
            meta=(record.metrics or {}).get("stats"),
        )
        if published:
            entry.mark_broadcasted()
            session.commit()

    def _complete(self, session: Session, state: _RunState) -> RunOutcome:
        record = state.record
        record.mark_completed()
        message = (
            f"{'Dry run completed' if state.config.dry_run else 'Completed'}: "
            f"{record.processed_records} item(s), {record.invalid_count} invalid"
        )
        entry = self._log(session, record, PHASE_VALIDATION, message)
        session.commit()
        logger.info(f"[job {record.version}] {message}")
        self._finish(session, record, state.tracker, entry, PHASE_VALIDATION, message)
        return RunOutcome.COMPLETED

    def _stop(
        self,
        session: Session,
        state: _RunState,
        target: JobStatus,
        message: str | None = None,
        level: str = "info",
    ) -> RunOutcome:
        record = state.record
        if target is JobStatus.CANCELLED:
            record.cancel()
            message = message or f"Cancelled after chunk {record.current_batch_number}"
            outcome = RunOutcome.CANCELLED
        else:
            record.pause()
            message = message or f"Paused after chunk {record.current_batch_number}"
            outcome = RunOutcome.PAUSED
        entry = self._log(session, record, PHASE_BATCH_APPLY, message, level=level)
        session.commit()
        log = logger.warning if level == "warn" else logger.info
        log(f"[job {record.version}] {message}")
        self._finish(session, record, state.tracker, entry, PHASE_BATCH_APPLY, message)
        return outcome

    def _handle_failure(
        self,
        session: Session,
        record: JobExecution,
        tracker: ProgressTracker,
        exc: Exception,
        config: JobConfiguration | None,
        phase: str,
    ) -> RunOutcome:
        session.rollback()
        session.refresh(record)
        if record.is_terminal:
            logger.warning(
                f"[job {record.version}] {exc!r} ignored; job is already {record.status}"
            )
            return RunOutcome.SKIPPED
        failure = self.classifier(exc)

        if failure is FailureKind.RETRYABLE:
            max_retries = config.max_retries if config else self.settings.max_retries
            record.retry_count = (record.retry_count or 0) + 1
            if record.retry_count <= max_retries and self.retry_scheduler is not None:
                delay = backoff_seconds(
                    record.retry_count,
                    config.retry_backoff_seconds if config else self.settings.retry_backoff_seconds,
                    config.retry_backoff_max_seconds
                    if config
                    else self.settings.retry_backoff_max_seconds,
                )
                message = (
                    f"Transient failure after chunk {record.current_batch_number}; "
                    f"retry {record.retry_count}/{max_retries} in {delay:.0f}s: {exc}"
                )
                record.error_message = str(exc)
                entry = self._log(session, record, phase, message, level="warn")
                session.commit()
                logger.warning(f"[job {record.version}] {message}")
                self._retry_delay = delay
                event = build_event(
                    record.version,
                    phase,
                    record.progress_percentage,
                    record.processed_records,
                    message,
                )
                if tracker.emit(event):
                    entry.mark_broadcasted()
                    session.commit()
                return RunOutcome.RETRY_SCHEDULED
            if self.retry_scheduler is None:
                logger.error(f"[job {record.version}] no retry scheduler; failing job")
            message = f"Failed after {record.retry_count - 1} retr(y/ies): {exc}"
        elif failure is FailureKind.PARTIAL_CONTINUE:
            message = f"Item failure outside a chunk could not be isolated: {exc}"
        else:
            message = str(exc)

        try:
            record.mark_failed(message, _format_backtrace(exc))
        except InvalidTransitionError as e:
            session.rollback()
            logger.warning(f"[job {record.version}] not marked failed: {e}")
            return RunOutcome.SKIPPED
        entry = self._log(session, record, phase, message, level="error")
        session.commit()
        logger.error(f"[job {record.version}] failed: {message}", exc_info=exc)
        self._finish(session, record, tracker, entry, phase, message, error_summary=str(exc))
        return RunOutcome.FAILED
