"""Tests for job submission, queries, control operations and diagnostics."""

import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from bulkops.core.exceptions import (
    ConfigurationError,
    InputValidationError,
    InvalidTransitionError,
    JobAlreadyActiveError,
    JobAlreadyExistsError,
    JobNotFoundError,
    UnknownJobKindError,
)
from bulkops.db.models.job_execution import JobExecution, utcnow
from bulkops.jobs.registry import available_kinds
from bulkops.services import job_service
from bulkops.services.diagnostics import (
    find_stalled_jobs,
    health_report,
    high_error_rate_jobs,
    queue_backlog,
)


def submit(session, **kwargs):
    kwargs.setdefault("job_kind", "recording")
    kwargs.setdefault("input_reference", "items")
    kwargs.setdefault("actor_id", "admin-1")
    kwargs.setdefault("configuration", {"batch_size": 10})
    return job_service.submit_job(session, **kwargs)


def job_count(session):
    return session.scalar(select(func.count(JobExecution.version)))


class TestSubmission:
    def test_persists_pending_job_and_enqueues(self, session, recording_kind, settings):
        enqueued = []
        job_id = submit(session, enqueue=enqueued.append, name="nightly")

        job = session.get(JobExecution, job_id)
        assert job.status == "pending"
        assert job.name == "nightly"
        assert job.admin_id == "admin-1"
        assert job.configuration["batch_size"] == 10
        assert job.configuration["cpu_threshold"] == settings.cpu_threshold
        assert job.environment == settings.environment
        assert enqueued == [job_id]

    def test_unknown_kind(self, session):
        with pytest.raises(UnknownJobKindError, match="product_import"):
            submit(session, job_kind="teleport")
        assert job_count(session) == 0

    def test_configuration_without_defaults(self, session, recording_kind):
        with pytest.raises(ConfigurationError) as excinfo:
            submit(session, fill_defaults=False)
        assert "cpu_threshold" in excinfo.value.missing_keys
        assert job_count(session) == 0

    def test_preflight_rejection_writes_nothing(self, session, recording_kind):
        with pytest.raises(InputValidationError):
            submit(session, input_reference="missing")
        assert job_count(session) == 0

    def test_actor_required(self, session, recording_kind):
        with pytest.raises(InputValidationError):
            submit(session, actor_id="")

    def test_duplicate_active_submission(self, session, recording_kind):
        submit(session, job_id="nightly-1")
        with pytest.raises(JobAlreadyActiveError):
            submit(session, job_id="nightly-1")

    def test_duplicate_of_running_job(self, session, recording_kind):
        submit(session, job_id="nightly-1")
        job = session.get(JobExecution, "nightly-1")
        job.start()
        session.commit()
        with pytest.raises(JobAlreadyActiveError, match="running"):
            submit(session, job_id="nightly-1")

    def test_duplicate_of_finished_job(self, session, recording_kind):
        submit(session, job_id="nightly-1")
        job_service.cancel_job(session, "nightly-1", "admin-1")
        with pytest.raises(JobAlreadyExistsError) as excinfo:
            submit(session, job_id="nightly-1")
        assert not isinstance(excinfo.value, JobAlreadyActiveError)

    def test_builtin_kinds_registered(self):
        assert {"product_import", "product_name_normalization"} <= set(available_kinds())


class TestQueries:
    def test_snapshot_returns_recent_logs_oldest_first(
        self, session, session_factory, make_runner, recording_kind
    ):
        job_id = submit(session)
        make_runner().run(job_id)

        snapshot = job_service.get_job_snapshot(session, job_id, recent=3)
        assert snapshot.job.status == "completed"
        assert [log.phase for log in snapshot.recent_logs] == [
            "batch-apply",
            "batch-apply",
            "validation",
        ]
        ids = [log.id for log in snapshot.recent_logs]
        assert ids == sorted(ids)

    def test_snapshot_of_unknown_job(self, session):
        with pytest.raises(JobNotFoundError):
            job_service.get_job_snapshot(session, "nope")

    def test_list_filters(self, session, recording_kind):
        first = submit(session, actor_id="alice")
        submit(session, actor_id="bob")
        job_service.cancel_job(session, first, "alice")

        assert [j.version for j in job_service.list_jobs(session, actor_id="alice")] == [first]
        assert [j.version for j in job_service.list_jobs(session, status="cancelled")] == [first]
        assert len(job_service.list_jobs(session)) == 2
        with pytest.raises(ValueError):
            job_service.list_jobs(session, status="sleeping")


class TestControl:
    def test_pause_requires_running(self, session, recording_kind):
        job_id = submit(session)
        with pytest.raises(InvalidTransitionError):
            job_service.pause_job(session, job_id, "admin-1")

    def test_pause_requires_resumable_kind(self, session, plain_kind):
        job_id = submit(session, job_kind="plain")
        job = session.get(JobExecution, job_id)
        job.start()
        session.commit()
        with pytest.raises(InvalidTransitionError, match="not resumable"):
            job_service.pause_job(session, job_id, "admin-1")

    def test_pause_running_sets_flag_and_announces(self, session, recording_kind, redis):
        job_id = submit(session)
        job = session.get(JobExecution, job_id)
        job.start()
        session.commit()

        job = job_service.pause_job(session, job_id, "admin-1", redis=redis)
        assert job.pause_requested
        assert job.status == "running"
        channel, payload = redis.published[0]
        assert channel == f"jobs:events:{job_id}"
        assert json.loads(payload)["phase"] == "control"

    def test_cancel_pending_is_immediate(self, session, recording_kind, redis):
        job_id = submit(session)
        job = job_service.cancel_job(session, job_id, "admin-1", redis=redis)
        assert job.status == "cancelled"
        assert json.loads(redis.published[0][1])["status"] == "cancelled"

    def test_cancel_running_is_deferred(self, session, recording_kind):
        job_id = submit(session)
        job = session.get(JobExecution, job_id)
        job.start()
        session.commit()
        job = job_service.cancel_job(session, job_id, "admin-1")
        assert job.status == "running"
        assert job.cancel_requested

    def test_cancel_terminal(self, session, recording_kind):
        job_id = submit(session)
        job_service.cancel_job(session, job_id, "admin-1")
        with pytest.raises(InvalidTransitionError):
            job_service.cancel_job(session, job_id, "admin-1")

    def test_resume_requires_paused(self, session, recording_kind):
        job_id = submit(session)
        with pytest.raises(InvalidTransitionError):
            job_service.resume_job(session, job_id, "admin-1")

    def test_control_on_unknown_job(self, session):
        with pytest.raises(JobNotFoundError):
            job_service.cancel_job(session, "nope", "admin-1")


class TestDiagnostics:
    def _running(self, session, version, **fields):
        job = JobExecution(
            version=version,
            name=version,
            job_kind="recording",
            input_reference="items",
            admin_id="admin-1",
            status="running",
            **fields,
        )
        session.add(job)
        session.commit()
        return job

    def test_stalled_jobs(self, session, settings):
        now = utcnow()
        self._running(session, "stale", updated_at=now - timedelta(hours=1))
        self._running(session, "fresh", updated_at=now)
        stalled = find_stalled_jobs(session, settings, now=now)
        assert [job.version for job in stalled] == ["stale"]

    def test_error_rate(self, session, settings):
        self._running(session, "noisy", processed_records=100, invalid_count=10)
        self._running(session, "clean", processed_records=100, invalid_count=1)
        flagged = high_error_rate_jobs(session, settings)
        assert [(job.version, rate) for job, rate in flagged] == [("noisy", 0.1)]

    def test_queue_backlog(self, redis, settings):
        redis.lists[settings.jobs_queue] = ["task"] * (settings.queue_backlog_threshold + 1)
        report = queue_backlog(redis, settings=settings)
        assert report[settings.jobs_queue]["backlogged"] is True
        assert report["celery"] == {"length": 0, "backlogged": False}

    def test_health_report_shape(self, session, redis, settings):
        report = health_report(session, redis, settings)
        assert set(report) == {"stalled_jobs", "high_error_rate_jobs", "queues"}
