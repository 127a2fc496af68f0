"""
Tests for the job execution state machine and configuration schema.

Verifies:
- Only legal transitions succeed; terminal states refuse all but rollback
- Progress percentage is monotonic and processed never exceeds total
- Required configuration keys are enforced before a job can start
"""

from datetime import timedelta

import pytest

from bulkops.core.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    RollbackUnavailableError,
)
from bulkops.core.job_config import (
    build_configuration,
    default_configuration,
    validate_configuration,
)
from bulkops.db.models.job_execution import JobExecution, compute_percentage, utcnow

VALID_CONFIG = {"batch_size": 100, "cpu_threshold": 80, "memory_threshold": 512}


def make_job(**overrides):
    fields = {
        "name": "test job",
        "job_kind": "recording",
        "input_reference": "items",
        "admin_id": "admin-1",
        "configuration": dict(VALID_CONFIG),
    }
    fields.update(overrides)
    return JobExecution(**fields)


def running_job(**overrides):
    job = make_job(**overrides)
    job.start()
    return job


class TestTransitions:
    def test_new_job_is_pending(self):
        job = make_job()
        assert job.status == "pending"
        assert job.version
        assert job.processed_records == 0

    def test_versions_are_unique(self):
        assert make_job().version != make_job().version

    def test_start_records_host(self):
        job = running_job()
        assert job.status == "running"
        assert job.started_at is not None
        assert job.hostname
        assert job.process_id

    def test_start_twice(self):
        job = running_job()
        with pytest.raises(InvalidTransitionError):
            job.start()

    def test_start_requires_configuration(self):
        job = make_job(configuration={"batch_size": 10})
        with pytest.raises(ConfigurationError) as excinfo:
            job.start()
        assert excinfo.value.missing_keys == ["cpu_threshold", "memory_threshold"]
        assert job.status == "pending"

    def test_pause_and_resume(self):
        job = running_job()
        job.pause_requested = True
        job.pause()
        assert job.status == "paused"
        assert not job.pause_requested
        job.resume()
        assert job.status == "running"

    def test_resume_requires_paused(self):
        with pytest.raises(InvalidTransitionError):
            running_job().resume()

    def test_pending_job_cannot_pause(self):
        with pytest.raises(InvalidTransitionError):
            make_job().pause()

    def test_cancel_from_pending_and_paused(self):
        pending = make_job()
        pending.cancel()
        assert pending.status == "cancelled"

        paused = running_job()
        paused.pause()
        paused.cancel()
        assert paused.status == "cancelled"
        assert paused.completed_at is not None

    @pytest.mark.parametrize("terminal", ["failed", "cancelled", "rolled_back"])
    def test_terminal_states_are_final(self, terminal):
        job = make_job(status=terminal)
        for target in ("running", "paused", "completed", "cancelled", "pending"):
            with pytest.raises(InvalidTransitionError, match=f"already {terminal}"):
                job.transition_to(target)

    def test_completed_only_rolls_back(self):
        job = running_job()
        job.mark_completed()
        with pytest.raises(InvalidTransitionError):
            job.transition_to("running")
        with pytest.raises(RollbackUnavailableError):
            job.mark_rolled_back()
        job.append_rollback_descriptor({"step": 0})
        job.mark_rolled_back()
        assert job.status == "rolled_back"
        assert job.rollback_status == "complete"

    def test_failed_keeps_message_and_backtrace(self):
        job = running_job()
        job.mark_failed("bad input", "Traceback\nline")
        assert job.status == "failed"
        info = job.structured_error_info()
        assert info["message"] == "bad input"
        assert info["backtrace"] == ["Traceback", "line"]


class TestProgress:
    def test_percentage_is_monotonic(self):
        job = running_job()
        assert job.record_progress(50, total=100) == 50.0
        assert job.record_progress(40) == 50.0
        assert job.processed_records == 40
        assert job.record_progress(75, batch_number=3) == 75.0
        assert job.current_batch_number == 3

    def test_processed_never_exceeds_total(self):
        job = running_job()
        job.record_progress(10, total=100)
        job.record_progress(120)
        assert job.total_records == 120
        assert job.progress_percentage == 100.0

    def test_unknown_total_leaves_percentage_null(self):
        job = running_job()
        assert job.record_progress(10) is None
        assert job.progress_percentage is None

    def test_only_while_running(self):
        with pytest.raises(InvalidTransitionError):
            make_job().record_progress(1, total=10)

    def test_completion_sets_total_and_100(self):
        job = running_job()
        job.record_progress(37)
        job.mark_completed()
        assert job.total_records == 37
        assert job.progress_percentage == 100.0

    def test_compute_percentage(self):
        assert compute_percentage(0, 0) is None
        assert compute_percentage(1, 3) == 33.33
        assert compute_percentage(5, 4) == 100.0

    def test_invalid_items_are_capped_but_counted(self):
        job = running_job()
        job.add_invalid_items([{"position": i} for i in range(3)], cap=4)
        job.add_invalid_items([{"position": i} for i in range(3, 6)], cap=4)
        assert job.invalid_count == 6
        assert [item["position"] for item in job.invalid_items] == [0, 1, 2, 3]

    def test_timing_helpers(self):
        job = running_job()
        job.record_progress(50, total=100)
        now = job.started_at + timedelta(seconds=10)
        assert job.average_records_per_second(now=now) == 5.0
        assert job.estimated_completion_time(now=now) == job.started_at + timedelta(seconds=20)
        job.completed_at = job.started_at + timedelta(seconds=30)
        assert job.execution_duration == 30.0


class TestConfiguration:
    def test_missing_keys_are_listed(self):
        with pytest.raises(ConfigurationError) as excinfo:
            validate_configuration({})
        assert excinfo.value.missing_keys == ["batch_size", "cpu_threshold", "memory_threshold"]

    def test_malformed_value(self):
        with pytest.raises(ConfigurationError, match="batch_size"):
            validate_configuration({**VALID_CONFIG, "batch_size": 0})

    def test_min_batch_size_clamped(self):
        config = validate_configuration({**VALID_CONFIG, "min_batch_size": 500})
        assert config.min_batch_size == 100

    def test_extra_keys_allowed(self):
        config = validate_configuration({**VALID_CONFIG, "dry_run": True})
        assert config.model_extra == {"dry_run": True}

    def test_defaults_from_settings(self, settings):
        defaults = default_configuration(settings)
        assert defaults["batch_size"] == settings.default_batch_size
        validate_configuration(defaults)

    def test_overrides_win(self, settings):
        merged = build_configuration({"batch_size": 7}, settings)
        assert merged["batch_size"] == 7
        assert merged["cpu_threshold"] == settings.cpu_threshold

    def test_utcnow_is_aware(self):
        assert utcnow().tzinfo is not None
