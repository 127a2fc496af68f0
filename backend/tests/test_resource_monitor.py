"""Tests for resource sampling and throttle detection."""

from bulkops.utils.memory_monitor import (
    ResourceMonitor,
    ResourceSample,
    format_bytes,
    get_memory_limit,
    sample_resources,
)
from conftest import FakeClock


def scripted_sampler(samples):
    queue = list(samples)
    calls = []

    def _sample():
        calls.append(1)
        return queue.pop(0) if queue else ResourceSample(memory_mb=100.0, cpu_percent=5.0)

    _sample.calls = calls
    return _sample


HOT = ResourceSample(memory_mb=900.0, cpu_percent=10.0)
COOL = ResourceSample(memory_mb=100.0, cpu_percent=10.0)
BUSY = ResourceSample(memory_mb=100.0, cpu_percent=97.0)


def make_monitor(samples, **kwargs):
    kwargs.setdefault("sample_every_chunks", 1)
    return ResourceMonitor(
        memory_threshold_mb=800.0,
        cpu_threshold=85.0,
        sampler=scripted_sampler(samples),
        clock=kwargs.pop("clock", FakeClock()),
        **kwargs,
    )


class TestThrottleDecision:
    def test_single_spike_is_ignored(self):
        monitor = make_monitor([HOT, COOL, HOT])
        assert [monitor.check() for _ in range(3)] == [False, False, False]

    def test_two_consecutive_breaches_throttle(self):
        monitor = make_monitor([HOT, HOT, HOT])
        assert [monitor.check() for _ in range(3)] == [False, True, True]

    def test_cpu_breach_counts(self):
        monitor = make_monitor([BUSY, BUSY])
        assert monitor.check() is False
        assert monitor.check() is True

    def test_unavailable_sample_resets_streak(self):
        monitor = make_monitor([HOT, None, HOT])
        assert [monitor.check() for _ in range(3)] == [False, False, False]
        assert monitor.last_sample is HOT

    def test_metrics_reflect_last_sample(self):
        monitor = make_monitor([HOT])
        assert monitor.metrics() == {}
        monitor.check()
        assert monitor.metrics() == {"memory_mb": 900.0, "cpu_percent": 10.0}


class TestSamplingCadence:
    def test_samples_every_n_chunks(self):
        sampler = scripted_sampler([])
        monitor = ResourceMonitor(
            memory_threshold_mb=800.0,
            cpu_threshold=85.0,
            sample_every_chunks=3,
            sample_interval_seconds=60.0,
            sampler=sampler,
            clock=FakeClock(),
        )
        sampled = []
        for _ in range(4):
            monitor.check()
            sampled.append(monitor.last_check_sampled)
        assert sampled == [True, False, False, True]
        assert len(sampler.calls) == 2

    def test_samples_after_interval_elapses(self):
        clock = FakeClock()
        sampler = scripted_sampler([])
        monitor = ResourceMonitor(
            memory_threshold_mb=800.0,
            cpu_threshold=85.0,
            sample_every_chunks=100,
            sample_interval_seconds=5.0,
            sampler=sampler,
            clock=clock,
        )
        monitor.check()
        monitor.check()
        assert not monitor.last_check_sampled
        clock.advance(5.0)
        monitor.check()
        assert monitor.last_check_sampled
        assert len(sampler.calls) == 2


class TestHelpers:
    def test_sample_resources_reads_this_process(self):
        sample = sample_resources()
        assert sample is not None
        assert sample.memory_mb > 0

    def test_memory_limit_from_environment(self, monkeypatch):
        monkeypatch.setenv("CELERY_MEMORY_LIMIT", "1G")
        assert get_memory_limit() == 1024 * 1024 * 1024

    def test_invalid_memory_limit_falls_back(self, monkeypatch):
        monkeypatch.setenv("CELERY_MEMORY_LIMIT", "lots")
        assert get_memory_limit() == 800 * 1024 * 1024

    def test_format_bytes(self):
        assert format_bytes(512) == "512.0B"
        assert format_bytes(1536) == "1.5KB"
