"""Resource sampling for worker processes (RSS and CPU) and throttle detection."""

from __future__ import annotations

import gc
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

import psutil

from bulkops.core.config import parse_size_mb

logger = logging.getLogger(__name__)

# Worker-wide ceiling used only for status logging; per-job thresholds live
# in the job configuration.
DEFAULT_MEMORY_LIMIT = 800 * 1024 * 1024  # 800MB

_process: psutil.Process | None = None


@dataclass(frozen=True)
class ResourceSample:
    memory_mb: float
    cpu_percent: float

    def as_metrics(self) -> dict[str, float]:
        return {
            "memory_mb": round(self.memory_mb, 1),
            "cpu_percent": round(self.cpu_percent, 1),
        }


def _current_process() -> psutil.Process:
    global _process
    if _process is None or _process.pid != os.getpid():
        _process = psutil.Process(os.getpid())
        # Prime the CPU counter; the first reading is always 0.0.
        _process.cpu_percent(interval=None)
    return _process


def sample_resources() -> Optional[ResourceSample]:
    """Sample RSS (MB) and CPU percent of this process; None if unavailable."""
    try:
        process = _current_process()
        rss = process.memory_info().rss
        cpu = process.cpu_percent(interval=None)
    except (psutil.Error, OSError) as e:
        logger.warning(f"Could not sample process resources: {e}")
        return None
    return ResourceSample(memory_mb=rss / 1024 / 1024, cpu_percent=cpu)


def get_memory_usage() -> int:
    """Current resident set size in bytes (0 if unavailable)."""
    sample = sample_resources()
    return int(sample.memory_mb * 1024 * 1024) if sample else 0


def get_memory_limit() -> int:
    """Get configured memory limit from environment or use default."""
    limit_str = os.environ.get("CELERY_MEMORY_LIMIT")
    if limit_str:
        try:
            return int(parse_size_mb(limit_str) * 1024 * 1024)
        except ValueError:
            logger.warning(f"Invalid CELERY_MEMORY_LIMIT format: {limit_str}, using default")
    return DEFAULT_MEMORY_LIMIT


class ResourceMonitor:
    """Decide, at chunk boundaries, whether the worker should throttle.

    A sample is taken every ``sample_every_chunks`` calls or every
    ``sample_interval_seconds``, whichever comes first. ``check()`` returns
    True only when the fresh sample breaches a threshold and the previous
    sample did too; a single spike is ignored. An unavailable sample counts
    as "no pressure" and resets the streak.
    """

    def __init__(
        self,
        memory_threshold_mb: float,
        cpu_threshold: float,
        sample_every_chunks: int = 1,
        sample_interval_seconds: float = 5.0,
        sampler: Callable[[], Optional[ResourceSample]] = sample_resources,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.memory_threshold_mb = memory_threshold_mb
        self.cpu_threshold = cpu_threshold
        self.sample_every_chunks = max(1, sample_every_chunks)
        self.sample_interval_seconds = sample_interval_seconds
        self._sampler = sampler
        self._clock = clock
        self._chunks_since_sample = 0
        self._last_sample_at: float | None = None
        self._breach_streak = 0
        self.last_sample: ResourceSample | None = None
        self.last_check_sampled = False

    def breaches(self, sample: ResourceSample) -> bool:
        return (
            sample.memory_mb > self.memory_threshold_mb
            or sample.cpu_percent > self.cpu_threshold
        )

    def _due(self) -> bool:
        if self._last_sample_at is None:
            return True
        if self._chunks_since_sample >= self.sample_every_chunks:
            return True
        return self._clock() - self._last_sample_at >= self.sample_interval_seconds

    def check(self) -> bool:
        self._chunks_since_sample += 1
        if not self._due():
            self.last_check_sampled = False
            return False

        self.last_check_sampled = True
        self._chunks_since_sample = 0
        self._last_sample_at = self._clock()
        sample = self._sampler()
        self.last_sample = sample
        if sample is None:
            self._breach_streak = 0
            return False

        if not self.breaches(sample):
            self._breach_streak = 0
            return False

        self._breach_streak += 1
        if self._breach_streak >= 2:
            logger.warning(
                f"Throttle: {sample.memory_mb:.1f}MB / {sample.cpu_percent:.1f}% CPU "
                f"over thresholds ({self.memory_threshold_mb:.0f}MB / "
                f"{self.cpu_threshold:.0f}%) for {self._breach_streak} samples"
            )
            return True
        return False

    def metrics(self) -> dict[str, float]:
        return self.last_sample.as_metrics() if self.last_sample else {}


def force_gc() -> None:
    """Force garbage collection to free memory."""
    collected = gc.collect()
    logger.debug(f"Garbage collection freed {collected} objects")


def format_bytes(bytes_val: float) -> str:
    """Format bytes to human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if bytes_val < 1024.0:
            return f"{bytes_val:.1f}{unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.1f}TB"


def log_memory_status(context: str = "") -> None:
    """Log current memory status for debugging."""
    current = get_memory_usage()
    limit = get_memory_limit()
    usage_percent = (current / limit * 100) if limit > 0 else 0

    context_str = f" [{context}]" if context else ""
    logger.info(
        f"Memory status{context_str}: {format_bytes(current)} / "
        f"{format_bytes(limit)} ({usage_percent:.1f}%)"
    )
