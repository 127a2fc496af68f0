"""Chunking helpers and the adaptive batch processor."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Protocol

logger = logging.getLogger(__name__)


def chunked(iterable: Iterable, size: int) -> Iterator[list]:
    """Yield successive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    iterator = iter(iterable)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


class ThrottleSignal(Protocol):
    """Resource pressure source consulted before each chunk.

    ``last_check_sampled`` tells whether the latest ``check()`` took a fresh
    sample; a skipped sample leaves the exhaustion streak alone.
    """

    last_check_sampled: bool

    def check(self) -> bool: ...


@dataclass
class Batch:
    """One chunk handed to the apply step."""

    number: int
    items: list[Any]
    size: int
    start_position: int = 0

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class BatchProcessor:
    """Split a source into sequential chunks, shrinking under resource pressure.

    The monitor is consulted before each chunk is built. A throttle signal
    shrinks the batch size by ``shrink_factor`` down to ``min_batch_size``;
    the size never grows back during a run. Repeated throttle signals while
    already at the floor flip ``exhausted`` and iteration stops so the
    caller can pause the job.
    """

    batch_size: int
    min_batch_size: int = 1
    shrink_factor: float = 0.5
    monitor: ThrottleSignal | None = None
    exhaustion_pause_after: int = 3
    start_number: int = 1
    start_position: int = 0
    clock: Callable[[], float] = time.monotonic

    processed_count: int = field(default=0, init=False)
    batch_count: int = field(default=0, init=False)
    exhausted: bool = field(default=False, init=False)
    _floor_streak: int = field(default=0, init=False, repr=False)
    _started: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.min_batch_size = max(1, min(self.min_batch_size, self.batch_size))
        self.current_batch_size = self.batch_size

    def _consult_monitor(self) -> None:
        if self.monitor is None:
            return
        throttled = self.monitor.check()
        if not throttled:
            if self.monitor.last_check_sampled:
                self._floor_streak = 0
            return
        if self.current_batch_size > self.min_batch_size:
            shrunk = max(
                self.min_batch_size, int(self.current_batch_size * self.shrink_factor)
            )
            logger.warning(
                f"Resource pressure: shrinking batch size "
                f"{self.current_batch_size} -> {shrunk}"
            )
            self.current_batch_size = shrunk
            self._floor_streak = 0
            return
        self._floor_streak += 1
        logger.warning(
            f"Resource pressure at minimum batch size {self.min_batch_size} "
            f"({self._floor_streak}/{self.exhaustion_pause_after})"
        )
        if self._floor_streak >= self.exhaustion_pause_after:
            self.exhausted = True

    def iter_batches(self, source: Iterable[Any]) -> Iterator[Batch]:
        iterator = iter(source)
        number = self.start_number
        position = self.start_position
        self._started = self.clock()
        while True:
            self._consult_monitor()
            if self.exhausted:
                logger.error("Resources exhausted at minimum batch size; stopping")
                return
            items = list(islice(iterator, self.current_batch_size))
            if not items:
                return
            batch = Batch(
                number=number,
                items=items,
                size=self.current_batch_size,
                start_position=position,
            )
            yield batch
            self.batch_count += 1
            self.processed_count += len(items)
            number += 1
            position += len(items)

    def statistics(self) -> dict[str, Any]:
        elapsed = self.clock() - self._started if self._started is not None else 0.0
        rate = self.processed_count / elapsed if elapsed > 0 else 0.0
        return {
            "processed": self.processed_count,
            "batches": self.batch_count,
            "elapsed_seconds": round(elapsed, 3),
            "records_per_second": round(rate, 2),
            "current_batch_size": self.current_batch_size,
        }
