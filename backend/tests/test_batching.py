"""
Tests for chunking and the adaptive batch processor.

Verifies:
- Sequential, gap-free chunk numbering and positions
- Shrinking under resource pressure, never below the floor
- Exhaustion after repeated pressure at the floor
- Resuming from a checkpoint
"""

import pytest

from bulkops.utils.batching import BatchProcessor, chunked
from bulkops.utils.memory_monitor import ResourceMonitor, ResourceSample
from conftest import FakeClock, ScriptedMonitor


class TestChunked:
    def test_splits_with_short_tail(self):
        assert list(chunked(range(7), 3)) == [[0, 1, 2], [3, 4, 5], [6]]

    def test_empty_source(self):
        assert list(chunked([], 3)) == []

    def test_rejects_zero_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestBatchProcessor:
    def test_2500_items_in_batches_of_1000(self):
        processor = BatchProcessor(batch_size=1000)
        batches = list(processor.iter_batches(range(2500)))

        assert [len(b) for b in batches] == [1000, 1000, 500]
        assert [b.number for b in batches] == [1, 2, 3]
        assert [b.start_position for b in batches] == [0, 1000, 2000]
        assert processor.processed_count == 2500
        assert processor.batch_count == 3

    def test_empty_source_yields_nothing(self):
        processor = BatchProcessor(batch_size=10)
        assert list(processor.iter_batches([])) == []
        assert processor.processed_count == 0
        assert processor.statistics()["batches"] == 0

    def test_items_keep_source_order(self):
        processor = BatchProcessor(batch_size=4)
        flattened = [item for batch in processor.iter_batches("abcdefghij") for item in batch.items]
        assert "".join(flattened) == "abcdefghij"

    def test_resumes_numbering_and_positions(self):
        processor = BatchProcessor(batch_size=10, start_number=4, start_position=30)
        batches = list(processor.iter_batches(range(15)))
        assert [b.number for b in batches] == [4, 5]
        assert [b.start_position for b in batches] == [30, 40]

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            BatchProcessor(batch_size=0)

    def test_min_batch_size_clamped_to_batch_size(self):
        processor = BatchProcessor(batch_size=5, min_batch_size=50)
        assert processor.min_batch_size == 5


class TestAdaptiveSizing:
    def test_shrinks_under_pressure(self):
        monitor = ScriptedMonitor([False, True, False, False])
        processor = BatchProcessor(batch_size=100, min_batch_size=10, monitor=monitor)
        sizes = [len(b) for b in processor.iter_batches(range(300))]
        assert sizes[:3] == [100, 50, 50]
        assert processor.current_batch_size == 50

    def test_never_grows_back(self):
        monitor = ScriptedMonitor([True])
        processor = BatchProcessor(batch_size=100, min_batch_size=10, monitor=monitor)
        sizes = [b.size for b in processor.iter_batches(range(400))]
        assert set(sizes) == {50}

    def test_shrink_stops_at_floor(self):
        monitor = ScriptedMonitor([True, True, True])
        processor = BatchProcessor(
            batch_size=100, min_batch_size=30, monitor=monitor, exhaustion_pause_after=5
        )
        sizes = [b.size for b in processor.iter_batches(range(200))]
        assert sizes[:3] == [50, 30, 30]
        assert min(sizes) == 30
        assert not processor.exhausted

    def test_exhaustion_after_repeated_pressure_at_floor(self):
        monitor = ScriptedMonitor([True] * 10)
        processor = BatchProcessor(
            batch_size=40, min_batch_size=10, monitor=monitor, exhaustion_pause_after=3
        )
        batches = list(processor.iter_batches(range(1000)))

        # 40 -> 20 -> 10, then three signals at the floor.
        assert [b.size for b in batches] == [20, 10, 10, 10]
        assert processor.exhausted
        assert processor.processed_count == 50

    def test_relief_at_floor_resets_streak(self):
        monitor = ScriptedMonitor([True, True, False, True, True, False])
        processor = BatchProcessor(
            batch_size=10, min_batch_size=10, monitor=monitor, exhaustion_pause_after=3
        )
        list(processor.iter_batches(range(100)))
        assert not processor.exhausted

    def test_unsampled_checks_do_not_reset_streak(self):
        monitor = ScriptedMonitor([True, False, True, False, True], sampled=False)
        processor = BatchProcessor(
            batch_size=10, min_batch_size=10, monitor=monitor, exhaustion_pause_after=3
        )
        batches = list(processor.iter_batches(range(100)))
        assert processor.exhausted
        assert len(batches) == 4

    def test_resource_monitor_drives_the_processor(self):
        monitor = ResourceMonitor(
            memory_threshold_mb=500,
            cpu_threshold=80,
            sampler=lambda: ResourceSample(memory_mb=900.0, cpu_percent=95.0),
            clock=FakeClock(),
        )
        processor = BatchProcessor(
            batch_size=40, min_batch_size=10, monitor=monitor, exhaustion_pause_after=3
        )
        batches = list(processor.iter_batches(range(1000)))

        # The first breach is a spike; sustained pressure shrinks, then exhausts.
        assert [b.size for b in batches] == [40, 20, 10, 10, 10]
        assert processor.exhausted
        assert monitor.last_check_sampled
