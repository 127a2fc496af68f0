"""Shared helpers for publishing job progress to Redis/SSE."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

from bulkops.services.broadcaster import NotificationBroadcaster, build_event
from bulkops.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "jobs:progress:"


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


class ThroughputWindow:
    """Trailing moving average of records/second over the last K chunks."""

    def __init__(self, size: int = 5):
        self._samples: deque[tuple[int, float]] = deque(maxlen=max(1, size))

    def add(self, records: int, seconds: float) -> None:
        self._samples.append((records, max(seconds, 0.0)))

    @property
    def rate(self) -> float:
        records = sum(r for r, _ in self._samples)
        seconds = sum(s for _, s in self._samples)
        if seconds <= 0:
            return 0.0
        return records / seconds


def estimate_eta(processed: int, total: int, records_per_second: float) -> float | None:
    if not total or records_per_second <= 0:
        return None
    return max(total - processed, 0) / records_per_second


@dataclass
class ProgressUpdate:
    processed: int
    total: int
    percentage: float | None
    records_per_second: float
    eta_seconds: float | None
    should_broadcast: bool
    snapshot: dict[str, Any] = field(default_factory=dict)


class ProgressTracker:
    """Ephemeral progress snapshots plus throttled broadcast decisions.

    Snapshots live under ``jobs:progress:<job_id>`` with a short TTL while
    the job runs and a long one once it is terminal. Store failures are
    logged and swallowed: the database remains the durable record.
    """

    def __init__(
        self,
        redis: Redis,
        job_id: str,
        *,
        broadcaster: NotificationBroadcaster | None = None,
        actor_id: str | None = None,
        window: int = 5,
        broadcast_every_chunks: int = 10,
        broadcast_interval_seconds: float = 5.0,
        ttl_running_seconds: int = 3600,
        ttl_terminal_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis = redis
        self.job_id = job_id
        self.broadcaster = broadcaster or NotificationBroadcaster(redis)
        self.actor_id = actor_id
        self.throughput = ThroughputWindow(window)
        self.broadcast_every_chunks = max(1, broadcast_every_chunks)
        self.broadcast_interval_seconds = broadcast_interval_seconds
        self.ttl_running_seconds = ttl_running_seconds
        self.ttl_terminal_seconds = ttl_terminal_seconds
        self._clock = clock
        self._chunks_since_broadcast = 0
        self._last_broadcast_at: float | None = None

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def write_snapshot(self, snapshot: dict[str, Any], terminal: bool = False) -> None:
        ttl = self.ttl_terminal_seconds if terminal else self.ttl_running_seconds
        try:
            self.redis.set(_key(self.job_id), json.dumps(snapshot, default=str), ex=ttl)
        except RedisError as e:
            logger.warning(f"[job {self.job_id}] progress store write failed: {e}")

    def _snapshot(
        self,
        status: str,
        phase: str,
        processed: int,
        total: int,
        percentage: float | None,
        message: str | None,
        eta_seconds: float | None,
        meta: dict[str, Any] | None,
    ) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": status,
            "phase": phase,
            "processed": processed,
            "total": total,
            "percentage": percentage,
            "message": message,
            "records_per_second": round(self.throughput.rate, 2),
            "eta_seconds": round(eta_seconds, 1) if eta_seconds is not None else None,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "meta": meta or {},
        }

    # ------------------------------------------------------------------
    # Broadcast throttling
    # ------------------------------------------------------------------

    def broadcast_due(self) -> bool:
        """First update always; then every Nth chunk or T seconds."""
        if self._last_broadcast_at is None:
            return True
        if self._chunks_since_broadcast >= self.broadcast_every_chunks:
            return True
        return self._clock() - self._last_broadcast_at >= self.broadcast_interval_seconds

    def emit(self, event: dict[str, Any]) -> bool:
        self._chunks_since_broadcast = 0
        self._last_broadcast_at = self._clock()
        return self.broadcaster.publish(event, actor_id=self.actor_id)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def start(
        self,
        phase: str,
        total: int,
        processed: int = 0,
        percentage: float | None = None,
        message: str | None = None,
    ) -> bool:
        """Initial snapshot for a run (fresh or resumed), broadcast immediately."""
        if percentage is None and total:
            percentage = 0.0
        snapshot = self._snapshot(
            "running", phase, processed, total, percentage, message, None, None
        )
        self.write_snapshot(snapshot)
        event = build_event(self.job_id, phase, percentage, processed, message)
        return self.emit(event)

    def record_chunk(
        self,
        *,
        phase: str,
        processed: int,
        total: int,
        percentage: float | None,
        chunk_records: int,
        chunk_seconds: float,
        message: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> ProgressUpdate:
        self.throughput.add(chunk_records, chunk_seconds)
        self._chunks_since_broadcast += 1
        rate = self.throughput.rate
        eta = estimate_eta(processed, total, rate)
        snapshot = self._snapshot(
            "running", phase, processed, total, percentage, message, eta, meta
        )
        self.write_snapshot(snapshot)
        return ProgressUpdate(
            processed=processed,
            total=total,
            percentage=percentage,
            records_per_second=round(rate, 2),
            eta_seconds=eta,
            should_broadcast=self.broadcast_due(),
            snapshot=snapshot,
        )

    def finish(
        self,
        *,
        status: str,
        phase: str,
        processed: int,
        total: int,
        percentage: float | None,
        message: str | None = None,
        error_summary: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> bool:
        """Write the terminal snapshot and broadcast it unconditionally."""
        snapshot = self._snapshot(
            status, phase, processed, total, percentage, message, None, meta
        )
        if error_summary:
            snapshot["error_summary"] = error_summary
        self.write_snapshot(snapshot, terminal=True)
        event = build_event(
            self.job_id,
            phase,
            percentage,
            processed,
            message,
            status=status,
            error_summary=error_summary,
        )
        return self.emit(event)


def fetch_progress(job_id: str, redis: Redis | None = None) -> dict[str, Any]:
    """Return latest job telemetry used by the jobs endpoint."""
    client = redis or get_redis_client()
    try:
        raw = client.get(_key(job_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
