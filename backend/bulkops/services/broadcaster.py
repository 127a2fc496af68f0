"""Publish job progress and lifecycle events over Redis pub/sub."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "jobs:events:"


def job_channel(job_id: str) -> str:
    return f"{CHANNEL_PREFIX}{job_id}"


def actor_channel(actor_id: str) -> str:
    return f"{CHANNEL_PREFIX}actor:{actor_id}"


def build_event(
    job_id: str,
    phase: str,
    progress_percentage: float | None,
    processed_records: int,
    message: str | None = None,
    *,
    status: str | None = None,
    error_summary: str | None = None,
    timestamp: datetime | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Shape a subscriber payload; terminal events carry ``status``."""
    event: dict[str, Any] = {
        "job_id": job_id,
        "phase": phase,
        "progress_percentage": progress_percentage,
        "processed_records": processed_records,
        "message": message,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
    }
    if status is not None:
        event["status"] = status
    if error_summary is not None:
        event["error_summary"] = error_summary
    if extra:
        event.update(extra)
    return event


class NotificationBroadcaster:
    """At-most-once fan-out to the job channel and the owning actor's channel."""

    def __init__(self, redis: Redis):
        self.redis = redis

    def publish(self, event: dict[str, Any], actor_id: str | None = None) -> bool:
        channels = [job_channel(event["job_id"])]
        if actor_id:
            channels.append(actor_channel(actor_id))
        payload = json.dumps(event, default=str)
        try:
            for channel in channels:
                self.redis.publish(channel, payload)
        except RedisError as e:
            # Durable progress stays queryable; a missed event is acceptable.
            logger.warning(f"[job {event['job_id']}] broadcast failed: {e}")
            return False
        return True
