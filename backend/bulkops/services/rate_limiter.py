"""Fixed-window attempt counters per (action, identifier) stored in Redis."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from redis import Redis

from bulkops.core.config import RateLimitRule, Settings, get_settings
from bulkops.core.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "rate_limit:"

# Window check and count in one step so concurrent callers cannot both see
# room under the limit or both restart the window.
# ARGV: now, limit, window seconds. Returns {allowed, count, window_start, window}.
CHECK_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local fields = redis.call('HMGET', key, 'window_start', 'window', 'count')
local start, span, count = fields[1], fields[2], fields[3]
if not start or now >= tonumber(start) + tonumber(span or window) then
    redis.call('HSET', key, 'window_start', ARGV[1], 'count', 1,
        'limit', limit, 'window', window)
    redis.call('EXPIRE', key, math.ceil(window))
    return {1, 1, ARGV[1], ARGV[3]}
end
count = tonumber(count)
if count < limit then
    count = redis.call('HINCRBY', key, 'count', 1)
    return {1, count, start, span}
end
return {0, count, start, span}
"""


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float


def resolve_identifier(
    actor_id: str | None = None,
    session_id: str | None = None,
    remote_addr: str | None = None,
) -> str:
    """Authenticated actor first, then session, then network origin."""
    if actor_id:
        return f"actor:{actor_id}"
    if session_id:
        return f"session:{session_id}"
    return f"ip:{remote_addr or 'unknown'}"


class RateLimiter:
    def __init__(
        self,
        redis: Redis,
        action: str,
        rule: RateLimitRule | None = None,
        *,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if rule is None:
            rules = (settings or get_settings()).rate_limits
            if action not in rules:
                raise ValueError(f"No rate limit configured for action '{action}'")
            rule = rules[action]
        self.redis = redis
        self.action = action
        self.limit = rule.limit
        self.window_seconds = rule.window_seconds
        self._clock = clock
        self._check_window = redis.register_script(CHECK_WINDOW_SCRIPT)

    def _key(self, identifier: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{self.action}:{identifier}"

    def _active_window(self, identifier: str, now: float) -> dict[str, str] | None:
        record = self.redis.hgetall(self._key(identifier))
        if not record:
            return None
        window_start = float(record["window_start"])
        if now >= window_start + float(record["window"]):
            return None
        return record

    def check(self, identifier: str) -> RateLimitResult:
        """Count one attempt and say whether it is allowed."""
        now = self._clock()
        allowed, count, window_start, window = self._check_window(
            keys=[self._key(identifier)], args=[now, self.limit, self.window_seconds]
        )
        count = int(count)
        if allowed:
            return RateLimitResult(True, max(self.limit - count, 0), 0.0)

        window_end = float(window_start) + float(window)
        retry_after = max(window_end - now, 0.0)
        logger.warning(
            f"[rate-limit] blocked action={self.action} identifier={identifier} "
            f"count={count} limit={self.limit} retry_after={retry_after:.0f}s"
        )
        return RateLimitResult(False, 0, retry_after)

    def enforce(self, identifier: str) -> RateLimitResult:
        result = self.check(identifier)
        if not result.allowed:
            raise RateLimitExceededError(self.action, identifier, result.retry_after)
        return result

    def time_until_unblock(self, identifier: str) -> float:
        now = self._clock()
        record = self._active_window(identifier, now)
        if record is None or int(record["count"]) < self.limit:
            return 0.0
        return max(float(record["window_start"]) + float(record["window"]) - now, 0.0)

    def remaining_attempts(self, identifier: str) -> int:
        record = self._active_window(identifier, self._clock())
        if record is None:
            return self.limit
        return max(self.limit - int(record["count"]), 0)

    def reset(self, identifier: str) -> None:
        self.redis.delete(self._key(identifier))
