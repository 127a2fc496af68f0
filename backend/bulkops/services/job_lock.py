"""Redis lock enforcing one active runner per job id."""

from __future__ import annotations

import logging
import uuid

from redis import Redis

from bulkops.core.exceptions import JobAlreadyActiveError

logger = logging.getLogger(__name__)

LOCK_PREFIX = "jobs:lock:"

# Compare-and-act on the token in one round trip.
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

RENEW_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return 0
"""


def lock_key(job_id: str) -> str:
    return f"{LOCK_PREFIX}{job_id}"


class JobLock:
    """``SET NX EX`` token lock.

    The holder renews the TTL at every chunk boundary, so a crashed runner's
    lock lapses after ``ttl_seconds`` and a redelivered task can take over.
    Release and renewal only act on a token we still own.
    """

    def __init__(self, redis: Redis, job_id: str, ttl_seconds: int = 300):
        self.redis = redis
        self.job_id = job_id
        self.ttl_seconds = ttl_seconds
        self.token = uuid.uuid4().hex
        self.acquired = False
        self._release = redis.register_script(RELEASE_SCRIPT)
        self._renew = redis.register_script(RENEW_SCRIPT)

    def acquire(self) -> None:
        if not self.redis.set(lock_key(self.job_id), self.token, nx=True, ex=self.ttl_seconds):
            logger.error(f"[job {self.job_id}] another runner holds the job lock")
            raise JobAlreadyActiveError(f"Job {self.job_id} is already being run")
        self.acquired = True

    def renew(self) -> bool:
        """Push the expiry out again; False means the lock is no longer ours."""
        if not self.acquired:
            return False
        if self._renew(keys=[lock_key(self.job_id)], args=[self.token, self.ttl_seconds]):
            return True
        logger.error(f"[job {self.job_id}] job lock expired or was taken over")
        self.acquired = False
        return False

    def release(self) -> None:
        if not self.acquired:
            return
        if not self._release(keys=[lock_key(self.job_id)], args=[self.token]):
            logger.warning(f"[job {self.job_id}] lock expired or was taken over before release")
        self.acquired = False

    def is_held(self) -> bool:
        return self.redis.get(lock_key(self.job_id)) is not None

    def __enter__(self) -> "JobLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
