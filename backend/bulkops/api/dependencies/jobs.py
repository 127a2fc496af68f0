"""Request-scoped collaborators for job endpoints: actor, Redis, queue, rate limits."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, Request, status
from redis import Redis

from bulkops.api.routers.job_helpers import to_http_error
from bulkops.core.exceptions import RateLimitExceededError
from bulkops.services.rate_limiter import RateLimiter, resolve_identifier
from bulkops.utils.redis_client import get_redis_client

SESSION_COOKIE = "session_id"


def get_redis() -> Redis:
    return get_redis_client()


def get_actor_id(x_actor_id: str | None = Header(None)) -> str:
    """Acting identity supplied by the upstream auth layer."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id header is required",
        )
    return x_actor_id.strip()


def get_enqueue() -> Callable[[str], None]:
    from bulkops.workers.tasks.run_job import enqueue_job

    return enqueue_job


def get_rollback_enqueue() -> Callable[[str, str], None]:
    from bulkops.workers.tasks.rollback_job import enqueue_rollback

    return enqueue_rollback


def rate_limited(action: str):
    """Dependency factory counting one attempt of ``action`` per caller."""

    def dependency(
        request: Request,
        x_actor_id: str | None = Header(None),
        redis: Redis = Depends(get_redis),
    ) -> None:
        identifier = resolve_identifier(
            actor_id=x_actor_id,
            session_id=request.cookies.get(SESSION_COOKIE),
            remote_addr=request.client.host if request.client else None,
        )
        try:
            RateLimiter(redis, action).enforce(identifier)
        except RateLimitExceededError as exc:
            raise to_http_error(exc) from exc

    return dependency
