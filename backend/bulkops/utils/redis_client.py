"""Helper functions to create Redis clients with SSL support for Upstash and other providers."""

from __future__ import annotations

import ssl
from functools import lru_cache
from typing import Any

from redis import Redis

from bulkops.core.config import get_settings


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client with proper SSL configuration.

    Handles SSL/TLS connections for services like Upstash Redis that require SSL.

    Args:
        url: Redis connection URL (redis:// or rediss://)
        **kwargs: Additional arguments (decode_responses, socket_connect_timeout, etc.)
    """
    # If it's Upstash but uses redis://, convert to rediss://
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    client = Redis.from_url(url, **kwargs)

    if url.startswith("rediss://") or ".upstash.io" in url:
        if hasattr(client, "connection_pool") and hasattr(
            client.connection_pool, "connection_kwargs"
        ):
            client.connection_pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client


@lru_cache
def get_redis_client() -> Redis:
    """Shared text-mode client for progress, broadcast, locks and rate limits."""
    settings = get_settings()
    return create_redis_client(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=settings.redis_socket_timeout,
        socket_timeout=settings.redis_socket_timeout,
    )
