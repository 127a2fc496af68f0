"""Map failures raised during chunk application onto a handling policy."""

from __future__ import annotations

import csv
from enum import Enum

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from bulkops.core.exceptions import (
    FatalInputError,
    InputValidationError,
    ItemValidationError,
    TransientJobError,
)


class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    FATAL_DISCARD = "fatal_discard"
    PARTIAL_CONTINUE = "partial_continue"


RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    TransientJobError,
    ConnectionError,
    TimeoutError,
    OperationalError,
    DisconnectionError,
    PoolTimeoutError,
    RedisConnectionError,
    RedisTimeoutError,
)

FATAL_ERRORS: tuple[type[BaseException], ...] = (
    FatalInputError,
    InputValidationError,
    csv.Error,
    UnicodeDecodeError,
)


def classify(exc: BaseException) -> FailureKind:
    """Per-item problems continue, infrastructure hiccups retry, bad input fails.

    Database errors that are not connectivity problems (integrity, data)
    are discarded; anything unrecognised is retried and bounded by
    ``max_retries``.
    """
    if isinstance(exc, ItemValidationError):
        return FailureKind.PARTIAL_CONTINUE
    if isinstance(exc, RETRYABLE_ERRORS):
        return FailureKind.RETRYABLE
    if isinstance(exc, FATAL_ERRORS):
        return FailureKind.FATAL_DISCARD
    if isinstance(exc, SQLAlchemyError):
        return FailureKind.FATAL_DISCARD
    return FailureKind.RETRYABLE


def backoff_seconds(retry_count: int, base: float, cap: float) -> float:
    """Exponential delay for the ``retry_count``-th retry (1-based)."""
    exponent = max(retry_count - 1, 0)
    return float(min(cap, base * (2**exponent)))
