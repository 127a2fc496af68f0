"""Error taxonomy for bulk jobs.

Submission-time failures (input, configuration, security) surface to the
caller synchronously. Everything raised while a job runs is classified by
``bulkops.services.retry_classifier`` and recorded on the job execution.
"""

from __future__ import annotations

from typing import Any


class JobError(Exception):
    """Base class for every error raised by the job framework."""


class InputValidationError(JobError, ValueError):
    """Input or configuration rejected before the job starts."""


class ConfigurationError(InputValidationError):
    """Job configuration failed the required-key schema."""

    def __init__(self, message: str, missing_keys: list[str] | None = None):
        super().__init__(message)
        self.missing_keys = missing_keys or []


class SecurityViolationError(InputValidationError):
    """Path traversal, forbidden file type or oversize input."""


class TransientJobError(JobError):
    """Infrastructure hiccup (connectivity, timeout); safe to retry."""


class FatalInputError(JobError):
    """Input is structurally unusable; retrying cannot help."""


class ItemValidationError(JobError):
    """A single item failed validation; the rest of the job continues."""

    def __init__(self, message: str, item: Any = None, position: int | None = None):
        super().__init__(message)
        self.item = item
        self.position = position

    def to_report(self) -> dict[str, Any]:
        return {"position": self.position, "item": self.item, "error": str(self)}


class InvalidTransitionError(JobError):
    """A control or lifecycle call violated a state-machine guard."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        detail = f"Cannot transition job from '{current}' to '{target}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)
        self.current = current
        self.target = target


class RollbackUnavailableError(JobError):
    """Rollback requested for a job without captured compensating data."""


class RollbackFailedError(JobError):
    """A compensating step failed; rollback halted part way."""

    def __init__(self, message: str, report: dict[str, Any]):
        super().__init__(message)
        self.report = report


class JobNotFoundError(JobError, LookupError):
    """No job execution exists for the given id."""


class JobAlreadyExistsError(JobError):
    """A job execution with this id was already submitted."""


class JobAlreadyActiveError(JobAlreadyExistsError):
    """Another runner holds this job, or it is still in flight."""


class UnknownJobKindError(InputValidationError):
    """Submission named a job kind that is not registered."""


class RateLimitExceededError(JobError):
    """Identifier exceeded the attempts allowed for an action."""

    def __init__(self, action: str, identifier: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {action}; retry in {int(retry_after)}s"
        )
        self.action = action
        self.identifier = identifier
        self.retry_after = retry_after
