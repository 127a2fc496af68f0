"""Per-job configuration schema (batch size, resource thresholds, tuning)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from bulkops.core.config import Settings, get_settings
from bulkops.core.exceptions import ConfigurationError

REQUIRED_CONFIGURATION_KEYS = ("batch_size", "cpu_threshold", "memory_threshold")


class JobConfiguration(BaseModel):
    """Validated view of ``JobExecution.configuration``.

    ``memory_threshold`` is the resident set size in MB above which the
    resource monitor reports pressure; ``cpu_threshold`` is a percentage.
    With ``dry_run`` the job writes progress and counts but no domain changes
    and captures no rollback data.
    """

    model_config = ConfigDict(extra="allow")

    batch_size: int = Field(..., ge=1)
    cpu_threshold: float = Field(..., gt=0, le=100)
    memory_threshold: float = Field(..., gt=0)

    min_batch_size: int = Field(100, ge=1)
    shrink_factor: float = Field(0.5, gt=0, lt=1)
    max_retries: int = Field(3, ge=0, le=10)
    retry_backoff_seconds: float = Field(30.0, ge=0)
    retry_backoff_max_seconds: float = Field(900.0, ge=0)
    broadcast_every_chunks: int = Field(10, ge=1)
    broadcast_interval_seconds: float = Field(5.0, ge=0)
    throughput_window: int = Field(5, ge=1)
    sample_every_chunks: int = Field(1, ge=1)
    sample_interval_seconds: float = Field(5.0, ge=0)
    exhaustion_pause_after: int = Field(3, ge=1)
    # Run every chunk, report the counts, roll each chunk back.
    dry_run: bool = False

    @model_validator(mode="after")
    def _clamp_min_batch_size(self) -> "JobConfiguration":
        if self.min_batch_size > self.batch_size:
            self.min_batch_size = self.batch_size
        return self


def validate_configuration(configuration: dict[str, Any] | None) -> JobConfiguration:
    """Check the required-key schema and value ranges.

    Raises ConfigurationError listing every missing key, or the pydantic
    messages for malformed values.
    """
    configuration = configuration or {}
    missing = [key for key in REQUIRED_CONFIGURATION_KEYS if key not in configuration]
    if missing:
        raise ConfigurationError(
            f"Missing required configuration key(s): {', '.join(missing)}",
            missing_keys=missing,
        )
    try:
        return JobConfiguration.model_validate(configuration)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


def default_configuration(settings: Settings | None = None) -> dict[str, Any]:
    """Configuration map built from deployment settings."""
    settings = settings or get_settings()
    return {
        "batch_size": settings.default_batch_size,
        "cpu_threshold": settings.cpu_threshold,
        "memory_threshold": settings.memory_threshold_mb,
        "min_batch_size": settings.min_batch_size,
        "shrink_factor": settings.batch_shrink_factor,
        "max_retries": settings.max_retries,
        "retry_backoff_seconds": settings.retry_backoff_seconds,
        "retry_backoff_max_seconds": settings.retry_backoff_max_seconds,
        "broadcast_every_chunks": settings.broadcast_every_chunks,
        "broadcast_interval_seconds": settings.broadcast_interval_seconds,
        "throughput_window": settings.throughput_window_chunks,
        "sample_every_chunks": settings.resource_sample_every_chunks,
        "sample_interval_seconds": settings.resource_sample_interval_seconds,
        "exhaustion_pause_after": settings.exhaustion_pause_after,
    }


def build_configuration(
    overrides: dict[str, Any] | None = None, settings: Settings | None = None
) -> dict[str, Any]:
    """Merge caller overrides onto the deployment defaults."""
    merged = default_configuration(settings)
    merged.update(overrides or {})
    return merged
