"""Job submission, status and control payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class JobSubmitRequest(BaseModel):
    job_kind: str = Field(..., description="e.g., product_import, product_name_normalization")
    input_reference: str = Field(..., description="Staged file path or migration identifier")
    configuration: dict[str, Any] | None = Field(
        None, description="Overrides merged onto the deployment defaults"
    )
    job_id: str | None = Field(None, description="Caller-chosen id; generated when omitted")
    name: str | None = None


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str = "pending"


class ProgressLogRead(BaseModel):
    id: int
    phase: str
    progress_percentage: float | None = None
    processed_records: int
    current_batch_size: int | None = None
    current_batch_number: int
    message: str | None = None
    log_level: str
    records_per_second: float | None = None
    estimated_remaining_seconds: float | None = None
    broadcasted: bool
    broadcasted_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class JobStatus(BaseModel):
    id: str
    name: str
    type: str = Field(..., description="Registered job kind")
    status: str = Field(..., description="pending|running|paused|completed|failed|cancelled|rolled_back")
    progress_percentage: float | None = Field(
        None, description="0-100; null while the total is unknown"
    )
    message: str | None = None
    total_records: int
    processed_records: int
    current_batch_number: int
    current_batch_size: int | None = None
    invalid_count: int = 0
    retry_count: int = 0
    admin_id: str
    error: dict[str, Any] | None = None
    rollback_status: str = "none"
    rollback_report: dict[str, Any] | None = None
    cancel_requested: bool = False
    pause_requested: bool = False
    records_per_second: float | None = None
    estimated_completion_time: datetime | None = None
    execution_duration: float | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metrics: dict | None = None


class JobDetail(JobStatus):
    configuration: dict[str, Any] = Field(default_factory=dict)
    invalid_items: list[dict[str, Any]] = Field(default_factory=list)
    environment: str | None = None
    hostname: str | None = None
    process_id: int | None = None
    recent_logs: list[ProgressLogRead] = Field(default_factory=list)
    live_progress: dict[str, Any] | None = None
