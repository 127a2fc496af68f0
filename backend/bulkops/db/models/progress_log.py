"""Append-only progress log rows attached to a job execution."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from bulkops.db.base import Base, JSONType

LOG_LEVELS = ("debug", "info", "warn", "error", "fatal")


class ProgressLogEntry(Base):
    __tablename__ = "job_progress_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_version = Column(
        String(64),
        ForeignKey("job_executions.version", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phase = Column(String(100), nullable=False)
    progress_percentage = Column(Float)
    processed_records = Column(Integer, nullable=False, default=0)
    current_batch_size = Column(Integer)
    current_batch_number = Column(Integer, nullable=False, default=0)
    message = Column(Text)
    log_level = Column(String(16), nullable=False, default="info")
    records_per_second = Column(Float)
    estimated_remaining_seconds = Column(Float)
    metrics = Column(JSONType)
    broadcasted = Column(Boolean, nullable=False, default=False)
    broadcasted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("JobExecution", back_populates="progress_logs")

    def mark_broadcasted(self) -> None:
        """The only mutation allowed after the row is written."""
        self.broadcasted = True
        self.broadcasted_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phase": self.phase,
            "progress_percentage": self.progress_percentage,
            "processed_records": self.processed_records,
            "current_batch_size": self.current_batch_size,
            "current_batch_number": self.current_batch_number,
            "message": self.message,
            "log_level": self.log_level,
            "records_per_second": self.records_per_second,
            "estimated_remaining_seconds": self.estimated_remaining_seconds,
            "broadcasted": self.broadcasted,
            "broadcasted_at": self.broadcasted_at,
            "created_at": self.created_at,
        }
