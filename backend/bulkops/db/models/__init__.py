"""Database models package."""
from bulkops.db.models.job_execution import JobExecution, JobStatus
from bulkops.db.models.product import Product
from bulkops.db.models.progress_log import ProgressLogEntry

__all__ = ["JobExecution", "JobStatus", "Product", "ProgressLogEntry"]
