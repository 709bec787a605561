"""Dead-letter row for a queued generation the worker could not run."""

from datetime import datetime, timezone

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class FailedJob(Document):
    job_name: str
    job_id: str  # arq job id
    generation_job_id: str | None = None
    error_type: str = ""
    reason: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "failed_jobs"
        indexes = [
            IndexModel([("generation_job_id", ASCENDING)]),
            IndexModel([("created_at", DESCENDING)]),
        ]
