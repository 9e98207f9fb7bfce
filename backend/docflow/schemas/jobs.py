"""Job status response — GET /api/v1/jobs/{job_id}"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from docflow.workers.queue import Job, JobStatus


class JobStatusResponse(BaseModel):
    job_id:          str
    type:            str
    status:          JobStatus
    document_id:     str | None = None
    attempts:        int
    max_attempts:    int
    priority:        int
    timeout:         float
    created_at:      datetime
    finished_at:     datetime | None = None
    last_error:      str | None      = None
    backoff_history: list[float]     = Field(default_factory=list, description="Retry delays scheduled so far (seconds)")

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        # payload carries raw file bytes; never echo it back
        return cls(
            job_id=job.id,
            type=job.type,
            status=job.status,
            document_id=job.document_id,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            priority=job.priority,
            timeout=job.timeout,
            created_at=job.created_at,
            finished_at=job.finished_at,
            last_error=job.last_error,
            backoff_history=list(job.backoff_history),
        )
