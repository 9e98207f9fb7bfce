"""
Job Status API Router
GET /api/v1/jobs/{job_id}

Jobs are owner-checked through their payload; the payload itself (raw file
bytes) is never returned.
"""

from __future__ import annotations

from fastapi import APIRouter

from docflow.api.deps import Ingestion, OwnerId
from docflow.schemas.documents import ErrorResponse
from docflow.schemas.jobs import JobStatusResponse

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
)


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    summary="Ingestion job status, attempts and backoff history",
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_job(job_id: str, owner_id: OwnerId, service: Ingestion) -> JobStatusResponse:
    return JobStatusResponse.from_job(service.get_job(job_id, owner_id))
