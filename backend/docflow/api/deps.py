"""
Composed FastAPI Dependencies

Route handlers import from here — never from app.state or the runtime
directly.  This is the single wiring point for the request context.

Authentication is an external collaborator: the gateway in front of this
service verifies the caller and forwards the owner identity in the
X-Owner-ID header.  A request without it is rejected with 401.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from docflow.schemas.documents import UploadErrors
from docflow.services.ingestion import IngestionService
from docflow.services.runtime import IngestionRuntime


# ---------------------------------------------------------------------------
# 1. Owner identity (from the authentication gateway)
# ---------------------------------------------------------------------------

async def get_owner_id(
    x_owner_id: Annotated[str | None, Header(alias="X-Owner-ID")] = None,
) -> str:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UploadErrors.unauthorized().model_dump(),
        )
    return owner_id


# ---------------------------------------------------------------------------
# 2. Process-wide ingestion runtime (built in create_app, started by lifespan)
# ---------------------------------------------------------------------------

def get_runtime(request: Request) -> IngestionRuntime:
    return request.app.state.runtime


def get_ingestion_service(
    runtime: Annotated[IngestionRuntime, Depends(get_runtime)],
) -> IngestionService:
    return runtime.service


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

OwnerId   = Annotated[str, Depends(get_owner_id)]
Runtime   = Annotated[IngestionRuntime, Depends(get_runtime)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion_service)]
