"""
Document Ingestion API Router
POST /api/v1/documents/upload

Implements:
  - Multipart file upload with synchronous validation
  - Owner isolation via the gateway-supplied X-Owner-ID header
  - Async processing dispatch to the in-process job queue
  - Status, listing, content and content search scoped to the owner
  - Structured error responses for all 4xx/5xx cases

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. X-Owner-ID resolved (401 if missing)                 │
  │ 2. Name / size / content kind / magic-byte validation   │
  │ 3. Document created (status=uploading)                  │
  │ 4. document_ingest job enqueued → returns 202           │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from docflow.api.deps import Ingestion, OwnerId, Runtime
from docflow.core.errors import FileTooLargeError
from docflow.schemas.documents import (
    ContentSearchResponse,
    DocumentContentResponse,
    DocumentListResponse,
    DocumentStatusResponse,
    ErrorResponse,
    UploadReceipt,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)

# multipart framing allowance on top of the file itself
_FORM_OVERHEAD_BYTES = 4096


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadReceipt,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a document for ingestion",
    description=(
        "Accepts PDF, DOCX, TXT, MD, CSV, JSON or HTML files. "
        "Returns 202 immediately; processing is asynchronous. "
        "Poll GET /documents/{id}/status or subscribe to /realtime/documents."
    ),
    responses={
        202: {"model": UploadReceipt, "description": "File accepted for processing"},
        400: {"model": ErrorResponse, "description": "Invalid name, content kind or content"},
        401: {"model": ErrorResponse, "description": "Missing X-Owner-ID"},
        413: {"model": ErrorResponse, "description": "File exceeds the size limit"},
        422: {"model": ErrorResponse, "description": "Malformed form fields"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_document(
    request:       Request,
    owner_id:      OwnerId,
    runtime:       Runtime,
    file:          UploadFile    = File(..., description="Document file"),
    document_name: Optional[str] = Form(None, max_length=255, description="Display name; defaults to the filename"),
    content_kind:  Optional[str] = Form(None, description="pdf | docx | txt | md | csv | json | html; defaults to the extension"),
    priority:      Optional[int] = Form(None, ge=0, le=10, description="Job priority, higher runs first"),
    ocr:           bool          = Form(False, description="Request OCR (extends the job timeout)"),
) -> JSONResponse:
    max_bytes = runtime.settings.max_file_size_bytes

    # Guard: reject oversized requests before reading the body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > max_bytes + _FORM_OVERHEAD_BYTES:
        raise FileTooLargeError(
            f"Request of {int(content_length):,} bytes exceeds the {max_bytes:,} byte limit.",
            field="file",
        )

    data = await file.read()
    receipt = await runtime.service.ingest(
        owner_id=owner_id,
        filename=file.filename,
        data=data,
        document_name=document_name,
        content_kind=content_kind,
        priority=priority,
        ocr=ocr,
    )

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=receipt.model_dump(mode="json"),
        headers={
            "X-Document-ID": receipt.document_id,
            "Location":      f"/api/v1/documents/{receipt.document_id}/status",
        },
    )


# ---------------------------------------------------------------------------
# GET /documents: list the owner's documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List the caller's documents, newest first",
    responses={401: {"model": ErrorResponse}},
)
async def list_documents(owner_id: OwnerId, service: Ingestion) -> DocumentListResponse:
    documents = await service.list_documents(owner_id)
    return DocumentListResponse(documents=documents, total=len(documents))


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/status
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/status",
    response_model=DocumentStatusResponse,
    summary="Document state plus its most recent processing events",
    responses={
        200: {"model": DocumentStatusResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document_status(
    document_id: str,
    owner_id:    OwnerId,
    service:     Ingestion,
    limit:       Optional[int] = Query(None, ge=0, le=100, description="Number of recent events"),
) -> DocumentStatusResponse:
    return await service.get_status(document_id, owner_id, limit)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/content
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/content",
    response_model=DocumentContentResponse,
    summary="Extracted text and chunks",
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown document or not processed yet"},
    },
)
async def get_document_content(
    document_id: str,
    owner_id:    OwnerId,
    service:     Ingestion,
) -> DocumentContentResponse:
    content = await service.get_content(document_id, owner_id)
    return DocumentContentResponse.from_content(content)


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/content/search
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/content/search",
    response_model=ContentSearchResponse,
    summary="Chunks containing a substring (case-insensitive), in order",
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse, "description": "Missing or empty query"},
    },
)
async def search_document_content(
    document_id: str,
    owner_id:    OwnerId,
    service:     Ingestion,
    q:           str = Query(..., min_length=1, max_length=500, description="Text to look for"),
    limit:       Optional[int] = Query(None, ge=1, le=50, description="Maximum chunks returned"),
) -> ContentSearchResponse:
    chunks = await service.search_content(document_id, owner_id, q, limit)
    return ContentSearchResponse.from_matches(document_id, q, chunks)
