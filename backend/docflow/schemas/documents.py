"""
Document Records & Pydantic Request/Response Schemas

Covers the lifecycle of an uploaded document:
  - Closed enums: DocumentStatus (lifecycle), ContentKind, EventKind
  - Domain records shared by repository, workers and the realtime layer
    (Document, ProcessingEvent, DocumentContent)
  - HTTP response bodies for /api/v1/documents/*
  - Structured error bodies (400, 401, 403, 404, 409, 413, 422, 500, 503)

Design decisions:
  - document_id is always server-generated: "<owner>_<epoch ms>_<base36 suffix>".
  - Document and ProcessingEvent are frozen; the repository produces a new
    copy on every write, so a snapshot handed to a subscriber never mutates.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from docflow.processing.chunking import Chunk


# ---------------------------------------------------------------------------
# Lifecycle state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Transitions: uploading → parsing → processing → generating → completed
    Any non-terminal state may move to failed.
    """
    UPLOADING  = "uploading"    # accepted, waiting for a worker
    PARSING    = "parsing"      # text extraction in progress
    PROCESSING = "processing"   # chunking
    GENERATING = "generating"   # derived fields (counts, preview)
    COMPLETED  = "completed"
    FAILED     = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


# Nominal progress reported when a stage is entered
STAGE_PROGRESS: dict[DocumentStatus, int] = {
    DocumentStatus.UPLOADING:  0,
    DocumentStatus.PARSING:    25,
    DocumentStatus.PROCESSING: 50,
    DocumentStatus.GENERATING: 75,
    DocumentStatus.COMPLETED:  100,
}


class ContentKind(str, Enum):
    PDF  = "pdf"
    DOCX = "docx"
    TXT  = "txt"
    MD   = "md"
    CSV  = "csv"
    JSON = "json"
    HTML = "html"

    @classmethod
    def from_filename(cls, filename: str) -> "ContentKind | None":
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        ext = _EXTENSION_ALIASES.get(ext, ext)
        try:
            return cls(ext)
        except ValueError:
            return None


_EXTENSION_ALIASES = {"markdown": "md", "htm": "html", "text": "txt"}


class EventKind(str, Enum):
    UPLOAD_START    = "upload_start"
    PARSE_START     = "parse_start"
    PARSE_COMPLETE  = "parse_complete"
    EMBEDDING_START = "embedding_start"
    PROGRESS        = "progress"
    COMPLETE        = "complete"
    ERROR           = "error"


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------

class NewDocument(BaseModel):
    """Metadata supplied to DocumentRepository.create()."""
    owner_id:     str
    name:         str
    filename:     str
    content_kind: ContentKind
    size_bytes:   int = Field(..., gt=0)


class Document(BaseModel):
    """Primary record tracking an uploaded artifact and its lifecycle."""
    model_config = ConfigDict(frozen=True)

    id:           str
    owner_id:     str
    name:         str
    filename:     str
    content_kind: ContentKind
    size_bytes:   int
    status:       DocumentStatus = DocumentStatus.UPLOADING
    progress:     int            = Field(0, ge=0, le=100)
    error:        str | None     = None
    created_at:   datetime
    updated_at:   datetime

    # Populated once processing completes
    word_count:   int | None = None
    chunk_count:  int | None = None
    text_preview: str | None = None
    page_count:   int | None = None


class ProcessingEvent(BaseModel):
    """Immutable log entry recording one state transition."""
    model_config = ConfigDict(frozen=True)

    sequence:    int              # strictly increasing per document
    document_id: str
    owner_id:    str
    event:       EventKind
    status:      DocumentStatus
    progress:    int
    timestamp:   datetime
    data:        dict[str, Any] = Field(default_factory=dict)
    error:       str | None     = None


@dataclass
class DocumentContent:
    """Extracted text and its chunks; replaced wholesale on reprocessing."""
    document_id: str
    full_text:   str
    chunks:      list[Chunk] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Upload response: 202 Accepted
# ---------------------------------------------------------------------------

class UploadReceipt(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202: the document exists but processing is asynchronous.
    """
    document_id:   str            = Field(..., description="Server-generated document id")
    job_id:        str | None     = Field(None, description="Ingestion job id; poll /jobs/{id}")
    status:        DocumentStatus = Field(..., description="Lifecycle state at the time of the response")
    progress:      int            = 0
    document_name: str
    filename:      str
    content_kind:  ContentKind
    size_bytes:    int
    created_at:    datetime


# ---------------------------------------------------------------------------
# Query responses
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Document plus its most recent processing events, newest first."""
    document: Document
    events:   list[ProcessingEvent] = Field(default_factory=list)


class DocumentListResponse(BaseModel):
    documents: list[Document]
    total:     int


class ChunkResponse(BaseModel):
    index:      int
    content:    str
    start_char: int
    end_char:   int
    metadata:   dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> "ChunkResponse":
        return cls(
            index=chunk.index,
            content=chunk.content,
            start_char=chunk.start_char,
            end_char=chunk.end_char,
            metadata=dict(chunk.metadata),
        )


class DocumentContentResponse(BaseModel):
    document_id: str
    full_text:   str
    chunk_count: int
    chunks:      list[ChunkResponse]

    @classmethod
    def from_content(cls, content: DocumentContent) -> "DocumentContentResponse":
        return cls(
            document_id=content.document_id,
            full_text=content.full_text,
            chunk_count=len(content.chunks),
            chunks=[ChunkResponse.from_chunk(c) for c in content.chunks],
        )


class ContentSearchResponse(BaseModel):
    """Chunks of one document matching a case-insensitive substring query."""
    document_id: str
    query:       str
    match_count: int
    chunks:      list[ChunkResponse]

    @classmethod
    def from_matches(cls, document_id: str, query: str, chunks: list[Chunk]) -> "ContentSearchResponse":
        return cls(
            document_id=document_id,
            query=query,
            match_count=len(chunks),
            chunks=[ChunkResponse.from_chunk(c) for c in chunks],
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def from_exception(exc: Exception, request_id: str | None = None) -> ErrorResponse:
        """Build the envelope for a DocflowError raised anywhere in the pipeline."""
        code = getattr(exc, "error_code", "INTERNAL_ERROR")
        message = getattr(exc, "message", str(exc))
        return ErrorResponse(
            error_code=code,
            message=message,
            details=[
                ErrorDetail(field=getattr(exc, "field", None), message=message, code=code)
            ],
            request_id=request_id,
        )

    @staticmethod
    def unauthorized() -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. The X-Owner-ID header is missing.",
            details=[
                ErrorDetail(
                    field=None,
                    message="Requests must pass through the authentication gateway.",
                    code="UNAUTHORIZED",
                )
            ],
        )

    @staticmethod
    def request_validation(errors: list[dict[str, Any]], request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(p) for p in err.get("loc", ()) if p != "body") or None,
                    message=err.get("msg", "invalid value"),
                    code="VALIDATION_ERROR",
                )
                for err in errors
            ],
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            details=[],
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# HTTP status code → error code mapping (for OpenAPI documentation)
# ---------------------------------------------------------------------------

HTTP_ERROR_MAP: dict[int, str] = {
    400: "VALIDATION_ERROR",          # bad name, unsupported kind, magic-byte mismatch
    401: "UNAUTHORIZED",              # X-Owner-ID missing
    403: "FORBIDDEN",                 # resource belongs to another owner
    404: "NOT_FOUND",                 # unknown document / job / content
    409: "INVALID_TRANSITION",        # status change off the lifecycle edges
    413: "FILE_TOO_LARGE",            # body exceeds max_file_size_bytes
    422: "VALIDATION_ERROR",          # FastAPI request validation failure
    500: "INTERNAL_ERROR",
    503: "QUEUE_ERROR",               # job queue closed
}
