"""
Document Ingestion Service

Orchestrates the upload pipeline:
  1. Validate the document name (length, no path separators / control chars)
  2. Validate size: 0 < size <= max_file_size_bytes
  3. Resolve the content kind (declared kind, else filename extension) and
     check it against the configured allow-list
  4. Check magic bytes: PDF/DOCX must carry their signature, text kinds
     must not carry a binary one
  5. Create the document (status=uploading, upload_start event)
  6. Enqueue a document_ingest job on the in-process JobQueue
  7. Return an UploadReceipt (HTTP 202)

Every validation failure raises ValidationError synchronously; nothing is
created or queued for a rejected upload.  If the queue refuses the job
(closed during shutdown) the document is marked failed and the receipt is
still returned: the upload itself was accepted.

Owner scoping:
  owner_id always comes from the authentication layer, never from the
  request body.  Every read checks ownership (OwnershipError on mismatch).
"""

from __future__ import annotations

import logging
import re

from docflow.core.config import Settings
from docflow.core.errors import (
    FileTooLargeError,
    OwnershipError,
    QueueClosedError,
    ValidationError,
)
from docflow.processing.chunking import Chunk
from docflow.repository.base import DocumentRepository
from docflow.schemas.documents import (
    ContentKind,
    Document,
    DocumentContent,
    DocumentStatusResponse,
    NewDocument,
    UploadReceipt,
)
from docflow.workers.queue import MAX_PRIORITY, MIN_PRIORITY, Job, JobQueue
from docflow.workers.tasks import INGEST_JOB

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

# Magic byte signatures, checked against the head of the file content
_PDF_MAGIC  = b"%PDF"
_ZIP_MAGIC  = b"PK\x03\x04"                              # DOCX is a zip container
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"        # legacy .doc

_REQUIRED_MAGIC: dict[ContentKind, bytes] = {
    ContentKind.PDF:  _PDF_MAGIC,
    ContentKind.DOCX: _ZIP_MAGIC,
}
_BINARY_MAGIC = (_PDF_MAGIC, _ZIP_MAGIC, _OLE2_MAGIC)

_NAME_RE = re.compile(r'^[^/\\<>:"|?*\x00-\x1f]+$')


def _sanitize_filename(filename: str) -> str:
    """Strip path components; returns only the basename."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return basename.strip()[:255]


def detect_content_kind(filename: str, declared: str | None = None) -> ContentKind:
    """Resolve the content kind from the declared value or the filename extension."""
    if declared:
        try:
            return ContentKind(declared.strip().lower())
        except ValueError:
            raise ValidationError(
                f"Content kind '{declared}' is not supported.",
                field="content_kind",
                error_code="UNSUPPORTED_FILE_TYPE",
            ) from None

    kind = ContentKind.from_filename(filename)
    if kind is None:
        raise ValidationError(
            f"Cannot determine a supported content kind for '{filename}'.",
            field="file",
            error_code="UNSUPPORTED_FILE_TYPE",
        )
    return kind


def check_magic_bytes(kind: ContentKind, head: bytes) -> None:
    required = _REQUIRED_MAGIC.get(kind)
    if required is not None:
        if not head.startswith(required):
            raise ValidationError(
                f"File content is not a valid {kind.value.upper()} document.",
                field="file",
                error_code="CONTENT_MISMATCH",
            )
        return

    if head.startswith(_BINARY_MAGIC):
        raise ValidationError(
            f"Binary content cannot be ingested as '{kind.value}'.",
            field="file",
            error_code="CONTENT_MISMATCH",
        )


# ---------------------------------------------------------------------------
# Core ingestion orchestrator
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Long-lived service object shared by all requests.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        repository: DocumentRepository,
        queue:      JobQueue,
        settings:   Settings,
    ) -> None:
        self._repository = repository
        self._queue      = queue
        self._settings   = settings

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def ingest(
        self,
        owner_id:      str,
        filename:      str | None,
        data:          bytes,
        document_name: str | None = None,
        content_kind:  str | None = None,
        priority:      int | None = None,
        ocr:           bool = False,
    ) -> UploadReceipt:
        """Validate, create and enqueue.  Raises ValidationError on bad input."""
        if not filename or not _sanitize_filename(filename):
            raise ValidationError(
                "No file was provided in the request.",
                field="file",
                error_code="MISSING_FILE",
            )
        safe_filename = _sanitize_filename(filename)

        # ---- Step 1: document name -----------------------------------
        name = (document_name if document_name is not None else safe_filename).strip()
        if (
            not name
            or len(name) > self._settings.max_document_name_length
            or not _NAME_RE.match(name)
        ):
            raise ValidationError(
                f"'{name}' must be 1-{self._settings.max_document_name_length} characters "
                "and cannot contain path separators.",
                field="document_name",
                error_code="INVALID_DOCUMENT_NAME",
            )

        # ---- Step 2: size --------------------------------------------
        size = len(data)
        if size == 0:
            raise ValidationError("Uploaded file is empty.", field="file", error_code="EMPTY_FILE")
        if size > self._settings.max_file_size_bytes:
            raise FileTooLargeError(
                f"Received {size:,} bytes; limit is {self._settings.max_file_size_bytes:,} bytes.",
                field="file",
            )

        # ---- Step 3: content kind ------------------------------------
        kind = detect_content_kind(safe_filename, content_kind)
        if kind.value not in self._settings.allowed_content_kinds:
            raise ValidationError(
                f"Content kind '{kind.value}' is not enabled.",
                field="content_kind",
                error_code="UNSUPPORTED_FILE_TYPE",
            )

        # ---- Step 4: magic bytes -------------------------------------
        check_magic_bytes(kind, data[:8])

        if priority is not None and not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}.",
                field="priority",
            )

        logger.info(
            "Ingest start | owner=%s file=%s kind=%s size=%d",
            owner_id, safe_filename, kind.value, size,
        )

        # ---- Step 5: persist document --------------------------------
        document = await self._repository.create(
            NewDocument(
                owner_id=owner_id,
                name=name,
                filename=safe_filename,
                content_kind=kind,
                size_bytes=size,
            )
        )

        # ---- Step 6: enqueue processing job --------------------------
        job_id: str | None = None
        status = document.status
        try:
            job_id = await self._queue.enqueue(
                INGEST_JOB,
                {
                    "document_id":  document.id,
                    "owner_id":     owner_id,
                    "content_kind": kind.value,
                    "data":         data,
                    "ocr":          ocr,
                },
                priority=priority,
            )
        except QueueClosedError as exc:
            # Non-fatal for the caller: the upload was accepted, the document
            # just cannot be processed.
            logger.error("Failed to enqueue processing job | doc=%s error=%s", document.id, exc)
            failed = await self._repository.mark_failed(document.id, f"Queue unavailable: {exc}")
            if failed is not None:
                status = failed.status

        return UploadReceipt(
            document_id=document.id,
            job_id=job_id,
            status=status,
            progress=document.progress,
            document_name=document.name,
            filename=document.filename,
            content_kind=document.content_kind,
            size_bytes=document.size_bytes,
            created_at=document.created_at,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_status(
        self,
        document_id: str,
        owner_id:    str,
        limit:       int | None = None,
    ) -> DocumentStatusResponse:
        document = await self._repository.get(document_id, owner_id)
        events = await self._repository.recent_events(
            document_id,
            self._settings.status_event_limit if limit is None else limit,
        )
        return DocumentStatusResponse(document=document, events=events)

    async def list_documents(self, owner_id: str) -> list[Document]:
        return await self._repository.list_by_owner(owner_id)

    async def get_content(self, document_id: str, owner_id: str) -> DocumentContent:
        return await self._repository.get_content(document_id, owner_id)

    async def search_content(
        self,
        document_id: str,
        owner_id:    str,
        query:       str,
        limit:       int | None = None,
    ) -> list[Chunk]:
        return await self._repository.search_content(
            document_id,
            query,
            self._settings.content_search_limit if limit is None else limit,
            owner_id=owner_id,
        )

    def get_job(self, job_id: str, owner_id: str) -> Job:
        job = self._queue.get(job_id)
        if job.payload.get("owner_id") != owner_id:
            raise OwnershipError(f"Job '{job_id}' belongs to another owner")
        return job
