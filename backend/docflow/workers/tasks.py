"""
Worker Tasks — Document Processing Pipeline

Handler: document_ingest
  1. uploading  → parsing     (25)   text extraction
  2. parsing    → processing  (50)   chunking, content stored
  3. processing → generating  (75)   derived fields
  4. generating → completed   (100)  word_count, chunk_count, text_preview, page_count

  The handler is idempotent: a retried job re-reads the document and skips
  every stage it has already passed, and a document that is already
  completed/failed is left untouched.

Task: fail_stale_documents
  Watchdog — force-fails documents stuck in a non-terminal state for longer
  than `stale_document_seconds` ("Processing timeout").  Covers jobs lost to
  a crash or a restart of the in-process queue.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any

from docflow.core.config import Settings
from docflow.core.errors import NotFoundError, PermanentProcessingError
from docflow.processing.chunking import chunk_text
from docflow.processing.extractor import TextExtractor
from docflow.repository.base import DocumentRepository, utcnow
from docflow.schemas.documents import DocumentContent, DocumentStatus
from docflow.workers.queue import Handler, Job

logger = logging.getLogger(__name__)

INGEST_JOB = "document_ingest"
STALE_DOCUMENT_ERROR = "Processing timeout"
CHARS_PER_PAGE = 3000

_PIPELINE = (
    DocumentStatus.UPLOADING,
    DocumentStatus.PARSING,
    DocumentStatus.PROCESSING,
    DocumentStatus.GENERATING,
    DocumentStatus.COMPLETED,
)


def _stage(status: DocumentStatus) -> int:
    return _PIPELINE.index(status)


def make_preview(text: str, limit: int = 200) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def estimate_pages(text: str) -> int:
    return max(1, math.ceil(len(text) / CHARS_PER_PAGE))


# ---------------------------------------------------------------------------
# Main processing handler
# ---------------------------------------------------------------------------

def make_document_handler(
    repository: DocumentRepository,
    settings:   Settings,
    extractor:  TextExtractor | None = None,
) -> Handler:
    """Bind the ingestion pipeline to its collaborators for JobQueue.register()."""
    extractor = extractor or TextExtractor()

    async def handle(job: Job) -> dict[str, Any]:
        return await process_document(
            job,
            repository=repository,
            extractor=extractor,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            preview_chars=settings.text_preview_chars,
        )

    return handle


async def process_document(
    job: Job,
    *,
    repository:    DocumentRepository,
    extractor:     TextExtractor,
    chunk_size:    int = 1000,
    chunk_overlap: int = 200,
    preview_chars: int = 200,
) -> dict[str, Any]:
    """
    Full processing pipeline for one document.
    Orchestrates: extract → chunk → store content → derive fields → complete.
    """
    document_id: str = job.payload["document_id"]
    document = await repository.get(document_id)

    logger.info(
        "Processing | doc=%s owner=%s status=%s attempt=%d",
        document_id, document.owner_id, document.status.value, job.attempts,
    )

    if document.status.is_terminal:
        logger.warning(
            "Document already in status=%s, skipping | doc=%s",
            document.status.value, document_id,
        )
        return {"status": "skipped", "current_status": document.status.value}

    async def advance(target: DocumentStatus, **data: Any) -> bool:
        nonlocal document
        if _stage(document.status) >= _stage(target):
            return True
        updated = await repository.set_status(document_id, target, data=data)
        if updated is None:
            # finished elsewhere (watchdog) while this attempt was running
            return False
        document = updated
        return True

    # --- Phase 1: extraction --------------------------------------------
    if not await advance(DocumentStatus.PARSING, attempt=job.attempts):
        return {"status": "skipped"}

    content: DocumentContent | None = None
    if _stage(document.status) >= _stage(DocumentStatus.GENERATING):
        try:
            content = await repository.get_content(document_id)
        except NotFoundError:
            content = None

    if content is None:
        text = await extractor.extract_async(job.payload["data"], document.content_kind)
        if not text.strip():
            raise PermanentProcessingError("Extracted text is empty")

        if not await advance(DocumentStatus.PROCESSING, characters=len(text)):
            return {"status": "skipped"}

        # --- Phase 2: chunking ------------------------------------------
        chunks = chunk_text(text, chunk_size, chunk_overlap)
        content = DocumentContent(document_id=document_id, full_text=text, chunks=chunks)
        await repository.set_content(document_id, content)
        logger.info("Chunked | doc=%s chunks=%d", document_id, len(chunks))

    # --- Phase 3: derived fields ----------------------------------------
    if not await advance(DocumentStatus.GENERATING, chunk_count=len(content.chunks)):
        return {"status": "skipped"}

    text = content.full_text
    word_count = len(text.split())
    completed = await repository.set_status(
        document_id,
        DocumentStatus.COMPLETED,
        data={"word_count": word_count, "chunk_count": len(content.chunks)},
        word_count=word_count,
        chunk_count=len(content.chunks),
        text_preview=make_preview(text, preview_chars),
        page_count=estimate_pages(text),
    )
    if completed is None:
        return {"status": "skipped"}

    logger.info(
        "Processing complete | doc=%s words=%d chunks=%d",
        document_id, word_count, len(content.chunks),
    )
    return {
        "status":      completed.status.value,
        "document_id": document_id,
        "word_count":  word_count,
        "chunk_count": len(content.chunks),
    }


# ---------------------------------------------------------------------------
# Watchdog: force-fails documents stuck in a non-terminal state
# ---------------------------------------------------------------------------

async def fail_stale_documents(
    repository:          DocumentRepository,
    stale_after_seconds: float,
) -> int:
    """Fail every non-terminal document not updated for `stale_after_seconds`."""
    cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
    failed = 0
    for document in await repository.list_stale(cutoff):
        if await repository.mark_failed(document.id, STALE_DOCUMENT_ERROR) is not None:
            failed += 1
            logger.warning(
                "Stale document failed | doc=%s owner=%s last_status=%s",
                document.id, document.owner_id, document.status.value,
            )
    if failed:
        logger.info("Watchdog sweep | failed=%d", failed)
    return failed


async def run_watchdog(
    repository:          DocumentRepository,
    interval_seconds:    float,
    stale_after_seconds: float,
) -> None:
    """Run fail_stale_documents every `interval_seconds` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await fail_stale_documents(repository, stale_after_seconds)
        except Exception:
            logger.exception("Watchdog sweep failed")
