"""
Document Repository — Abstract Base

Every storage backend (in-memory, SQL) implements the small set of `_`-prefixed
storage primitives below.  The lifecycle rules live here, once, and every
backend inherits them:

  - State machine:  uploading → parsing → processing → generating → completed,
                    any non-terminal state → failed,
                    same-status writes allowed (progress updates).
    Backward edges raise InvalidTransitionError.  Writes to a document that
    is already completed/failed are ignored (warning logged, None returned).
  - Progress:       completed forces 100; failed freezes the last value;
                    otherwise progress never decreases and never reaches 100.
  - Atomicity:      every write runs under a per-document asyncio.Lock
                    (never a global lock), so writes to different documents
                    proceed concurrently.
  - Events:         each successful create / set_status appends exactly one
                    ProcessingEvent, sequence strictly increasing per document.
                    Listeners are invoked inside the per-document critical
                    section, so they observe events in append order.

Workers and the API only speak this interface, so a test can run the whole
pipeline against the in-memory backend and production can swap in SQL
without touching handler code.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from docflow.core.errors import InvalidTransitionError, NotFoundError, OwnershipError
from docflow.processing.chunking import Chunk
from docflow.schemas.documents import (
    STAGE_PROGRESS,
    Document,
    DocumentContent,
    DocumentStatus,
    EventKind,
    NewDocument,
    ProcessingEvent,
)

logger = logging.getLogger(__name__)

# Listener signature: (document after the write, the event it produced)
Listener = Callable[[Document, ProcessingEvent], None]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

_S = DocumentStatus

ALLOWED_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    _S.UPLOADING:  frozenset({_S.UPLOADING, _S.PARSING, _S.FAILED}),
    _S.PARSING:    frozenset({_S.PARSING, _S.PROCESSING, _S.FAILED}),
    _S.PROCESSING: frozenset({_S.PROCESSING, _S.GENERATING, _S.FAILED}),
    _S.GENERATING: frozenset({_S.GENERATING, _S.COMPLETED, _S.FAILED}),
    _S.COMPLETED:  frozenset(),
    _S.FAILED:     frozenset(),
}

# Event recorded when a document enters a status (same-status writes are PROGRESS)
_ENTRY_EVENTS: dict[DocumentStatus, EventKind] = {
    _S.PARSING:    EventKind.PARSE_START,
    _S.PROCESSING: EventKind.PARSE_COMPLETE,
    _S.GENERATING: EventKind.EMBEDDING_START,
    _S.COMPLETED:  EventKind.COMPLETE,
    _S.FAILED:     EventKind.ERROR,
}

# Extra document fields set_status() may write alongside a transition
UPDATABLE_FIELDS = frozenset({"word_count", "chunk_count", "text_preview", "page_count"})

DEFAULT_FAILURE_MESSAGE = "Processing failed"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_document_id(owner_id: str) -> str:
    """<owner>_<epoch milliseconds>_<9 random base36 chars>"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{owner_id}_{int(time.time() * 1000)}_{suffix}"


def resolve_progress(
    current: Document,
    status: DocumentStatus,
    requested: int | None,
) -> int:
    if status is DocumentStatus.COMPLETED:
        return 100
    if status is DocumentStatus.FAILED:
        return current.progress
    if requested is None:
        requested = STAGE_PROGRESS.get(status, current.progress)
    return max(current.progress, min(requested, 99))


# ---------------------------------------------------------------------------
# Per-key locking
# ---------------------------------------------------------------------------

class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped once no
    coroutine holds or waits on it.
    """

    def __init__(self) -> None:
        self._entries: dict[str, list] = {}   # key → [lock, refcount]

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Abstract repository
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):
    """
    Owner-scoped document store with lifecycle enforcement.

    Constructor args:
        event_history_cap : max events retained per document (oldest evicted)
    """

    def __init__(self, event_history_cap: int = 100) -> None:
        self._event_cap = event_history_cap
        self._locks = KeyedLock()
        self._listeners: list[Listener] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare backing storage. No-op by default."""

    async def close(self) -> None:
        """Release backing storage. No-op by default."""

    # ── Listeners ─────────────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, document: Document, event: ProcessingEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(document, event)
            except Exception:
                logger.exception(
                    "Repository listener failed | doc=%s seq=%d",
                    document.id, event.sequence,
                )

    # ── Writes ────────────────────────────────────────────────────────────

    async def create(self, new: NewDocument) -> Document:
        """Persist a new document in `uploading` and record `upload_start`."""
        now = utcnow()
        document = Document(
            id=generate_document_id(new.owner_id),
            owner_id=new.owner_id,
            name=new.name,
            filename=new.filename,
            content_kind=new.content_kind,
            size_bytes=new.size_bytes,
            status=DocumentStatus.UPLOADING,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        event = ProcessingEvent(
            sequence=1,
            document_id=document.id,
            owner_id=document.owner_id,
            event=EventKind.UPLOAD_START,
            status=document.status,
            progress=0,
            timestamp=now,
            data={"name": document.name, "size_bytes": document.size_bytes},
        )

        async with self._locks.hold(document.id):
            await self._insert(document, event)
            self._notify(document, event)

        logger.info(
            "Document created | doc=%s owner=%s kind=%s size=%d",
            document.id, document.owner_id, document.content_kind.value, document.size_bytes,
        )
        return document

    async def set_status(
        self,
        document_id: str,
        status:      DocumentStatus | str,
        progress:    int | None = None,
        *,
        error:       str | None = None,
        event:       EventKind | None = None,
        data:        dict[str, Any] | None = None,
        **fields:    Any,
    ) -> Document | None:
        """
        Move a document along the lifecycle and append one ProcessingEvent.

        Returns the updated Document, or None when the document was already
        terminal and the write was ignored.
        """
        status = DocumentStatus(status)
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"set_status cannot write fields: {sorted(unknown)}")

        async with self._locks.hold(document_id):
            current = await self._fetch(document_id)
            if current is None:
                raise NotFoundError(f"Document '{document_id}' not found")

            if current.status.is_terminal:
                logger.warning(
                    "Ignoring write to terminal document | doc=%s status=%s requested=%s",
                    document_id, current.status.value, status.value,
                )
                return None

            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    f"Illegal transition {current.status.value} → {status.value} "
                    f"for document '{document_id}'"
                )

            failed = status is DocumentStatus.FAILED
            now = max(utcnow(), current.updated_at)
            updated = current.model_copy(
                update={
                    "status":     status,
                    "progress":   resolve_progress(current, status, progress),
                    "error":      (error or DEFAULT_FAILURE_MESSAGE) if failed else None,
                    "updated_at": now,
                    **fields,
                }
            )

            if event is None:
                event = (
                    EventKind.PROGRESS
                    if status is current.status
                    else _ENTRY_EVENTS[status]
                )
            record = ProcessingEvent(
                sequence=await self._last_sequence(document_id) + 1,
                document_id=document_id,
                owner_id=updated.owner_id,
                event=event,
                status=status,
                progress=updated.progress,
                timestamp=now,
                data=dict(data or {}),
                error=updated.error,
            )

            await self._commit(updated, record)
            self._notify(updated, record)

        logger.debug(
            "Status set | doc=%s %s→%s progress=%d seq=%d",
            document_id, current.status.value, status.value, updated.progress, record.sequence,
        )
        return updated

    async def mark_failed(self, document_id: str, error: str | None = None) -> Document | None:
        """Force a non-terminal document into `failed` with a non-empty error."""
        document = await self.set_status(
            document_id,
            DocumentStatus.FAILED,
            error=error or DEFAULT_FAILURE_MESSAGE,
        )
        if document is not None:
            logger.warning("Document failed | doc=%s error=%s", document_id, document.error)
        return document

    async def set_content(self, document_id: str, content: DocumentContent) -> None:
        """Store (or replace) the extracted text and chunks of a document."""
        async with self._locks.hold(document_id):
            if await self._fetch(document_id) is None:
                raise NotFoundError(f"Document '{document_id}' not found")
            await self._store_content(content)

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, document_id: str, owner_id: str | None = None) -> Document:
        """
        Fetch one document.  When `owner_id` is given, a document that
        belongs to someone else raises OwnershipError.
        """
        document = await self._fetch(document_id)
        if document is None:
            raise NotFoundError(f"Document '{document_id}' not found")
        if owner_id is not None and document.owner_id != owner_id:
            raise OwnershipError(f"Document '{document_id}' belongs to another owner")
        return document

    async def get_content(self, document_id: str, owner_id: str | None = None) -> DocumentContent:
        await self.get(document_id, owner_id)
        content = await self._fetch_content(document_id)
        if content is None:
            raise NotFoundError(f"Content for document '{document_id}' is not available yet")
        return content

    async def search_content(
        self,
        document_id: str,
        query:       str,
        limit:       int = 5,
        owner_id:    str | None = None,
    ) -> list[Chunk]:
        """
        Chunks whose text contains `query` (case-insensitive), in index
        order, at most `limit`.  A document without stored content yet
        has no matches.
        """
        await self.get(document_id, owner_id)
        content = await self._fetch_content(document_id)
        if content is None or limit <= 0:
            return []
        needle = query.casefold()
        ordered = sorted(content.chunks, key=lambda c: c.index)
        matches = (c for c in ordered if needle in c.content.casefold())
        return list(itertools.islice(matches, limit))

    async def list_by_owner(self, owner_id: str) -> list[Document]:
        """All of an owner's documents, newest first."""
        return await self._list_owner(owner_id)

    async def recent_events(self, document_id: str, limit: int = 5) -> list[ProcessingEvent]:
        """The `limit` most recent events for a document, newest first."""
        if limit <= 0:
            return []
        return await self._recent_events(document_id, limit)

    async def list_stale(self, older_than: datetime) -> list[Document]:
        """Non-terminal documents whose last update is before `older_than`."""
        return await self._list_stale(older_than)

    async def count_by_owner(self, owner_id: str) -> int:
        return len(await self._list_owner(owner_id))

    async def stats(self) -> dict[str, Any]:
        counts = await self._status_counts()
        by_status = {s.value: counts.get(s, 0) for s in DocumentStatus}
        return {
            "total_documents": sum(by_status.values()),
            "by_status":       by_status,
            "owners":          await self._owner_count(),
        }

    # ── Storage primitives (implemented per backend) ──────────────────────

    @abstractmethod
    async def _fetch(self, document_id: str) -> Document | None: ...

    @abstractmethod
    async def _insert(self, document: Document, event: ProcessingEvent) -> None: ...

    @abstractmethod
    async def _commit(self, document: Document, event: ProcessingEvent) -> None:
        """Persist the updated document and append `event`, evicting beyond the cap."""

    @abstractmethod
    async def _last_sequence(self, document_id: str) -> int: ...

    @abstractmethod
    async def _store_content(self, content: DocumentContent) -> None: ...

    @abstractmethod
    async def _fetch_content(self, document_id: str) -> DocumentContent | None: ...

    @abstractmethod
    async def _list_owner(self, owner_id: str) -> list[Document]: ...

    @abstractmethod
    async def _recent_events(self, document_id: str, limit: int) -> list[ProcessingEvent]: ...

    @abstractmethod
    async def _list_stale(self, older_than: datetime) -> list[Document]: ...

    @abstractmethod
    async def _status_counts(self) -> dict[DocumentStatus, int]: ...

    @abstractmethod
    async def _owner_count(self) -> int: ...
