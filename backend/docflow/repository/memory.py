"""
In-memory DocumentRepository backend.

Default backend for a single API process and for tests.  State lives in
plain dicts; per-document event history is a bounded deque, so the oldest
events fall off automatically once `event_history_cap` is reached.
Nothing survives a restart.
"""

from __future__ import annotations

from collections import Counter, deque
from datetime import datetime

from docflow.repository.base import DocumentRepository
from docflow.schemas.documents import (
    Document,
    DocumentContent,
    DocumentStatus,
    ProcessingEvent,
)


class InMemoryDocumentRepository(DocumentRepository):

    def __init__(self, event_history_cap: int = 100) -> None:
        super().__init__(event_history_cap=event_history_cap)
        self._documents: dict[str, Document] = {}              # insertion ordered
        self._events:    dict[str, deque[ProcessingEvent]] = {}
        self._sequences: dict[str, int] = {}
        self._contents:  dict[str, DocumentContent] = {}

    async def _fetch(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    async def _insert(self, document: Document, event: ProcessingEvent) -> None:
        self._documents[document.id] = document
        self._events[document.id] = deque(maxlen=self._event_cap)
        self._append(event)

    async def _commit(self, document: Document, event: ProcessingEvent) -> None:
        self._documents[document.id] = document
        self._append(event)

    def _append(self, event: ProcessingEvent) -> None:
        self._events[event.document_id].append(event)
        self._sequences[event.document_id] = event.sequence

    async def _last_sequence(self, document_id: str) -> int:
        return self._sequences.get(document_id, 0)

    async def _store_content(self, content: DocumentContent) -> None:
        self._contents[content.document_id] = content

    async def _fetch_content(self, document_id: str) -> DocumentContent | None:
        return self._contents.get(document_id)

    async def _list_owner(self, owner_id: str) -> list[Document]:
        return [d for d in reversed(self._documents.values()) if d.owner_id == owner_id]

    async def _recent_events(self, document_id: str, limit: int) -> list[ProcessingEvent]:
        history = self._events.get(document_id)
        if not history:
            return []
        return list(reversed(history))[:limit]

    async def _list_stale(self, older_than: datetime) -> list[Document]:
        return [
            d for d in self._documents.values()
            if not d.status.is_terminal and d.updated_at < older_than
        ]

    async def _status_counts(self) -> dict[DocumentStatus, int]:
        return dict(Counter(d.status for d in self._documents.values()))

    async def _owner_count(self) -> int:
        return len({d.owner_id for d in self._documents.values()})
