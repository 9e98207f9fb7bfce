"""
SQL DocumentRepository backend (SQLAlchemy 2.x async).

Runs against PostgreSQL via asyncpg in production and SQLite via aiosqlite
for local development and tests.  Each storage primitive opens its own short
transaction; atomicity across fetch → validate → commit comes from the
per-document lock held by the base class, which is sufficient for a single
API process (cross-process coordination is out of scope).

SQLite hands back naive datetimes even for DateTime(timezone=True) columns;
every timestamp read from a row is normalised to UTC.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from docflow.db.session import create_engine, create_session_factory, create_tables, session_scope
from docflow.models.documents import DocumentContentRow, DocumentRow, ProcessingEventRow
from docflow.processing.chunking import Chunk
from docflow.repository.base import DocumentRepository
from docflow.schemas.documents import (
    Document,
    DocumentContent,
    DocumentStatus,
    ProcessingEvent,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _to_document(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        filename=row.filename,
        content_kind=row.content_kind,
        size_bytes=row.size_bytes,
        status=row.status,
        progress=row.progress,
        error=row.error,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        word_count=row.word_count,
        chunk_count=row.chunk_count,
        text_preview=row.text_preview,
        page_count=row.page_count,
    )


def _to_event(row: ProcessingEventRow) -> ProcessingEvent:
    return ProcessingEvent(
        sequence=row.sequence,
        document_id=row.document_id,
        owner_id=row.owner_id,
        event=row.event,
        status=row.status,
        progress=row.progress,
        timestamp=_aware(row.timestamp),
        data=row.data or {},
        error=row.error,
    )


def _event_row(event: ProcessingEvent) -> ProcessingEventRow:
    return ProcessingEventRow(
        document_id=event.document_id,
        owner_id=event.owner_id,
        sequence=event.sequence,
        event=event.event.value,
        status=event.status.value,
        progress=event.progress,
        timestamp=event.timestamp,
        data=event.data,
        error=event.error,
    )


class SqlDocumentRepository(DocumentRepository):
    """
    Constructor args:
        database_url      : async SQLAlchemy URL (postgresql+asyncpg://, sqlite+aiosqlite://)
        event_history_cap : max events retained per document
        echo              : log SQL statements
        engine            : pre-built engine (tests); overrides database_url
    """

    def __init__(
        self,
        database_url:      str = "sqlite+aiosqlite://",
        event_history_cap: int = 100,
        echo:              bool = False,
        engine:            AsyncEngine | None = None,
    ) -> None:
        super().__init__(event_history_cap=event_history_cap)
        self._engine = engine or create_engine(database_url, echo=echo)
        self._sessions = create_session_factory(self._engine)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def initialize(self) -> None:
        await create_tables(self._engine)

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("SQL repository closed")

    # ── Storage primitives ────────────────────────────────────────────────

    async def _fetch(self, document_id: str) -> Document | None:
        async with session_scope(self._sessions) as session:
            row = await session.get(DocumentRow, document_id)
            return _to_document(row) if row else None

    async def _insert(self, document: Document, event: ProcessingEvent) -> None:
        async with session_scope(self._sessions) as session:
            session.add(
                DocumentRow(
                    id=document.id,
                    owner_id=document.owner_id,
                    name=document.name,
                    filename=document.filename,
                    content_kind=document.content_kind.value,
                    size_bytes=document.size_bytes,
                    status=document.status.value,
                    progress=document.progress,
                    event_seq=event.sequence,
                    created_at=document.created_at,
                    updated_at=document.updated_at,
                )
            )
            await session.flush()
            session.add(_event_row(event))

    async def _commit(self, document: Document, event: ProcessingEvent) -> None:
        async with session_scope(self._sessions) as session:
            row = await session.get(DocumentRow, document.id)
            row.status       = document.status.value
            row.progress     = document.progress
            row.error        = document.error
            row.updated_at   = document.updated_at
            row.word_count   = document.word_count
            row.chunk_count  = document.chunk_count
            row.text_preview = document.text_preview
            row.page_count   = document.page_count
            row.event_seq    = event.sequence

            session.add(_event_row(event))
            await session.execute(
                delete(ProcessingEventRow).where(
                    ProcessingEventRow.document_id == document.id,
                    ProcessingEventRow.sequence <= event.sequence - self._event_cap,
                )
            )

    async def _last_sequence(self, document_id: str) -> int:
        async with session_scope(self._sessions) as session:
            seq = await session.scalar(
                select(DocumentRow.event_seq).where(DocumentRow.id == document_id)
            )
            return seq or 0

    async def _store_content(self, content: DocumentContent) -> None:
        async with session_scope(self._sessions) as session:
            await session.merge(
                DocumentContentRow(
                    document_id=content.document_id,
                    full_text=content.full_text,
                    chunks=[asdict(c) for c in content.chunks],
                )
            )

    async def _fetch_content(self, document_id: str) -> DocumentContent | None:
        async with session_scope(self._sessions) as session:
            row = await session.get(DocumentContentRow, document_id)
            if row is None:
                return None
            return DocumentContent(
                document_id=row.document_id,
                full_text=row.full_text,
                chunks=[Chunk(**c) for c in row.chunks],
            )

    async def _list_owner(self, owner_id: str) -> list[Document]:
        async with session_scope(self._sessions) as session:
            result = await session.scalars(
                select(DocumentRow)
                .where(DocumentRow.owner_id == owner_id)
                .order_by(DocumentRow.created_at.desc(), DocumentRow.id.desc())
            )
            return [_to_document(r) for r in result]

    async def _recent_events(self, document_id: str, limit: int) -> list[ProcessingEvent]:
        async with session_scope(self._sessions) as session:
            result = await session.scalars(
                select(ProcessingEventRow)
                .where(ProcessingEventRow.document_id == document_id)
                .order_by(ProcessingEventRow.sequence.desc())
                .limit(limit)
            )
            return [_to_event(r) for r in result]

    async def _list_stale(self, older_than: datetime) -> list[Document]:
        terminal = [DocumentStatus.COMPLETED.value, DocumentStatus.FAILED.value]
        async with session_scope(self._sessions) as session:
            result = await session.scalars(
                select(DocumentRow).where(
                    DocumentRow.status.not_in(terminal),
                    DocumentRow.updated_at < older_than,
                )
            )
            return [_to_document(r) for r in result]

    async def _status_counts(self) -> dict[DocumentStatus, int]:
        async with session_scope(self._sessions) as session:
            result = await session.execute(
                select(DocumentRow.status, func.count()).group_by(DocumentRow.status)
            )
            return {DocumentStatus(status): count for status, count in result.all()}

    async def _owner_count(self) -> int:
        async with session_scope(self._sessions) as session:
            return await session.scalar(
                select(func.count(func.distinct(DocumentRow.owner_id)))
            ) or 0
