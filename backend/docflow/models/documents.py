"""
SQLAlchemy ORM Models — Documents, Contents & Processing Events

Backing tables for SqlDocumentRepository. Using SQLAlchemy 2.x mapped classes
for full async support; the same models run on PostgreSQL (asyncpg) and on
SQLite (aiosqlite) for local development and tests.

Every table is keyed by document id and carries owner_id, so per-owner
listing and stats never need a join.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# documents
# ---------------------------------------------------------------------------

class DocumentRow(Base):
    """
    One uploaded artifact and its lifecycle state.

    event_seq is the last ProcessingEvent sequence issued for this document;
    it is bumped in the same transaction that inserts the event.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploading', 'parsing', 'processing', 'generating', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="documents_progress_check"),
        Index("idx_documents_owner_id", "owner_id"),
        Index("idx_documents_status",   "owner_id", "status"),
    )

    id:           Mapped[str] = mapped_column(String(160), primary_key=True)
    owner_id:     Mapped[str] = mapped_column(String(128), nullable=False)
    name:         Mapped[str] = mapped_column(Text, nullable=False)
    filename:     Mapped[str] = mapped_column(Text, nullable=False)
    content_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    size_bytes:   Mapped[int] = mapped_column(BigInteger, nullable=False)

    status:   Mapped[str]           = mapped_column(String(16), nullable=False, default="uploading")
    progress: Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    error:    Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    word_count:   Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chunk_count:  Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    text_preview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    page_count:   Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    event_seq:  Mapped[int]      = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<DocumentRow id={self.id} owner={self.owner_id} status={self.status}>"


# ---------------------------------------------------------------------------
# document_contents
# ---------------------------------------------------------------------------

class DocumentContentRow(Base):
    """Extracted text plus chunk list (JSON array of chunk dicts)."""

    __tablename__ = "document_contents"

    document_id: Mapped[str] = mapped_column(
        String(160),
        ForeignKey("documents.id", ondelete="CASCADE"),
        primary_key=True,
    )
    full_text: Mapped[str]  = mapped_column(Text, nullable=False)
    chunks:    Mapped[list] = mapped_column(JSON, nullable=False, default=list)


# ---------------------------------------------------------------------------
# processing_events
# ---------------------------------------------------------------------------

class ProcessingEventRow(Base):
    """
    Append-only event log, capped per document by the repository
    (oldest rows are deleted once the cap is exceeded).
    """

    __tablename__ = "processing_events"
    __table_args__ = (
        Index("idx_processing_events_doc_seq", "document_id", "sequence", unique=True),
    )

    # BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    document_id: Mapped[str] = mapped_column(
        String(160),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id:  Mapped[str]           = mapped_column(String(128), nullable=False)
    sequence:  Mapped[int]           = mapped_column(Integer, nullable=False)
    event:     Mapped[str]           = mapped_column(String(32), nullable=False)
    status:    Mapped[str]           = mapped_column(String(16), nullable=False)
    progress:  Mapped[int]           = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime]      = mapped_column(DateTime(timezone=True), nullable=False)
    data:      Mapped[dict]          = mapped_column(JSON, nullable=False, default=dict)
    error:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
