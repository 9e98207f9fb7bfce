"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, memory_repository, sql_repository,
                    runtime, async_client, sample file bytes, factories

Environment strategy:
  - The in-memory repository backs every test unless it asks for
    `sql_repository` (SQLite in memory via aiosqlite, no server needed).
  - The job queue runs real asyncio workers with millisecond backoff so
    retry paths finish quickly.
  - Heartbeat and watchdog intervals are pushed out to an hour; tests that
    need them call send_heartbeat() / fail_stale_documents() directly.

How to run:
  pytest                               # all tests
  pytest -m unit                       # unit tests only (fast, no I/O)
  pytest -m integration                # FastAPI stack via httpx ASGITransport
  pytest backend/tests/unit/test_chunking.py
"""

from __future__ import annotations

import asyncio
import io
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("APP_ENV",            "development")
os.environ.setdefault("DEBUG",              "false")
os.environ.setdefault("REPOSITORY_BACKEND", "memory")

TEST_OWNER  = "owner-alpha"
OTHER_OWNER = "owner-beta"

FIFTY_WORDS = " ".join(f"word{i}" for i in range(50))


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings():
    from docflow.core.config import Settings

    return Settings(
        worker_pool_size=2,
        job_max_attempts=3,
        job_retry_delay_seconds=0.01,
        job_timeout_seconds=5.0,
        heartbeat_interval_seconds=3600.0,
        watchdog_interval_seconds=3600.0,
        chunk_size=1000,
        chunk_overlap=200,
    )


@pytest.fixture
def owner_id() -> str:
    return TEST_OWNER


@pytest.fixture
def other_owner_id() -> str:
    return OTHER_OWNER


# ─────────────────────────────────────────────────────────────────────────────
# Repositories
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def memory_repository():
    from docflow.repository.memory import InMemoryDocumentRepository
    return InMemoryDocumentRepository(event_history_cap=100)


@pytest_asyncio.fixture
async def sql_repository():
    from docflow.repository.sql import SqlDocumentRepository

    repo = SqlDocumentRepository("sqlite+aiosqlite://", event_history_cap=100)
    await repo.initialize()
    yield repo
    await repo.close()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_repository(request):
    """Runs the test once per backend."""
    from docflow.repository.memory import InMemoryDocumentRepository
    from docflow.repository.sql import SqlDocumentRepository

    if request.param == "memory":
        yield InMemoryDocumentRepository(event_history_cap=100)
        return

    repo = SqlDocumentRepository("sqlite+aiosqlite://", event_history_cap=100)
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
def make_new_document(owner_id):
    """
    Factory fixture: returns a function that builds NewDocument inputs.

    Usage:
        new = make_new_document()
        new = make_new_document(owner="someone-else", kind="pdf")
    """
    from docflow.schemas.documents import ContentKind, NewDocument

    def _build(
        owner:    str | None = None,
        name:     str = "Quarterly report",
        filename: str = "report.txt",
        kind:     str = "txt",
        size:     int = 128,
    ) -> NewDocument:
        return NewDocument(
            owner_id=owner or owner_id,
            name=name,
            filename=filename,
            content_kind=ContentKind(kind),
            size_bytes=size,
        )

    return _build


@pytest.fixture
def wait_for_status():
    """
    Returns an async helper that polls a repository until the document
    reaches one of `statuses` (or fails the test after `timeout` seconds).
    """
    async def _wait(repository, document_id: str, *statuses, timeout: float = 5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            document = await repository.get(document_id)
            if document.status in statuses:
                return document
            if asyncio.get_running_loop().time() > deadline:
                pytest.fail(
                    f"document {document_id} stuck in {document.status.value}, "
                    f"expected one of {[s.value for s in statuses]}"
                )
            await asyncio.sleep(0.01)

    return _wait


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_txt_bytes() -> bytes:
    """Plain text, exactly fifty words."""
    return FIFTY_WORDS.encode()


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal PDF — passes the %PDF magic-byte check, carries no text."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"startxref\n195\n%%EOF"
    )


@pytest.fixture
def sample_docx_bytes() -> bytes:
    """A real DOCX built with python-docx."""
    import docx

    document = docx.Document()
    document.add_paragraph("Ingestion pipelines turn uploads into searchable text.")
    document.add_paragraph("")
    document.add_paragraph("Each paragraph becomes part of the extracted content.")
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable — rejected by content kind resolution."""
    return b"MZ\x90\x00" + b"\x00" * 100


# ─────────────────────────────────────────────────────────────────────────────
# Runtime + FastAPI test client
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def runtime(test_settings, memory_repository):
    """Started IngestionRuntime on the in-memory backend."""
    from docflow.services.runtime import build_runtime

    rt = build_runtime(test_settings, repository=memory_repository)
    await rt.start()
    yield rt
    await rt.stop()


@pytest_asyncio.fixture
async def async_client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client bound to the started runtime.

    ASGITransport does not drive the lifespan; the runtime fixture owns
    start/stop instead.
    """
    from docflow.main import create_app

    app = create_app(runtime)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
