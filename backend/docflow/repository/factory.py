"""
Repository Factory

Selects the DocumentRepository backend (memory | sql) based on config.
The rest of the app only calls build_repository(); it never touches the
concrete classes directly.
"""

from __future__ import annotations

from docflow.core.config import Settings
from docflow.repository.base import DocumentRepository


def build_repository(settings: Settings) -> DocumentRepository:
    backend = settings.repository_backend.lower()

    if backend == "memory":
        from docflow.repository.memory import InMemoryDocumentRepository
        return InMemoryDocumentRepository(event_history_cap=settings.event_history_cap)

    if backend == "sql":
        from docflow.repository.sql import SqlDocumentRepository
        return SqlDocumentRepository(
            database_url=settings.database_url,
            event_history_cap=settings.event_history_cap,
            echo=settings.db_echo_sql,
        )

    raise ValueError(
        f"Unknown repository backend: '{backend}'. "
        f"Valid options: 'memory', 'sql'"
    )
