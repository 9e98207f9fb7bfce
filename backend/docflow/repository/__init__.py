from docflow.repository.base import DocumentRepository, KeyedLock
from docflow.repository.factory import build_repository
from docflow.repository.memory import InMemoryDocumentRepository

__all__ = ["DocumentRepository", "KeyedLock", "InMemoryDocumentRepository", "build_repository"]
