"""
Ingestion Runtime — wires repository, job queue, broadcaster and service

One IngestionRuntime per API process.  create_app() builds it (or accepts a
pre-built one from tests) and drives start()/stop() from the FastAPI
lifespan:

  start:  repository.initialize → broadcaster heartbeat → worker pool → watchdog
  stop:   watchdog → worker pool (grace period) → broadcaster (closes streams)
          → repository.close
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from docflow.core.config import Settings, get_settings
from docflow.processing.extractor import TextExtractor
from docflow.realtime.broadcaster import EventBroadcaster
from docflow.repository.base import DocumentRepository
from docflow.repository.factory import build_repository
from docflow.services.ingestion import IngestionService
from docflow.workers.queue import JobQueue
from docflow.workers.tasks import INGEST_JOB, make_document_handler, run_watchdog

logger = logging.getLogger(__name__)


@dataclass
class IngestionRuntime:
    settings:    Settings
    repository:  DocumentRepository
    queue:       JobQueue
    broadcaster: EventBroadcaster
    service:     IngestionService
    _watchdog:   asyncio.Task | None = field(default=None, repr=False)
    _started:    bool = field(default=False, repr=False)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.repository.initialize()
        await self.broadcaster.start()
        await self.queue.start(self.settings.worker_pool_size)
        self._watchdog = asyncio.create_task(
            run_watchdog(
                self.repository,
                self.settings.watchdog_interval_seconds,
                self.settings.stale_document_seconds,
            ),
            name="docflow-watchdog",
        )
        self._started = True
        logger.info(
            "Runtime started | backend=%s workers=%d",
            self.settings.repository_backend, self.settings.worker_pool_size,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        if self._watchdog is not None:
            self._watchdog.cancel()
            await asyncio.gather(self._watchdog, return_exceptions=True)
            self._watchdog = None
        await self.queue.stop()
        await self.broadcaster.stop()
        await self.repository.close()
        self._started = False
        logger.info("Runtime stopped")

    async def stats(self) -> dict[str, Any]:
        return {
            "documents":   await self.repository.stats(),
            "queue":       self.queue.stats(),
            "subscribers": self.broadcaster.stats(),
        }


def build_runtime(
    settings:   Settings | None = None,
    repository: DocumentRepository | None = None,
    extractor:  TextExtractor | None = None,
) -> IngestionRuntime:
    settings = settings or get_settings()
    repository = repository or build_repository(settings)

    queue = JobQueue(
        repository,
        max_attempts=settings.job_max_attempts,
        retry_delay=settings.job_retry_delay_seconds,
        timeout=settings.job_timeout_seconds,
        default_priority=settings.default_job_priority,
        ocr_timeout_multiplier=settings.ocr_timeout_multiplier,
    )
    queue.register(INGEST_JOB, make_document_handler(repository, settings, extractor))

    broadcaster = EventBroadcaster(
        repository,
        queue_size=settings.subscriber_queue_size,
        heartbeat_interval=settings.heartbeat_interval_seconds,
        queue_depth=lambda: queue.depth,
    )

    return IngestionRuntime(
        settings=settings,
        repository=repository,
        queue=queue,
        broadcaster=broadcaster,
        service=IngestionService(repository, queue, settings),
    )
