"""
Event Broadcaster — per-owner pub/sub for live document status

Topology:
  topic (owner_id) ──► Subscription ──► bounded asyncio.Queue ──► SSE stream
                   └─► Subscription ──► ...

Delivery contract:
  - publish() never blocks and never awaits: each subscriber has its own
    bounded queue, filled with put_nowait.  A subscriber whose queue is full
    is disconnected rather than slowing the publisher or its peers.
  - Messages reach each subscriber in publish order.  Repository listeners
    run inside the per-document critical section, so per-document ordering
    matches the event log.
  - subscribe() registers the subscription BEFORE taking the snapshot of the
    owner's documents.  A change racing the join may therefore appear both
    in the snapshot and as a live message, but can never be missed.
  - Best effort, in memory: nothing is replayed after a reconnect beyond
    the fresh snapshot.

Message shapes (JSON-serialisable dicts, "type" names the SSE event):
  initial_documents  {"documents": [...]}                 first message of a stream
  document_update    {"document": {...}, "event": {...}}  document created
  document_status    {"document": {...}, "event": {...}}  any later transition
  heartbeat          {"stats": {total_documents, queue_depth, active_subscribers}}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from docflow.repository.base import DocumentRepository
from docflow.schemas.documents import Document, EventKind, ProcessingEvent

logger = logging.getLogger(__name__)

_CLOSED = object()   # queue sentinel


class SubscriptionClosed(Exception):
    """Raised by Subscription.receive() once closed and drained."""


class Subscription:
    """One live stream for one owner."""

    def __init__(self, owner_id: str, queue_size: int = 256) -> None:
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.snapshot: list[Document] = []
        self.created_at = datetime.now(timezone.utc)
        self.close_reason: str | None = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, message: dict[str, Any]) -> bool:
        """Non-blocking enqueue; False if the subscription is closed or full."""
        if self._closed or self._queue.full():
            return False
        self._queue.put_nowait(message)
        return True

    def close(self, reason: str = "unsubscribed") -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        # A full queue needs no sentinel: the reader drains it and sees _closed.
        if not self._queue.full():
            self._queue.put_nowait(_CLOSED)

    async def receive(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next message, or None if `timeout` elapses first."""
        if self._closed and self._queue.empty():
            raise SubscriptionClosed(self.close_reason)
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            raise SubscriptionClosed(self.close_reason)
        return item

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self

    async def __anext__(self) -> dict[str, Any]:
        try:
            return await self.receive()
        except SubscriptionClosed:
            raise StopAsyncIteration from None


class EventBroadcaster:
    """
    Constructor args:
        repository         : source of snapshots and of document events
        queue_size         : per-subscriber buffer before disconnection
        heartbeat_interval : seconds between heartbeat messages
        queue_depth        : callable returning the job queue depth (for heartbeats)
    """

    def __init__(
        self,
        repository:         DocumentRepository,
        *,
        queue_size:         int   = 256,
        heartbeat_interval: float = 30.0,
        queue_depth:        Callable[[], int] | None = None,
    ) -> None:
        self._repository = repository
        self._queue_size = queue_size
        self._heartbeat_interval = heartbeat_interval
        self._queue_depth = queue_depth
        self._topics: dict[str, dict[str, Subscription]] = {}
        self._heartbeat_task: asyncio.Task | None = None
        repository.add_listener(self._on_document_event)

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def subscribe(self, owner_id: str) -> Subscription:
        subscription = Subscription(owner_id, self._queue_size)
        self._topics.setdefault(owner_id, {})[subscription.id] = subscription
        try:
            subscription.snapshot = await self._repository.list_by_owner(owner_id)
        except Exception:
            self.unsubscribe(subscription)
            raise
        logger.info(
            "Subscriber joined | sub=%s owner=%s snapshot=%d active=%d",
            subscription.id, owner_id, len(subscription.snapshot), self.subscriber_count,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription, reason: str = "unsubscribed") -> None:
        """Idempotent: unknown or already-removed subscriptions are ignored."""
        subscription.close(reason)
        topic = self._topics.get(subscription.owner_id)
        if topic is None or topic.pop(subscription.id, None) is None:
            return
        if not topic:
            del self._topics[subscription.owner_id]
        logger.info(
            "Subscriber left | sub=%s owner=%s reason=%s",
            subscription.id, subscription.owner_id, reason,
        )

    @property
    def subscriber_count(self) -> int:
        return sum(len(topic) for topic in self._topics.values())

    def subscribers_for(self, owner_id: str) -> int:
        return len(self._topics.get(owner_id, {}))

    # ── Publishing ────────────────────────────────────────────────────────

    def publish(self, owner_id: str, message: dict[str, Any]) -> int:
        """Fan `message` out to the owner's subscribers; returns deliveries."""
        topic = self._topics.get(owner_id)
        if not topic:
            return 0

        delivered = 0
        for subscription in list(topic.values()):
            if subscription.offer(message):
                delivered += 1
                continue
            logger.warning(
                "Subscriber queue overflow, disconnecting | sub=%s owner=%s pending=%d",
                subscription.id, owner_id, subscription.pending,
            )
            self.unsubscribe(subscription, reason="overflow")
        return delivered

    def _on_document_event(self, document: Document, event: ProcessingEvent) -> None:
        message_type = (
            "document_update" if event.event is EventKind.UPLOAD_START else "document_status"
        )
        self.publish(
            document.owner_id,
            {
                "type":     message_type,
                "document": document.model_dump(mode="json"),
                "event":    event.model_dump(mode="json"),
            },
        )

    # ── Heartbeat ─────────────────────────────────────────────────────────

    async def heartbeat_stats(self) -> dict[str, int]:
        repo_stats = await self._repository.stats()
        return {
            "total_documents":    repo_stats["total_documents"],
            "queue_depth":        self._queue_depth() if self._queue_depth else 0,
            "active_subscribers": self.subscriber_count,
        }

    async def send_heartbeat(self) -> int:
        """Publish one heartbeat on every active topic; returns topics reached."""
        owners = list(self._topics)
        if not owners:
            return 0
        message = {
            "type":      "heartbeat",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stats":     await self.heartbeat_stats(),
        }
        for owner_id in owners:
            self.publish(owner_id, message)
        return len(owners)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.send_heartbeat()
            except Exception:
                logger.exception("Heartbeat failed")

    async def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(), name="docflow-heartbeat"
            )

    async def stop(self) -> None:
        """Stop heartbeats and close every open subscription."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        for topic in list(self._topics.values()):
            for subscription in list(topic.values()):
                self.unsubscribe(subscription, reason="shutdown")
        self._repository.remove_listener(self._on_document_event)

    def stats(self) -> dict[str, int]:
        return {"topics": len(self._topics), "subscribers": self.subscriber_count}
