"""
Streaming Gateway — Server-Sent Events relay for EventBroadcaster

Frames every broadcaster message as an SSE event whose `event:` line carries
the message type and whose `data:` line carries the JSON message.  The first
event of every stream is `initial_documents` (the snapshot taken at
subscription time); live messages follow.  Closing the stream, a client
disconnect, or broadcaster shutdown unsubscribes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable

from docflow.realtime.broadcaster import EventBroadcaster, SubscriptionClosed

logger = logging.getLogger(__name__)

KEEPALIVE = ": keepalive\n\n"


def sse_event(event_name: str, data: dict[str, Any]) -> str:
    """Format a Server-Sent Event with event name and JSON data."""
    return f"event: {event_name}\ndata: {json.dumps(data, default=str)}\n\n"


async def stream_owner_events(
    broadcaster:     EventBroadcaster,
    owner_id:        str,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    poll_interval:   float = 1.0,
) -> AsyncGenerator[str, None]:
    """Yield SSE-formatted events until the client or the broadcaster goes away."""
    subscription = await broadcaster.subscribe(owner_id)
    try:
        yield sse_event(
            "initial_documents",
            {
                "type":            "initial_documents",
                "subscription_id": subscription.id,
                "documents":       [d.model_dump(mode="json") for d in subscription.snapshot],
            },
        )

        while True:
            # Respect client disconnection
            if is_disconnected is not None and await is_disconnected():
                logger.debug("SSE client disconnected | sub=%s owner=%s", subscription.id, owner_id)
                break

            try:
                message = await subscription.receive(timeout=poll_interval)
            except SubscriptionClosed as exc:
                logger.debug("SSE stream closed | sub=%s reason=%s", subscription.id, exc)
                break

            if message is None:
                # keepalive comment stops proxies from closing an idle connection
                yield KEEPALIVE
                continue

            yield sse_event(message["type"], message)
    finally:
        broadcaster.unsubscribe(subscription)
