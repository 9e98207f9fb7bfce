"""
Realtime API Router
GET /api/v1/realtime/documents  — Server-Sent Events

Streams the caller's documents:
  event: initial_documents   snapshot at connect time
  event: document_update     a document was created
  event: document_status     a document changed state
  event: heartbeat           periodic stats (total_documents, queue_depth,
                             active_subscribers)

Idle periods are filled with ": keepalive" comments once per second.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from docflow.api.deps import OwnerId, Runtime
from docflow.realtime.gateway import stream_owner_events

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/realtime",
    tags=["Realtime"],
)


@router.get(
    "/documents",
    summary="Stream document lifecycle events via Server-Sent Events",
    response_class=StreamingResponse,
)
async def stream_documents(
    request:  Request,
    owner_id: OwnerId,
    runtime:  Runtime,
) -> StreamingResponse:
    logger.debug("SSE connect | owner=%s", owner_id)
    return StreamingResponse(
        stream_owner_events(
            runtime.broadcaster,
            owner_id,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control":     "no-cache",
            "Connection":        "keep-alive",
            "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
        },
    )
