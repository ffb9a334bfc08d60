"""
Server-sent progress events for one execution
"""

from datetime import datetime
from typing import AsyncIterator, Dict, Any, Optional
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from api.dependencies import get_broadcaster
from core.config import settings
from ingestion.progress import ProgressBroadcaster, ProgressStatus
import asyncio
import json
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["Progress"])

TERMINAL_STATUSES = {ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.CANCELLED}

# Stage name used by the orchestrator for run-level events
RUN_STAGE = "sync"


async def progress_events(
    broadcaster: ProgressBroadcaster,
    execution_id: int,
    max_seconds: float,
    heartbeat_seconds: float = 15.0
) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield a `connected` event, then every progress update of the execution
    until the run reaches a terminal status or `max_seconds` elapse.
    """
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue" = asyncio.Queue()
    close_signal = asyncio.Event()
    deadline = loop.time() + max_seconds

    yield {
        "type": "connected",
        "executionId": execution_id,
        "timestamp": datetime.utcnow().isoformat(),
    }

    subscription = broadcaster.subscribe(
        execution_id,
        queue.put_nowait,
        close_signal=close_signal,
        max_lifetime=max_seconds,
    )
    try:
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                yield {"type": "timeout", "executionId": execution_id, "timestamp": datetime.utcnow().isoformat()}
                break

            try:
                update = await asyncio.wait_for(queue.get(), timeout=min(heartbeat_seconds, remaining))
            except asyncio.TimeoutError:
                yield {"type": "heartbeat", "executionId": execution_id, "timestamp": datetime.utcnow().isoformat()}
                continue

            yield update.to_event(execution_id)

            if update.stage == RUN_STAGE and update.status in TERMINAL_STATUSES:
                break
    finally:
        close_signal.set()
        subscription.unsubscribe()
        logger.debug(f"Progress stream for execution {execution_id} closed")


async def _sse(events: AsyncIterator[Dict[str, Any]]) -> AsyncIterator[str]:
    async for event in events:
        yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"


@router.get("/progress/{execution_id}")
async def stream_progress(
    execution_id: int,
    max_seconds: Optional[float] = Query(None, gt=0, description="Close the stream after this many seconds"),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster)
):
    """Stream progress of an execution as text/event-stream"""
    duration = min(max_seconds or settings.PROGRESS_STREAM_MAX_SECONDS, settings.PROGRESS_STREAM_MAX_SECONDS)
    return StreamingResponse(
        _sse(progress_events(broadcaster, execution_id, duration)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
