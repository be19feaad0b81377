"""Status slot read endpoints: point read and SSE stream."""
from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from orchestra.core.runtime import Runtime, get_runtime
from orchestra.core.state_machine import is_terminal, parse_step
from orchestra.models.status import OrchestrationStatus, StatusDocument

router = APIRouter()
logger = logging.getLogger(__name__)


def _sse_headers() -> dict[str, str]:
    """Standard SSE response headers."""
    return {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }


def _emit(snapshot: StatusDocument) -> str:
    return f"data: {json.dumps(snapshot, separators=(',', ':'))}\n\n"


def _is_final(snapshot: StatusDocument) -> bool:
    if snapshot.get("ready") is True:
        return True
    step = parse_step(snapshot.get("step"))
    return step is not None and is_terminal(step)


@router.get(
    "/orchestrations/{user_id}/status",
    response_model=None,
    responses={
        200: {"model": OrchestrationStatus, "description": "Latest status document"},
        404: {"description": "No status recorded for this user"},
    },
)
async def get_status(
    user_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """Return the user's latest status document.

    The stored slot is returned as-is; ``OrchestrationStatus`` documents its shape.
    """
    document = await runtime.status_store.get(user_id)
    if document is None:
        return JSONResponse(
            status_code=404,
            content={"message": f"No orchestration status for user {user_id}."},
        )
    return JSONResponse(content=document, headers={"Cache-Control": "no-store"})


@router.get("/orchestrations/{user_id}/status/stream")
async def stream_status(
    user_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> StreamingResponse:
    """
    Stream status snapshots via SSE.

    Emits the current snapshot (if any), then each change. Intermediate
    snapshots may be coalesced. The stream closes after a terminal snapshot
    (``ready=true`` or ``step=error``).
    """
    store = runtime.status_store

    async def event_stream() -> AsyncIterator[str]:
        async with aclosing(store.subscribe(user_id)) as snapshots:  # type: ignore[type-var]
            async for snapshot in snapshots:
                yield _emit(snapshot)
                if _is_final(snapshot):
                    logger.debug(f"Status stream for {user_id} reached {snapshot.get('step')}")
                    break

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=_sse_headers(),
    )
