"""
Orchestration intake endpoint.

POST /orchestrations accepts a generation request and returns 202 as soon as
the task is queued. Progress is read from the status endpoints.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from orchestra.config import settings
from orchestra.core.runtime import Runtime, get_runtime
from orchestra.errors import ValidationError
from orchestra.models.responses import AcceptedResponse, ErrorResponse

router = APIRouter()
logger = logging.getLogger(__name__)

# Rate limiter - uses IP address as key
limiter = Limiter(key_func=get_remote_address)


@router.post(
    "/orchestrations",
    status_code=202,
    response_model=AcceptedResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing userId or invalid fields"},
        405: {"description": "Method not allowed"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Generation queue is full"},
    },
)
@limiter.limit(settings.intake_rate_limit)
async def start_orchestration(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> AcceptedResponse:
    """
    Start an orchestration run for ``userId``.

    Overwrites the user's status slot with ``step=init`` and returns
    immediately with the run id and generated base file name.
    """
    try:
        payload = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON.") from e
    return await runtime.intake.submit(payload)
