"""Response models for the orchestration API."""
from __future__ import annotations

from orchestra.models.base import CamelModel


class AcceptedResponse(CamelModel):
    """Body of the ``202 Accepted`` intake response."""

    message: str
    run_id: str
    base_name: str


class ErrorResponse(CamelModel):
    """Body of 4xx/5xx responses raised by orchestration routes."""

    message: str
