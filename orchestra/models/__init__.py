"""Pydantic models for the orchestration wire formats."""
from orchestra.models.base import CamelModel, to_camel, utc_now
from orchestra.models.requests import GenerationRequest, parse_generation_request
from orchestra.models.responses import AcceptedResponse
from orchestra.models.status import OrchestrationStatus, StatusDocument

__all__ = [
    "AcceptedResponse",
    "CamelModel",
    "GenerationRequest",
    "OrchestrationStatus",
    "StatusDocument",
    "parse_generation_request",
    "to_camel",
    "utc_now",
]
