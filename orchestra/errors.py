"""Error taxonomy for the orchestration service.

``ValidationError`` is raised synchronously at intake and maps to HTTP 400.
Everything else happens after a task is queued and is only ever surfaced
through the caller's status slot.
"""
from __future__ import annotations

import json

import httpx


class OrchestraError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(OrchestraError):
    """Bad or missing request fields. Never written to the status slot."""


class StorageError(OrchestraError):
    """Artifact store failure. Fatal for uploads; deletes never raise it."""


class NotFoundError(OrchestraError):
    """Requested artifact or record does not exist."""


class UpstreamServiceError(OrchestraError):
    """Non-2xx response or transport failure from an external service.

    ``str(exc)`` is the text written verbatim into ``OrchestrationStatus.error``:
    ``"[<status>] <message>"`` for HTTP failures, the transport error text
    otherwise.
    """

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.service = service
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(f"[{status_code}] {message}" if status_code is not None else message)

    @classmethod
    def from_response(cls, service: str, response: httpx.Response) -> "UpstreamServiceError":
        """Build an error from a non-2xx response, preferring ``error.message``."""
        text = response.content.decode("utf-8", errors="replace")
        message = text
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            err = parsed.get("error")
            if isinstance(err, dict) and isinstance(err.get("message"), str):
                message = err["message"]
            else:
                message = json.dumps(parsed)
        elif parsed is not None:
            message = json.dumps(parsed)
        return cls(service, message, status_code=response.status_code, body=text)

    @classmethod
    def from_transport(cls, service: str, exc: httpx.TransportError) -> "UpstreamServiceError":
        """Build an error from an httpx transport failure (connect, read, timeout)."""
        return cls(service, str(exc) or f"{type(exc).__name__} contacting {service} service")
