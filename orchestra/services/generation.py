"""Note-generation Service Client.

Client for the external MIDI generation service. The service is an opaque
collaborator with one contract:

    POST {base_url}/generate
        {text_input, parameters, tempo, structure, maxDurationSeconds}
    → binary MIDI, or JSON ``{"midi_url": ...}`` pointing at the file

When the service answers with a URL the file is fetched in a second call
under the same retry/timeout policy, so callers always get bytes back.
"""
from __future__ import annotations

import logging

import httpx

from orchestra.config import settings
from orchestra.errors import UpstreamServiceError
from orchestra.models.requests import GenerationRequest
from orchestra.services.upstream import (
    CONNECTION_LIMITS,
    PROBE_TIMEOUT,
    call_timeout,
    send_with_retry,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "generation"

_JSON_URL_KEYS = ("midi_url", "midiUrl")


def compose_prompt(request: GenerationRequest) -> str:
    """Natural-language composition brief built from the musical parameters."""
    octave_range = ", ".join(request.octave_range) if request.octave_range else "N/A"
    return (
        f"Given the following musical parameters: Key: {request.key}, "
        f"Scale: {request.scale}, Tempo: {request.tempo} BPM, Mood: {request.mood}, "
        f"Genre: {request.genre}, Phrase Type: {request.phrase_type}, "
        f"Voice Type: {request.voice_type}, Octave Range: {octave_range}, "
        f"MIDI Length: {request.midi_length} seconds, Beat: {request.beat}, "
        "generate a corresponding musical composition."
    )


class GenerationClient:
    """
    Async client for the note-generation service.

    Uses a long-lived httpx.AsyncClient with keepalive connection pooling.
    Call warmup() from the FastAPI lifespan to pre-establish the connection
    before the first task is processed.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: int | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.generation_base_url).rstrip("/")
        self.timeout = timeout or settings.generation_timeout
        self.max_retries = settings.upstream_max_retries if max_retries is None else max_retries
        self.backoff_seconds = (
            settings.upstream_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=call_timeout(self.timeout),
                limits=CONNECTION_LIMITS,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def warmup(self) -> None:
        """Open the keepalive connection ahead of the first generation."""
        if await self.health_check():
            logger.info("Generation service connection warmed up ✓")
        else:
            logger.warning(
                "Generation service warmup: health check failed, "
                "runs will report an error until it is reachable"
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """Check if the generation service is healthy (3 s probe)."""
        try:
            response = await self.client.get(f"{self.base_url}/health", timeout=PROBE_TIMEOUT)
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"Generation service health check failed: {e}")
            return False

    def build_payload(self, request: GenerationRequest) -> dict[str, object]:
        """Request body for ``POST /generate``."""
        return {
            "text_input": compose_prompt(request),
            "parameters": request.musical_parameters(),
            "tempo": request.tempo,
            "structure": request.phrase_type,
            "maxDurationSeconds": request.max_duration_seconds or settings.default_max_duration_seconds,
        }

    async def _send(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        return await send_with_retry(
            SERVICE_NAME,
            lambda: self.client.request(method, url, **kwargs),  # type: ignore[arg-type]
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
        )

    async def generate(self, request: GenerationRequest) -> bytes:
        """Generate a note-sequence file for ``request`` and return its bytes.

        Raises:
            UpstreamServiceError: transport failure, non-2xx response, or a
                response that carries neither MIDI bytes nor a MIDI URL.
        """
        response = await self._send(
            "POST", f"{self.base_url}/generate", json=self.build_payload(request)
        )
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            if not response.content:
                raise UpstreamServiceError(SERVICE_NAME, "Generation service returned an empty MIDI payload.")
            logger.info(f"🎼 Generated MIDI for {request.user_id} ({len(response.content)} bytes)")
            return response.content

        data = response.json()
        midi_url = None
        if isinstance(data, dict):
            midi_url = next((data[k] for k in _JSON_URL_KEYS if isinstance(data.get(k), str)), None)
        if not midi_url:
            raise UpstreamServiceError(SERVICE_NAME, "Generation service did not return a MIDI URL.")

        logger.info(f"🎼 Downloading generated MIDI for {request.user_id} from {midi_url}")
        download = await self._send("GET", midi_url)
        if not download.content:
            raise UpstreamServiceError(SERVICE_NAME, "Generated MIDI file is empty.")
        return download.content


# Module-level client, reused across tasks for connection pooling.
_shared_client: GenerationClient | None = None


def get_generation_client() -> GenerationClient:
    """Return the process-wide GenerationClient, creating it on first call."""
    global _shared_client
    if _shared_client is None:
        _shared_client = GenerationClient()
    return _shared_client


async def close_generation_client() -> None:
    """Close the shared client (FastAPI lifespan shutdown)."""
    global _shared_client
    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
