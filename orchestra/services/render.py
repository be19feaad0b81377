"""Audio Render Service Client.

Sends a note-sequence file to the external render service as a multipart
upload and returns the rendered MP3 bytes:

    POST {base_url}/render   (multipart, file field ``midi_file``)
    → audio/mpeg
"""
from __future__ import annotations

import logging

import httpx

from orchestra.config import settings
from orchestra.errors import UpstreamServiceError
from orchestra.services.upstream import (
    CONNECTION_LIMITS,
    PROBE_TIMEOUT,
    call_timeout,
    send_with_retry,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "render"


class RenderClient:
    """Async client for the audio-render service."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: int | None = None,
        upload_field: str | None = None,
        max_retries: int | None = None,
        backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.render_base_url).rstrip("/")
        self.timeout = timeout or settings.render_timeout
        self.upload_field = upload_field or settings.render_upload_field
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
            )
        return self._client

    async def warmup(self) -> None:
        if await self.health_check():
            logger.info("Render service connection warmed up ✓")
        else:
            logger.warning("Render service warmup: health check failed")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        try:
            response = await self.client.get(f"{self.base_url}/health", timeout=PROBE_TIMEOUT)
            return response.status_code == 200
        except Exception as e:
            logger.warning(f"Render service health check failed: {e}")
            return False

    async def render(self, midi: bytes, filename: str) -> bytes:
        """Render ``midi`` to MP3.

        Raises:
            UpstreamServiceError: transport failure, non-2xx, or empty audio.
        """
        files = {self.upload_field: (filename, midi, "audio/midi")}
        response = await send_with_retry(
            SERVICE_NAME,
            lambda: self.client.post(f"{self.base_url}/render", files=files),
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
        )
        if not response.content:
            raise UpstreamServiceError(SERVICE_NAME, "Render service returned an empty audio payload.")
        logger.info(f"🔊 Rendered {filename} → {len(response.content)} bytes of audio")
        return response.content


_shared_client: RenderClient | None = None


def get_render_client() -> RenderClient:
    """Return the process-wide RenderClient, creating it on first call."""
    global _shared_client
    if _shared_client is None:
        _shared_client = RenderClient()
    return _shared_client


async def close_render_client() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.close()
        _shared_client = None
