"""Shared HTTP policy for the external generation and render services.

Each call gets a bounded httpx timeout. Transport failures (connect errors,
read timeouts, dropped connections) are retried a small, bounded number of
times with exponential backoff. Non-2xx responses are application errors
and are never retried; they surface as ``UpstreamServiceError`` carrying the
status code and body verbatim.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from orchestra.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

# Connection pool settings: pipeline calls are sequential per run, but several
# queue workers may hit the same service concurrently.
CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)

PROBE_TIMEOUT = httpx.Timeout(connect=3.0, read=3.0, write=3.0, pool=3.0)


def call_timeout(read_seconds: float) -> httpx.Timeout:
    """Timeout for one upstream call: short connect/pool, long read."""
    return httpx.Timeout(connect=5.0, read=float(read_seconds), write=30.0, pool=5.0)


async def send_with_retry(
    service: str,
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    max_retries: int,
    backoff_seconds: float,
) -> httpx.Response:
    """Run ``send`` until it returns a 2xx response.

    Raises:
        UpstreamServiceError: non-2xx response (immediately), or a transport
            error that persisted through ``max_retries`` retries.
    """
    attempt = 0
    while True:
        try:
            response = await send()
        except httpx.TransportError as exc:
            if attempt >= max_retries:
                logger.error(
                    f"❌ {service} transport failure after {attempt + 1} attempt(s): "
                    f"{type(exc).__name__}: {exc}"
                )
                raise UpstreamServiceError.from_transport(service, exc) from exc
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(
                f"⚠️ {service} transport error ({type(exc).__name__}: {exc}), "
                f"retry {attempt}/{max_retries} in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            continue

        if response.is_success:
            return response
        error = UpstreamServiceError.from_response(service, response)
        logger.error(f"❌ {service} returned HTTP {response.status_code}: {error.message[:500]}")
        raise error
