"""
Client-side status observation.

A StatusObserver consumes a stream of status snapshots for one user, maps
each step to a progress fraction, and hands off once the run settles:

- ``ready=True`` is the only success signal; the observer then calls
  ``on_ready(mp3Url, midiUrl)``.
- ``step=error`` is the only failure signal; the observer calls
  ``on_error(error)``.

Snapshots may be coalesced, so intermediate steps can be skipped and
``done`` may arrive without any earlier step having been seen. Progress
never moves backwards.

The snapshot source is any async iterator: ``StatusStore.subscribe`` in
process, or ``poll_status`` against the HTTP status endpoint.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

from orchestra.core.state_machine import PipelineStep, parse_step
from orchestra.models.status import StatusDocument

logger = logging.getLogger(__name__)

PROGRESS_BY_STEP: dict[PipelineStep, float] = {
    PipelineStep.INIT: 0.14,
    PipelineStep.GENERATING_MIDI: 0.28,
    PipelineStep.RENDERING_MP3: 0.5,
    PipelineStep.UPLOADING_MIDI: 0.64,
    PipelineStep.UPLOADING_MP3: 0.78,
    PipelineStep.GENERATING_URLS: 0.9,
    PipelineStep.DONE: 1.0,
}


def progress_for(snapshot: StatusDocument) -> float | None:
    """Progress fraction for a snapshot; ``None`` for error or unknown steps."""
    if snapshot.get("ready") is True:
        return 1.0
    step = parse_step(snapshot.get("step"))
    if step is None:
        return None
    return PROGRESS_BY_STEP.get(step)


Callback = Callable[..., Union[Awaitable[None], None]]


async def _call(callback: Optional[Callback], *args: object) -> None:
    if callback is None:
        return
    result = callback(*args)
    if asyncio.iscoroutine(result):
        await result


@dataclass(frozen=True)
class ObservedOutcome:
    """How an observed run ended (or ``settled=False`` if the stream ran dry)."""

    settled: bool
    ready: bool = False
    mp3_url: str | None = None
    midi_url: str | None = None
    error: str | None = None
    last_step: PipelineStep | None = None
    progress: float = 0.0


class StatusObserver:
    """Drives progress and hand-off callbacks from a snapshot stream."""

    def __init__(
        self,
        snapshots: AsyncIterator[StatusDocument],
        *,
        on_progress: Optional[Callback] = None,
        on_ready: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
    ) -> None:
        self._snapshots = snapshots
        self._on_progress = on_progress
        self._on_ready = on_ready
        self._on_error = on_error
        self.progress = 0.0
        self.last_step: PipelineStep | None = None

    async def _advance(self, snapshot: StatusDocument) -> None:
        value = progress_for(snapshot)
        if value is None or value <= self.progress:
            return
        self.progress = value
        await _call(self._on_progress, value)

    async def run(self) -> ObservedOutcome:
        """Consume snapshots until a terminal one arrives or the stream ends."""
        async for snapshot in self._snapshots:
            step = parse_step(snapshot.get("step"))
            if step is not None:
                self.last_step = step
            await self._advance(snapshot)

            if snapshot.get("ready") is True:
                mp3_url = snapshot.get("mp3Url")
                midi_url = snapshot.get("midiUrl")
                await _call(self._on_ready, mp3_url, midi_url)
                return ObservedOutcome(
                    settled=True,
                    ready=True,
                    mp3_url=mp3_url if isinstance(mp3_url, str) else None,
                    midi_url=midi_url if isinstance(midi_url, str) else None,
                    last_step=self.last_step,
                    progress=self.progress,
                )
            if step == PipelineStep.ERROR:
                error = snapshot.get("error")
                error_text = error if isinstance(error, str) else str(snapshot.get("message", ""))
                await _call(self._on_error, error_text)
                return ObservedOutcome(
                    settled=True,
                    error=error_text,
                    last_step=self.last_step,
                    progress=self.progress,
                )
        return ObservedOutcome(settled=False, last_step=self.last_step, progress=self.progress)


async def poll_status(
    client: httpx.AsyncClient,
    url: str,
    *,
    interval: float = 1.0,
) -> AsyncIterator[StatusDocument]:
    """Poll the HTTP status endpoint, yielding each changed document.

    404 (no slot yet) is treated as "nothing to report"; other non-2xx
    responses raise ``httpx.HTTPStatusError``.
    """
    last: StatusDocument | None = None
    while True:
        response = await client.get(url)
        if response.status_code != 404:
            response.raise_for_status()
            document = response.json()
            if isinstance(document, dict) and document != last:
                last = document
                yield document
        await asyncio.sleep(interval)
