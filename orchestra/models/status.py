"""Status slot document shapes.

The slot is stored and transported as a plain camelCase dict
(``StatusDocument``) so partial merges stay trivial.  ``OrchestrationStatus``
is the typed read model; the status endpoint publishes it as the schema of
its 200 body.

Builders in this module produce the exact partials the pipeline writes.
Terminal partials always carry the full set of terminal fields (URLs,
error, ready, runId) so a slot never ends up holding fields from two runs.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from orchestra.core.state_machine import STEP_MESSAGES, PipelineStep
from orchestra.models.base import CamelModel

StatusDocument = dict[str, object]
"""camelCase status slot document. A ``None`` value in a merge partial deletes the key."""


class OrchestrationStatus(CamelModel):
    """Typed view of one user's status slot."""

    step: PipelineStep
    message: str
    ready: bool = False
    mp3_url: Optional[str] = None
    midi_url: Optional[str] = None
    error: Optional[str] = None
    started: Optional[datetime] = None
    finished: Optional[datetime] = None
    run_id: Optional[str] = None


def _iso(ts: datetime) -> str:
    return ts.isoformat()


def initial_status(run_id: str, started: datetime) -> StatusDocument:
    """Full document written by intake (``set``, not merge)."""
    return {
        "step": PipelineStep.INIT.value,
        "message": STEP_MESSAGES[PipelineStep.INIT],
        "ready": False,
        "started": _iso(started),
        "runId": run_id,
    }


def step_update(step: PipelineStep) -> StatusDocument:
    """Partial merged before a non-terminal step begins."""
    return {"step": step.value, "message": STEP_MESSAGES[step]}


def done_update(
    *,
    run_id: str,
    mp3_url: str,
    midi_url: str,
    finished: datetime,
) -> StatusDocument:
    """Terminal success partial. Re-applying the same dict is a no-op."""
    return {
        "step": PipelineStep.DONE.value,
        "message": STEP_MESSAGES[PipelineStep.DONE],
        "ready": True,
        "mp3Url": mp3_url,
        "midiUrl": midi_url,
        "error": None,
        "finished": _iso(finished),
        "runId": run_id,
    }


def error_update(*, run_id: str, error: str, finished: datetime) -> StatusDocument:
    """Terminal failure partial; clears any URLs a concurrent run left behind."""
    return {
        "step": PipelineStep.ERROR.value,
        "message": STEP_MESSAGES[PipelineStep.ERROR],
        "ready": False,
        "mp3Url": None,
        "midiUrl": None,
        "error": error,
        "finished": _iso(finished),
        "runId": run_id,
    }


def apply_merge(current: StatusDocument | None, partial: StatusDocument) -> StatusDocument:
    """Return ``current`` updated with ``partial``; ``None`` values delete keys."""
    merged: StatusDocument = dict(current or {})
    for key, value in partial.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged
