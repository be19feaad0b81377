"""
Pipeline State Machine.

Explicit step transitions for one orchestration run.
Never advance a run's step directly; always go through next_step() /
assert_transition().

States:
    INIT             Request accepted and queued; nothing executed yet
    GENERATING_MIDI  Note-generation service call in flight
    RENDERING_MP3    Audio-render service call in flight
    UPLOADING_MIDI   Note file being written to artifact storage
    UPLOADING_MP3    Audio file being written to artifact storage
    GENERATING_URLS  Signed URLs issued, artifact metadata written
    DONE             Terminal success; slot carries both URLs
    ERROR            Terminal failure; slot carries the error text

Invariants:
    1. Non-terminal steps run in strict order; none is skipped.
    2. ERROR is reachable from every non-terminal step.
    3. DONE and ERROR are final.
"""

from __future__ import annotations

from enum import Enum


class PipelineStep(str, Enum):
    """Canonical orchestration steps, in execution order."""

    INIT = "init"
    GENERATING_MIDI = "generating_midi"
    RENDERING_MP3 = "rendering_mp3"
    UPLOADING_MIDI = "uploading_midi"
    UPLOADING_MP3 = "uploading_mp3"
    GENERATING_URLS = "generating_urls"
    DONE = "done"
    ERROR = "error"


TERMINAL_STEPS: frozenset[PipelineStep] = frozenset({
    PipelineStep.DONE,
    PipelineStep.ERROR,
})

# Happy-path order. ERROR is reachable from any non-terminal entry.
STEP_ORDER: tuple[PipelineStep, ...] = (
    PipelineStep.INIT,
    PipelineStep.GENERATING_MIDI,
    PipelineStep.RENDERING_MP3,
    PipelineStep.UPLOADING_MIDI,
    PipelineStep.UPLOADING_MP3,
    PipelineStep.GENERATING_URLS,
    PipelineStep.DONE,
)

# Human-readable status line shown to the user while each step runs.
STEP_MESSAGES: dict[PipelineStep, str] = {
    PipelineStep.INIT: "request received",
    PipelineStep.GENERATING_MIDI: "Composing musical information...",
    PipelineStep.RENDERING_MP3: "Rendering audio...",
    PipelineStep.UPLOADING_MIDI: "Saving MIDI file...",
    PipelineStep.UPLOADING_MP3: "Saving audio...",
    PipelineStep.GENERATING_URLS: "Preparing download links...",
    PipelineStep.DONE: "Loading preview...",
    PipelineStep.ERROR: "Error during generation. Please try again.",
}


def _build_transitions() -> dict[PipelineStep, frozenset[PipelineStep]]:
    transitions: dict[PipelineStep, frozenset[PipelineStep]] = {}
    for current, following in zip(STEP_ORDER, STEP_ORDER[1:]):
        transitions[current] = frozenset({following, PipelineStep.ERROR})
    for terminal in TERMINAL_STEPS:
        transitions[terminal] = frozenset()
    return transitions


# Allowed transitions: from_step -> set of valid to_steps.
_TRANSITIONS: dict[PipelineStep, frozenset[PipelineStep]] = _build_transitions()


class InvalidTransitionError(Exception):
    """Raised when a step transition violates the state machine."""

    def __init__(self, from_step: PipelineStep, to_step: PipelineStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(
            f"Invalid transition: {from_step.value} → {to_step.value}"
        )


def assert_transition(from_step: PipelineStep, to_step: PipelineStep) -> None:
    """
    Validate that a step transition is allowed.

    Raises InvalidTransitionError if the transition violates the state machine.
    """
    allowed = _TRANSITIONS.get(from_step, frozenset())
    if to_step not in allowed:
        raise InvalidTransitionError(from_step, to_step)


def next_step(current: PipelineStep) -> PipelineStep:
    """Return the happy-path successor of ``current``.

    Raises InvalidTransitionError for terminal steps, which have no successor.
    """
    if current in TERMINAL_STEPS:
        raise InvalidTransitionError(current, current)
    following = STEP_ORDER[STEP_ORDER.index(current) + 1]
    assert_transition(current, following)
    return following


def is_terminal(step: PipelineStep) -> bool:
    """Check if a step is terminal (no further transitions)."""
    return step in TERMINAL_STEPS


def parse_step(value: object) -> PipelineStep | None:
    """Coerce a raw status-document value to a PipelineStep, or None if unknown."""
    if isinstance(value, PipelineStep):
        return value
    try:
        return PipelineStep(str(value))
    except ValueError:
        return None
