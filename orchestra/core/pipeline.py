"""Orchestration pipeline: one state-machine run per dequeued task.

For each TaskMessage the executor walks the steps defined in
``orchestra.core.state_machine``:

1. ``generating_midi``  GenerationClient produces the note file.
2. ``rendering_mp3``    RenderClient turns it into audio.
3. ``uploading_midi``   provisional ArtifactRecord written, then the note file
   stored at ``users/{uid}/temp/{base}.midi`` after older ``.midi`` files
   under the user's temp prefix are cleared.
4. ``uploading_mp3``    same for the ``.mp3``.
5. ``generating_urls``  signed read URLs issued, ArtifactRecord written,
   rename mapping written when the caller supplied a display name.
6. ``done``             terminal merge ``{ready, mp3Url, midiUrl}``.

The status slot is merged *before* each step starts so observers see the
step currently executing. Any failure jumps to ``error``: the error text is
merged into the slot and the run stops. There is no retry at this layer, no
requeue, and no rollback of artifacts already uploaded. The provisional record
lets the retention sweep reclaim them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from orchestra.core.state_machine import PipelineStep, assert_transition, next_step
from orchestra.errors import OrchestraError
from orchestra.models.base import utc_now
from orchestra.models.requests import GenerationRequest
from orchestra.models.status import done_update, error_update, step_update
from orchestra.services.artifact_records import (
    MIDI_EXTENSION,
    MP3_EXTENSION,
    ArtifactRecord,
    ArtifactRecordRepository,
    artifact_path,
    temp_prefix,
)
from orchestra.services.artifacts import ArtifactStore, SignedUrl
from orchestra.services.status_store import StatusStore
from orchestra.services.task_queue import TaskMessage

logger = logging.getLogger(__name__)

MIDI_CONTENT_TYPE = "audio/midi"
MP3_CONTENT_TYPE = "audio/mpeg"


class NoteGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> bytes: ...


class AudioRenderer(Protocol):
    async def render(self, midi: bytes, filename: str) -> bytes: ...


@dataclass
class RunContext:
    """Mutable working state for one run; each step's output feeds the next."""

    message: TaskMessage
    step: PipelineStep = PipelineStep.INIT
    midi: bytes | None = None
    mp3: bytes | None = None
    midi_path: str | None = None
    mp3_path: str | None = None
    midi_url: SignedUrl | None = None
    mp3_url: SignedUrl | None = None
    record: ArtifactRecord | None = None
    cleanup_failures: list[str] = field(default_factory=list)

    @property
    def user_id(self) -> str:
        return self.message.request.user_id

    @property
    def base_name(self) -> str:
        return self.message.base_name

    @property
    def tag(self) -> str:
        return f"[{self.message.run_id[:8]}]"


@dataclass(frozen=True)
class PipelineOutcome:
    """Summary of a finished run.

    Attributes:
        run_id: Run identifier carried from intake.
        step: Terminal step reached (``done`` or ``error``).
        failed_step: Step that was executing when the run failed.
        error: Error text written to the status slot.
        record: ArtifactRecord written on success.
        cleanup_failures: Paths whose best-effort delete failed.
    """

    run_id: str
    step: PipelineStep
    failed_step: PipelineStep | None = None
    error: str | None = None
    record: ArtifactRecord | None = None
    cleanup_failures: tuple[str, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.step == PipelineStep.DONE


def _require(value: bytes | None, what: str) -> bytes:
    if value is None:
        raise RuntimeError(f"{what} missing; step executed out of order")
    return value


class PipelineExecutor:
    """Drives one TaskMessage through generation, render, upload and publish."""

    def __init__(
        self,
        *,
        status_store: StatusStore,
        artifact_store: ArtifactStore,
        generator: NoteGenerator,
        renderer: AudioRenderer,
        signed_url_ttl: timedelta,
        retention: timedelta,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.status_store = status_store
        self.artifact_store = artifact_store
        self.records = ArtifactRecordRepository(artifact_store)
        self.generator = generator
        self.renderer = renderer
        self.signed_url_ttl = signed_url_ttl
        self.retention = retention
        self._clock = clock
        self._handlers: dict[PipelineStep, Callable[[RunContext], Awaitable[None]]] = {
            PipelineStep.GENERATING_MIDI: self._generate_midi,
            PipelineStep.RENDERING_MP3: self._render_mp3,
            PipelineStep.UPLOADING_MIDI: self._upload_midi,
            PipelineStep.UPLOADING_MP3: self._upload_mp3,
            PipelineStep.GENERATING_URLS: self._publish,
        }

    async def __call__(self, message: TaskMessage) -> PipelineOutcome:
        return await self.run(message)

    async def run(self, message: TaskMessage) -> PipelineOutcome:
        """Execute the whole state machine for ``message``. Never raises for
        pipeline failures; they end in the ``error`` step instead."""
        ctx = RunContext(message=message)
        logger.info(f"🎬 {ctx.tag} Pipeline started for {ctx.user_id} ({ctx.base_name})")
        try:
            step = next_step(ctx.step)
            while step != PipelineStep.DONE:
                await self._enter(ctx, step)
                await self._handlers[step](ctx)
                step = next_step(step)
            return await self._finish(ctx)
        except OrchestraError as exc:
            return await self._fail(ctx, str(exc))
        except Exception as exc:
            logger.exception(f"❌ {ctx.tag} Unexpected failure in {ctx.step.value}: {exc}")
            return await self._fail(ctx, str(exc) or type(exc).__name__)

    # ── transitions ─────────────────────────────────────────────────────

    async def _enter(self, ctx: RunContext, step: PipelineStep) -> None:
        assert_transition(ctx.step, step)
        await self.status_store.merge(ctx.user_id, step_update(step))
        ctx.step = step
        logger.info(f"▶️ {ctx.tag} {step.value}")

    async def _finish(self, ctx: RunContext) -> PipelineOutcome:
        assert_transition(ctx.step, PipelineStep.DONE)
        assert ctx.mp3_url is not None and ctx.midi_url is not None
        await self.status_store.merge(
            ctx.user_id,
            done_update(
                run_id=ctx.message.run_id,
                mp3_url=ctx.mp3_url.url,
                midi_url=ctx.midi_url.url,
                finished=self._clock(),
            ),
        )
        ctx.step = PipelineStep.DONE
        logger.info(f"✅ {ctx.tag} Pipeline complete for {ctx.user_id}")
        return PipelineOutcome(
            run_id=ctx.message.run_id,
            step=PipelineStep.DONE,
            record=ctx.record,
            cleanup_failures=tuple(ctx.cleanup_failures),
        )

    async def _fail(self, ctx: RunContext, error: str) -> PipelineOutcome:
        failed_step = ctx.step
        assert_transition(failed_step, PipelineStep.ERROR)
        logger.error(f"❌ {ctx.tag} Pipeline failed during {failed_step.value}: {error}")
        await self.status_store.merge(
            ctx.user_id,
            error_update(run_id=ctx.message.run_id, error=error, finished=self._clock()),
        )
        ctx.step = PipelineStep.ERROR
        return PipelineOutcome(
            run_id=ctx.message.run_id,
            step=PipelineStep.ERROR,
            failed_step=failed_step,
            error=error,
            cleanup_failures=tuple(ctx.cleanup_failures),
        )

    # ── steps ───────────────────────────────────────────────────────────

    async def _generate_midi(self, ctx: RunContext) -> None:
        ctx.midi = await self.generator.generate(ctx.message.request)

    async def _render_mp3(self, ctx: RunContext) -> None:
        midi = _require(ctx.midi, "MIDI payload")
        ctx.mp3 = await self.renderer.render(midi, f"{ctx.base_name}.{MIDI_EXTENSION}")

    async def _upload_midi(self, ctx: RunContext) -> None:
        # Provisional record: the retention sweep reclaims these uploads even
        # when the run dies before publishing. _publish overwrites it.
        await self.records.save(self._new_record(ctx))
        ctx.midi_path = await self._replace_artifact(
            ctx, MIDI_EXTENSION, _require(ctx.midi, "MIDI payload"), MIDI_CONTENT_TYPE
        )

    async def _upload_mp3(self, ctx: RunContext) -> None:
        ctx.mp3_path = await self._replace_artifact(
            ctx, MP3_EXTENSION, _require(ctx.mp3, "MP3 payload"), MP3_CONTENT_TYPE
        )

    async def _replace_artifact(
        self, ctx: RunContext, extension: str, data: bytes, content_type: str
    ) -> str:
        """Clear older same-extension files in the user's temp prefix, then upload."""
        path = artifact_path(ctx.user_id, ctx.base_name, extension)
        for existing in await self.artifact_store.list_paths(temp_prefix(ctx.user_id)):
            if existing == path or not existing.endswith(f".{extension}"):
                continue
            result = await self.artifact_store.delete(existing)
            if result.ok:
                logger.info(f"🧹 {ctx.tag} Removed previous artifact {existing}")
            else:
                ctx.cleanup_failures.append(existing)
                logger.warning(f"⚠️ {ctx.tag} Could not delete {existing}: {result.error}")
        await self.artifact_store.upload(path, data, content_type)
        logger.info(f"📦 {ctx.tag} Uploaded {path} ({len(data)} bytes)")
        return path

    def _new_record(self, ctx: RunContext) -> ArtifactRecord:
        return ArtifactRecord.create(
            user_id=ctx.user_id,
            run_id=ctx.message.run_id,
            base_name=ctx.base_name,
            created_at=self._clock(),
            ttl=self.retention,
            user_file_name=ctx.message.request.user_file_name,
        )

    async def _publish(self, ctx: RunContext) -> None:
        assert ctx.midi_path is not None and ctx.mp3_path is not None
        ctx.midi_url = await self.artifact_store.signed_url(ctx.midi_path, self.signed_url_ttl)
        ctx.mp3_url = await self.artifact_store.signed_url(ctx.mp3_path, self.signed_url_ttl)

        request = ctx.message.request
        ctx.record = self._new_record(ctx)
        await self.records.save(ctx.record)
        if request.user_file_name:
            await self.records.set_file_name(ctx.user_id, ctx.base_name, request.user_file_name)
        logger.info(
            f"🔗 {ctx.tag} Signed URLs issued; artifacts expire {ctx.record.expires_at.isoformat()}"
        )
