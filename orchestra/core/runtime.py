"""
Process-wide wiring of the orchestration components.

``build_runtime`` assembles stores, clients, the pipeline, the task queue
and the sweeper from Settings. The FastAPI lifespan installs the result with
``set_runtime``; routes resolve it through ``get_runtime`` (a FastAPI
dependency, so tests can override it).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from orchestra.config import Settings
from orchestra.core.intake import RequestIntake
from orchestra.core.pipeline import AudioRenderer, NoteGenerator, PipelineExecutor
from orchestra.models.base import utc_now
from orchestra.models.status import error_update
from orchestra.services.artifacts import ArtifactStore, build_artifact_store
from orchestra.services.generation import get_generation_client
from orchestra.services.render import get_render_client
from orchestra.services.retention import RetentionSweeper
from orchestra.services.status_store import (
    DatabaseStatusStore,
    InMemoryStatusStore,
    StatusStore,
)
from orchestra.services.task_queue import TaskMessage, TaskQueue

logger = logging.getLogger(__name__)

SHUTDOWN_ERROR = "Service restarted before the run completed"


@dataclass
class Runtime:
    """Everything a running orchestrator needs, built once per process."""

    status_store: StatusStore
    artifact_store: ArtifactStore
    generator: NoteGenerator
    renderer: AudioRenderer
    pipeline: PipelineExecutor
    task_queue: TaskQueue
    intake: RequestIntake
    sweeper: RetentionSweeper

    async def start(self, *, sweep: bool = True) -> None:
        await self.task_queue.start()
        if sweep:
            self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        for message in await self.task_queue.shutdown():
            await self._fail_abandoned(message)

    async def _fail_abandoned(self, message: TaskMessage) -> None:
        user_id = message.request.user_id
        try:
            slot = await self.status_store.get(user_id)
            # A later run owns the slot.
            if slot is not None and slot.get("runId") not in (None, message.run_id):
                return
            await self.status_store.merge(
                user_id,
                error_update(run_id=message.run_id, error=SHUTDOWN_ERROR, finished=utc_now()),
            )
        except Exception as exc:
            logger.error(f"❌ Could not finalise run {message.run_id[:8]} for {user_id}: {exc}")
            return
        logger.warning(f"⚠️ Run {message.run_id[:8]} for {user_id} ended by shutdown")


def build_status_store(config: Settings) -> StatusStore:
    """Status store selected by ``status_backend``. Database needs init_db() first."""
    if config.status_backend == "memory":
        return InMemoryStatusStore(poll_interval=config.status_poll_interval_seconds)
    from orchestra.db import get_session_factory

    return DatabaseStatusStore(
        get_session_factory(), poll_interval=config.status_poll_interval_seconds
    )


def assemble_runtime(
    config: Settings,
    *,
    status_store: StatusStore,
    artifact_store: ArtifactStore,
    generator: NoteGenerator,
    renderer: AudioRenderer,
) -> Runtime:
    """Wire pipeline, queue, intake and sweeper around the given collaborators."""
    pipeline = PipelineExecutor(
        status_store=status_store,
        artifact_store=artifact_store,
        generator=generator,
        renderer=renderer,
        signed_url_ttl=timedelta(seconds=config.signed_url_ttl_seconds),
        retention=timedelta(seconds=config.artifact_retention_seconds),
    )
    task_queue = TaskQueue(
        pipeline,
        max_queue=config.task_queue_max_size,
        max_workers=config.task_queue_workers,
    )
    return Runtime(
        status_store=status_store,
        artifact_store=artifact_store,
        generator=generator,
        renderer=renderer,
        pipeline=pipeline,
        task_queue=task_queue,
        intake=RequestIntake(status_store, task_queue),
        sweeper=RetentionSweeper(
            artifact_store, interval_seconds=config.retention_sweep_interval_seconds
        ),
    )


def build_runtime(config: Settings) -> Runtime:
    """Production wiring from Settings."""
    runtime = assemble_runtime(
        config,
        status_store=build_status_store(config),
        artifact_store=build_artifact_store(config),
        generator=get_generation_client(),
        renderer=get_render_client(),
    )
    logger.info(
        f"Runtime built: status={config.status_backend}, artifacts={config.artifact_backend}, "
        f"workers={config.task_queue_workers}"
    )
    return runtime


_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    """FastAPI dependency returning the installed Runtime."""
    if _runtime is None:
        raise RuntimeError("Orchestrator runtime not initialized")
    return _runtime


def set_runtime(runtime: Runtime) -> None:
    global _runtime
    _runtime = runtime


def reset_runtime() -> None:
    """Drop the installed Runtime (shutdown and tests)."""
    global _runtime
    _runtime = None
