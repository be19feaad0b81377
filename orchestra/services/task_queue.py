"""
Asynchronous task dispatch for orchestration runs.

Intake serialises a ``TaskMessage`` and drops it on a bounded asyncio queue;
a fixed pool of workers deserialises each message and hands it to the
pipeline handler. ``submit`` returns immediately, so the HTTP caller never
waits on generation.

Delivery contract: at-least-once. Handlers must tolerate seeing the same
message twice; the queue performs no deduplication.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from time import time
from typing import Awaitable, Callable

from pydantic import ConfigDict

from orchestra.models.base import CamelModel, utc_now
from orchestra.models.requests import GenerationRequest

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return str(uuid.uuid4())


def new_base_name(now: datetime | None = None) -> str:
    """Generated artifact base name, e.g. ``generation-1718000000000-a1b2c3``."""
    ts = int((now or utc_now()).timestamp() * 1000)
    return f"generation-{ts}-{secrets.token_hex(3)}"


class TaskMessage(CamelModel):
    """One queued orchestration run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    base_name: str
    request: GenerationRequest
    enqueued_at: datetime

    @classmethod
    def for_request(cls, request: GenerationRequest, now: datetime | None = None) -> "TaskMessage":
        now = now or utc_now()
        return cls(run_id=new_run_id(), base_name=new_base_name(now), request=request, enqueued_at=now)

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def deserialize(cls, raw: str) -> "TaskMessage":
        return cls.model_validate_json(raw)


TaskHandler = Callable[[TaskMessage], Awaitable[object]]


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


ABANDONED_ERROR = "abandoned at shutdown"


class QueueFullError(Exception):
    """Raised by ``submit`` when the queue is at capacity."""


@dataclass
class QueuedTask:
    run_id: str
    payload: str
    status: TaskStatus = TaskStatus.QUEUED
    created_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None
    deliveries: int = 0
    error: str | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class TaskQueue:
    """Bounded async task queue with a fixed-size worker pool."""

    def __init__(
        self,
        handler: TaskHandler,
        max_queue: int = 100,
        max_workers: int = 2,
        task_ttl_seconds: float = 3600.0,
    ) -> None:
        self._handler = handler
        self._queue: asyncio.Queue[QueuedTask] = asyncio.Queue(maxsize=max_queue)
        self._tasks: dict[str, QueuedTask] = {}
        self._max_workers = max_workers
        self._max_queue = max_queue
        self._task_ttl = task_ttl_seconds
        self._workers: list[asyncio.Task[None]] = []

    @property
    def started(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        for i in range(self._max_workers):
            self._workers.append(asyncio.create_task(self._worker(i)))
        logger.info(
            f"✅ TaskQueue started: {self._max_workers} workers, "
            f"max_queue={self._max_queue}"
        )

    async def shutdown(self) -> list[TaskMessage]:
        """Stop the workers and abandon unfinished runs.

        Runs that were mid-handler or still waiting in the queue are marked
        FAILED and will not be delivered. Their messages are returned so the
        caller can finalise whatever state they own.
        """
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        abandoned: list[TaskMessage] = []
        for task in self._tasks.values():
            if task.status not in (TaskStatus.QUEUED, TaskStatus.RUNNING):
                continue
            task.status = TaskStatus.FAILED
            task.error = ABANDONED_ERROR
            task.completed_at = time()
            task.done.set()
            abandoned.append(TaskMessage.deserialize(task.payload))
        if abandoned:
            logger.warning(f"⚠️ TaskQueue abandoned {len(abandoned)} unfinished run(s)")
        logger.info("🛑 TaskQueue shut down")
        return abandoned

    def submit(self, message: TaskMessage) -> QueuedTask:
        """Enqueue a serialized message. Raises QueueFullError when at capacity."""
        task = QueuedTask(run_id=message.run_id, payload=message.serialize(), created_at=time())
        try:
            self._queue.put_nowait(task)
        except asyncio.QueueFull:
            raise QueueFullError(
                f"Generation queue is full ({self._max_queue} pending)"
            )
        self._tasks[task.run_id] = task
        self._prune()
        logger.info(
            f"📥 Run {task.run_id[:8]} queued for {message.request.user_id} "
            f"(position {self._queue.qsize()})"
        )
        return task

    def get(self, run_id: str) -> QueuedTask | None:
        return self._tasks.get(run_id)

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running_count(self) -> int:
        return sum(1 for t in self._tasks.values() if t.status == TaskStatus.RUNNING)

    def status_snapshot(self) -> dict[str, object]:
        return {
            "depth": self.depth,
            "running": self.running_count,
            "workers": self._max_workers,
            "maxQueue": self._max_queue,
            "tracked": len(self._tasks),
        }

    async def join(self) -> None:
        """Wait until every submitted task has been processed."""
        await self._queue.join()

    # ── internal ────────────────────────────────────────────────────────

    def _prune(self) -> None:
        now = time()
        expired = [
            rid
            for rid, t in self._tasks.items()
            if t.completed_at is not None and now - t.completed_at > self._task_ttl
        ]
        for rid in expired:
            self._tasks.pop(rid, None)

    async def _worker(self, worker_id: int) -> None:
        logger.info(f"🔧 Worker {worker_id} started")
        while True:
            task = await self._queue.get()
            task.status = TaskStatus.RUNNING
            task.started_at = time()
            task.deliveries += 1
            try:
                message = TaskMessage.deserialize(task.payload)
                await self._handler(message)
                task.status = TaskStatus.COMPLETE
            except Exception as exc:
                logger.exception(f"❌ Worker {worker_id} run {task.run_id[:8]} crashed: {exc}")
                task.status = TaskStatus.FAILED
                task.error = str(exc)
            finally:
                task.completed_at = time()
                task.done.set()
                self._queue.task_done()
                elapsed = task.completed_at - (task.started_at or task.created_at)
                icon = "✅" if task.status == TaskStatus.COMPLETE else "❌"
                logger.info(
                    f"{icon} Worker {worker_id} run {task.run_id[:8]} "
                    f"{task.status.value} in {elapsed:.1f}s"
                )
