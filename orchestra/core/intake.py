"""Request intake: validate, initialise the status slot, enqueue, return.

``submit`` never waits on generation. The caller gets ``runId`` and
``baseName`` back immediately and follows progress through the status slot.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from orchestra.models.base import utc_now
from orchestra.models.requests import parse_generation_request
from orchestra.models.responses import AcceptedResponse
from orchestra.models.status import error_update, initial_status
from orchestra.services.status_store import StatusStore
from orchestra.services.task_queue import QueueFullError, TaskMessage, TaskQueue

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "Orchestration process started"
QUEUE_FULL_ERROR = "Generation queue is full"


class RequestIntake:
    """Front door of the pipeline."""

    def __init__(
        self,
        status_store: StatusStore,
        task_queue: TaskQueue,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.status_store = status_store
        self.task_queue = task_queue
        self._clock = clock

    async def submit(self, payload: object) -> AcceptedResponse:
        """Accept one generation request.

        Raises:
            ValidationError: missing userId or malformed fields. Nothing is
                written to the status slot in that case.
            QueueFullError: the task queue is at capacity. The slot is
                finalised as ``error`` before raising.
        """
        request = parse_generation_request(payload)
        now = self._clock()
        message = TaskMessage.for_request(request, now)

        # Overwrites whatever an earlier run left in the slot.
        await self.status_store.set(request.user_id, initial_status(message.run_id, now))

        try:
            self.task_queue.submit(message)
        except QueueFullError:
            logger.warning(f"⚠️ Queue full, rejecting run {message.run_id[:8]} for {request.user_id}")
            await self.status_store.merge(
                request.user_id,
                error_update(run_id=message.run_id, error=QUEUE_FULL_ERROR, finished=self._clock()),
            )
            raise

        logger.info(f"🎵 Accepted run {message.run_id[:8]} for {request.user_id} as {message.base_name}")
        return AcceptedResponse(
            message=ACCEPTED_MESSAGE,
            run_id=message.run_id,
            base_name=message.base_name,
        )
