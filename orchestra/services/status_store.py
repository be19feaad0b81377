"""
Per-user status slot ("latest status").

One mutable document per user id, exposed as an explicit keyed store:

    set(user_id, document)     replace the whole slot
    merge(user_id, partial)    shallow update; None values delete keys
    get(user_id)               point read
    subscribe(user_id)         async stream of snapshots

Semantics: last-write-wins. A new request's ``set`` overwrites whatever an
in-flight run for the same user has written, and that run's later merges land
on top of it. No per-request identity is enforced; ``runId`` in the document
is informational.

``subscribe`` pushes snapshots written in this process and additionally
re-reads the slot every ``poll_interval`` seconds so writes from other
processes (database backend) are observed too. Intermediate snapshots may be
coalesced.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestra.db.models import OrchestrationStatusRow
from orchestra.models.status import StatusDocument, apply_merge

logger = logging.getLogger(__name__)


class StatusStore(Protocol):
    """Keyed status slot store with last-write-wins semantics."""

    async def set(self, user_id: str, document: StatusDocument) -> None: ...
    async def merge(self, user_id: str, partial: StatusDocument) -> bool: ...
    async def get(self, user_id: str) -> StatusDocument | None: ...
    def subscribe(self, user_id: str) -> AsyncIterator[StatusDocument]: ...


class StatusBroadcaster:
    """
    Fans status snapshots out to in-process subscribers.

    Each user has a list of subscriber queues. When a snapshot is
    published, it's pushed to all of that user's queues.
    """

    def __init__(self, queue_size: int = 64) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[StatusDocument]]] = {}
        self._queue_size = queue_size

    def publish(self, user_id: str, snapshot: StatusDocument) -> int:
        """Push a snapshot to every subscriber of ``user_id``. Returns deliveries."""
        delivered = 0
        for queue in self._subscribers.get(user_id, []):
            try:
                queue.put_nowait(copy.deepcopy(snapshot))
                delivered += 1
            except asyncio.QueueFull:
                # Slow consumer: drop the oldest snapshot, the newest one wins.
                try:
                    queue.get_nowait()
                    queue.put_nowait(copy.deepcopy(snapshot))
                    delivered += 1
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    logger.warning(f"Status queue full for user {user_id}, dropping snapshot")
        return delivered

    def add(self, user_id: str) -> asyncio.Queue[StatusDocument]:
        queue: asyncio.Queue[StatusDocument] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(user_id, []).append(queue)
        return queue

    def remove(self, user_id: str, queue: asyncio.Queue[StatusDocument]) -> None:
        subscribers = self._subscribers.get(user_id, [])
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers and user_id in self._subscribers:
            del self._subscribers[user_id]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, []))

    def clear(self) -> None:
        self._subscribers.clear()


class _BroadcastingStore:
    """Shared subscribe() implementation on top of get() and a broadcaster."""

    def __init__(self, poll_interval: float) -> None:
        self.broadcaster = StatusBroadcaster()
        self.poll_interval = poll_interval

    async def get(self, user_id: str) -> StatusDocument | None:
        raise NotImplementedError

    async def subscribe(self, user_id: str) -> AsyncIterator[StatusDocument]:
        """Yield the current snapshot (if any), then every change.

        The generator never ends on its own; consumers stop iterating once
        they see a terminal snapshot.
        """
        queue = self.broadcaster.add(user_id)
        last: StatusDocument | None = None
        try:
            current = await self.get(user_id)
            if current is not None:
                last = current
                yield current
            while True:
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    polled = await self.get(user_id)
                    if polled is None or polled == last:
                        continue
                    snapshot = polled
                if snapshot == last:
                    continue
                last = snapshot
                yield snapshot
        finally:
            self.broadcaster.remove(user_id, queue)


class InMemoryStatusStore(_BroadcastingStore):
    """
    Dict-backed status store.

    Suitable for development and tests; state is lost on restart. For
    production use ``DatabaseStatusStore`` behind the same interface.
    """

    def __init__(self, poll_interval: float = 2.0) -> None:
        super().__init__(poll_interval)
        self._slots: dict[str, StatusDocument] = {}

    async def set(self, user_id: str, document: StatusDocument) -> None:
        self._slots[user_id] = apply_merge(None, document)
        self.broadcaster.publish(user_id, self._slots[user_id])

    async def merge(self, user_id: str, partial: StatusDocument) -> bool:
        current = self._slots.get(user_id)
        merged = apply_merge(current, partial)
        if merged == current:
            return False
        self._slots[user_id] = merged
        self.broadcaster.publish(user_id, merged)
        return True

    async def get(self, user_id: str) -> StatusDocument | None:
        slot = self._slots.get(user_id)
        return copy.deepcopy(slot) if slot is not None else None

    def clear(self) -> None:
        """Clear all state (for testing)."""
        self._slots.clear()
        self.broadcaster.clear()


class DatabaseStatusStore(_BroadcastingStore):
    """
    SQLAlchemy-backed status store (one ``orchestration_status`` row per user).

    Read-modify-write merges are serialised per user within this process by
    an ``asyncio.Lock``; across processes the last committed write wins.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        poll_interval: float = 2.0,
    ) -> None:
        super().__init__(poll_interval)
        self._session_factory = session_factory
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Per-user lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[user_id] - 1
            if remaining:
                self._lock_users[user_id] = remaining
            else:
                del self._lock_users[user_id]
                del self._locks[user_id]

    async def set(self, user_id: str, document: StatusDocument) -> None:
        snapshot = apply_merge(None, document)
        async with self._user_lock(user_id):
            async with self._session_factory() as session:
                row = await session.get(OrchestrationStatusRow, user_id)
                if row is None:
                    session.add(OrchestrationStatusRow(user_id=user_id, document=snapshot))
                else:
                    row.document = snapshot
                await session.commit()
        self.broadcaster.publish(user_id, snapshot)

    async def merge(self, user_id: str, partial: StatusDocument) -> bool:
        async with self._user_lock(user_id):
            async with self._session_factory() as session:
                row = await session.get(OrchestrationStatusRow, user_id)
                current = dict(row.document) if row is not None else None
                merged = apply_merge(current, partial)
                if merged == current:
                    return False
                if row is None:
                    session.add(OrchestrationStatusRow(user_id=user_id, document=merged))
                else:
                    # Reassign so SQLAlchemy sees the JSON column as dirty.
                    row.document = merged
                await session.commit()
        self.broadcaster.publish(user_id, merged)
        return True

    async def get(self, user_id: str) -> StatusDocument | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrchestrationStatusRow.document).where(
                    OrchestrationStatusRow.user_id == user_id
                )
            )
            document = result.scalar_one_or_none()
        return dict(document) if document is not None else None
