"""
Retention sweep for generated artifacts.

Every ``retention_sweep_interval_seconds`` (daily by default) the sweeper
scans ``users/*/temp/metadata.json`` and, for each record whose expiration
is at or before *now*, deletes in this order:

    1. the ``.midi`` artifact
    2. the ``.mp3`` artifact
    3. the rename-mapping entry for the record's base name
    4. the metadata record itself

If either artifact delete fails the metadata record is kept, so the next
sweep finds the record again and retries. Each record is processed in
isolation: a failure is logged and counted, and the scan moves on.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from orchestra.models.base import utc_now
from orchestra.services.artifact_records import ArtifactRecordRepository
from orchestra.services.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters for one sweep pass."""

    scanned: int = 0
    expired: int = 0
    deleted: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "expired": self.expired,
            "deleted": self.deleted,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class RetentionSweeper:
    """Deletes expired artifacts, rename entries and metadata records."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        interval_seconds: float = 24 * 60 * 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.records = ArtifactRecordRepository(store)
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self, now: datetime | None = None) -> SweepReport:
        """Run one pass over every metadata record."""
        now = now or self._clock()
        report = SweepReport()
        user_ids = [uid async for uid in self.records.iter_user_ids()]
        for user_id in user_ids:
            report.scanned += 1
            try:
                await self._sweep_user(user_id, now, report)
            except Exception as exc:
                report.failed += 1
                report.errors.append(f"{user_id}: {exc}")
                logger.error(f"❌ Retention sweep failed for {user_id}: {exc}")
        if report.expired or report.failed:
            logger.info(
                f"🧹 Retention sweep: scanned={report.scanned} expired={report.expired} "
                f"deleted={report.deleted} failed={report.failed}"
            )
        else:
            logger.debug(f"Retention sweep: scanned={report.scanned}, nothing expired")
        return report

    async def _sweep_user(self, user_id: str, now: datetime, report: SweepReport) -> None:
        record = await self.records.load(user_id)
        if record is None or not record.is_expired(now):
            return
        report.expired += 1

        artifact_errors: list[str] = []
        for path in (record.midi_storage_path, record.mp3_storage_path):
            result = await self.store.delete(path)
            if not result.ok:
                artifact_errors.append(f"{path}: {result.error}")
                logger.warning(f"⚠️ Could not delete expired artifact {path}: {result.error}")
        if artifact_errors:
            report.failed += 1
            report.errors.extend(artifact_errors)
            return

        await self.records.remove_file_name(user_id, record.base_name)

        result = await self.records.delete(user_id)
        if not result.ok:
            report.failed += 1
            report.errors.append(f"{result.path}: {result.error}")
            logger.warning(f"⚠️ Could not delete metadata for {user_id}: {result.error}")
            return
        report.deleted += 1
        logger.info(f"🗑️ Expired artifacts removed for {user_id} ({record.base_name})")

    # ── background loop ─────────────────────────────────────────────────

    def start(self) -> None:
        """Start the periodic sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"✅ Retention sweeper started (every {self.interval_seconds:.0f}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🛑 Retention sweeper stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.exception(f"❌ Retention sweep pass crashed: {exc}")
            await asyncio.sleep(self.interval_seconds)
