"""Tests for the retention sweep (orchestra/services/retention.py)."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from orchestra.services.artifact_records import (
    ArtifactRecord,
    ArtifactRecordRepository,
    file_names_path,
    metadata_path,
)
from orchestra.services.artifacts import DeleteResult, LocalArtifactStore
from orchestra.services.retention import RetentionSweeper

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
TTL = timedelta(hours=48)


async def _seed(
    store: LocalArtifactStore,
    user_id: str,
    *,
    expires_at: datetime,
    file_name: str | None = None,
) -> ArtifactRecord:
    """Write both artifacts plus a metadata record expiring at ``expires_at``."""
    record = ArtifactRecord.create(
        user_id=user_id,
        run_id=f"run-{user_id}",
        base_name=f"generation-{user_id}",
        created_at=expires_at - TTL,
        ttl=TTL,
        user_file_name=file_name,
    )
    await store.upload(record.midi_storage_path, b"midi", "audio/midi")
    await store.upload(record.mp3_storage_path, b"mp3", "audio/mpeg")
    repo = ArtifactRecordRepository(store)
    await repo.save(record)
    if file_name:
        await repo.set_file_name(user_id, record.base_name, file_name)
    return record


class TestSweepOnce:

    async def test_expired_removed_future_untouched(self, artifact_store: LocalArtifactStore) -> None:
        expired = await _seed(artifact_store, "old", expires_at=NOW - timedelta(seconds=1))
        fresh = await _seed(artifact_store, "new", expires_at=NOW + timedelta(hours=1))

        report = await RetentionSweeper(artifact_store).sweep_once(NOW)

        assert report.scanned == 2
        assert report.expired == 1
        assert report.deleted == 1
        assert report.failed == 0
        assert not await artifact_store.exists(expired.midi_storage_path)
        assert not await artifact_store.exists(expired.mp3_storage_path)
        assert not await artifact_store.exists(metadata_path("old"))
        assert await artifact_store.exists(fresh.midi_storage_path)
        assert await artifact_store.exists(fresh.mp3_storage_path)
        assert await artifact_store.exists(metadata_path("new"))

    async def test_expiry_boundary_is_inclusive(self, artifact_store: LocalArtifactStore) -> None:
        await _seed(artifact_store, "u1", expires_at=NOW)
        report = await RetentionSweeper(artifact_store).sweep_once(NOW)
        assert report.deleted == 1

    async def test_rename_entry_removed(self, artifact_store: LocalArtifactStore) -> None:
        record = await _seed(artifact_store, "u1", expires_at=NOW - timedelta(minutes=5), file_name="Song")
        repo = ArtifactRecordRepository(artifact_store)
        await repo.set_file_name("u1", "generation-keep", "Other")

        await RetentionSweeper(artifact_store).sweep_once(NOW)

        names = await repo.file_names("u1")
        assert record.base_name not in names
        assert names == {"generation-keep": "Other"}

    async def test_last_rename_entry_removes_mapping_file(self, artifact_store: LocalArtifactStore) -> None:
        await _seed(artifact_store, "u1", expires_at=NOW - timedelta(minutes=5), file_name="Song")
        await RetentionSweeper(artifact_store).sweep_once(NOW)
        assert not await artifact_store.exists(file_names_path("u1"))

    async def test_already_missing_artifacts_still_clear_metadata(self, artifact_store: LocalArtifactStore) -> None:
        record = await _seed(artifact_store, "u1", expires_at=NOW - timedelta(days=1))
        await artifact_store.delete(record.midi_storage_path)
        await artifact_store.delete(record.mp3_storage_path)

        report = await RetentionSweeper(artifact_store).sweep_once(NOW)

        assert report.deleted == 1
        assert not await artifact_store.exists(metadata_path("u1"))

    async def test_failed_artifact_delete_keeps_metadata(
        self, artifact_store: LocalArtifactStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        record = await _seed(artifact_store, "u1", expires_at=NOW - timedelta(hours=1))
        real_delete = artifact_store.delete

        async def flaky_delete(path: str) -> DeleteResult:
            if path == record.mp3_storage_path:
                return DeleteResult.failure(path, "throttled")
            return await real_delete(path)

        monkeypatch.setattr(artifact_store, "delete", flaky_delete)
        report = await RetentionSweeper(artifact_store).sweep_once(NOW)

        assert report.failed == 1
        assert report.deleted == 0
        assert any("throttled" in e for e in report.errors)
        assert not await artifact_store.exists(record.midi_storage_path)
        assert await artifact_store.exists(metadata_path("u1"))

        # Next pass retries and completes.
        monkeypatch.setattr(artifact_store, "delete", real_delete)
        report = await RetentionSweeper(artifact_store).sweep_once(NOW)
        assert report.deleted == 1
        assert not await artifact_store.exists(metadata_path("u1"))

    async def test_one_bad_record_does_not_abort_scan(self, artifact_store: LocalArtifactStore) -> None:
        await artifact_store.upload(metadata_path("broken"), b"{not json", "application/json")
        await _seed(artifact_store, "good", expires_at=NOW - timedelta(hours=1))

        report = await RetentionSweeper(artifact_store).sweep_once(NOW)

        assert report.scanned == 2
        assert report.failed == 1
        assert report.deleted == 1
        assert any(e.startswith("broken:") for e in report.errors)
        assert await artifact_store.exists(metadata_path("broken"))

    async def test_empty_store(self, artifact_store: LocalArtifactStore) -> None:
        report = await RetentionSweeper(artifact_store).sweep_once(NOW)
        assert report.as_dict() == {"scanned": 0, "expired": 0, "deleted": 0, "failed": 0, "errors": []}


class TestBackgroundLoop:

    async def test_start_runs_a_sweep_and_stop_cancels(self, artifact_store: LocalArtifactStore) -> None:
        await _seed(artifact_store, "u1", expires_at=NOW - timedelta(hours=1))
        sweeper = RetentionSweeper(artifact_store, interval_seconds=3600, clock=lambda: NOW)

        sweeper.start()
        assert sweeper.running
        for _ in range(100):
            if not await artifact_store.exists(metadata_path("u1")):
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()

        assert not sweeper.running
        assert not await artifact_store.exists(metadata_path("u1"))
