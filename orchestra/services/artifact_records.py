"""Artifact metadata sidecars and the user-facing rename mapping.

Storage layout (all paths live in the ArtifactStore):

  users/{userId}/temp/{baseName}.midi
  users/{userId}/temp/{baseName}.mp3
  users/{userId}/temp/metadata.json     ArtifactRecord for the latest run
  users/{userId}/temp/file_names.json   {baseName: userFileName}

The metadata document keeps the original wire keys (``created``,
``userFileName``, ``expiration``, ``midiStoragePath``, ``mp3StoragePath``)
and adds ``userId``, ``runId`` and ``baseName``.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator

from orchestra.errors import NotFoundError, StorageError
from orchestra.services.artifacts import ArtifactStore, DeleteResult

logger = logging.getLogger(__name__)

USERS_PREFIX = "users/"
METADATA_FILE = "metadata.json"
FILE_NAMES_FILE = "file_names.json"

MIDI_EXTENSION = "midi"
MP3_EXTENSION = "mp3"


def temp_prefix(user_id: str) -> str:
    """Per-user prefix holding the current generation's artifacts."""
    return f"{USERS_PREFIX}{user_id}/temp/"


def artifact_path(user_id: str, base_name: str, extension: str) -> str:
    """Deterministic storage path for one artifact of one run."""
    return f"{temp_prefix(user_id)}{base_name}.{extension}"


def metadata_path(user_id: str) -> str:
    return f"{temp_prefix(user_id)}{METADATA_FILE}"


def file_names_path(user_id: str) -> str:
    return f"{temp_prefix(user_id)}{FILE_NAMES_FILE}"


def _is_metadata_path(path: str) -> bool:
    parts = path.split("/")
    return len(parts) == 4 and parts[0] == "users" and parts[2] == "temp" and parts[3] == METADATA_FILE


@dataclass(frozen=True)
class ArtifactRecord:
    """Metadata for one completed run; the sweeper's unit of work."""

    user_id: str
    run_id: str
    base_name: str
    midi_storage_path: str
    mp3_storage_path: str
    created_at: datetime
    expires_at: datetime
    user_file_name: str | None = None

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        run_id: str,
        base_name: str,
        created_at: datetime,
        ttl: timedelta,
        user_file_name: str | None = None,
    ) -> "ArtifactRecord":
        """Build a record for ``base_name`` expiring ``ttl`` after ``created_at``."""
        return cls(
            user_id=user_id,
            run_id=run_id,
            base_name=base_name,
            midi_storage_path=artifact_path(user_id, base_name, MIDI_EXTENSION),
            mp3_storage_path=artifact_path(user_id, base_name, MP3_EXTENSION),
            created_at=created_at,
            expires_at=created_at + ttl,
            user_file_name=user_file_name,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_document(self) -> dict[str, object]:
        return {
            "created": self.created_at.isoformat(),
            "userFileName": self.user_file_name,
            "expiration": self.expires_at.isoformat(),
            "midiStoragePath": self.midi_storage_path,
            "mp3StoragePath": self.mp3_storage_path,
            "userId": self.user_id,
            "runId": self.run_id,
            "baseName": self.base_name,
        }

    @classmethod
    def from_document(cls, doc: dict[str, object], *, user_id: str) -> "ArtifactRecord":
        """Parse a metadata document. Raises ValueError on malformed input."""
        try:
            midi = str(doc["midiStoragePath"])
            mp3 = str(doc["mp3StoragePath"])
            created = datetime.fromisoformat(str(doc["created"]))
            expires = datetime.fromisoformat(str(doc["expiration"]))
        except KeyError as e:
            raise ValueError(f"metadata missing field {e.args[0]!r}") from e
        base_name = doc.get("baseName")
        if not isinstance(base_name, str):
            base_name = midi.rsplit("/", 1)[-1].rsplit(".", 1)[0]
        file_name = doc.get("userFileName")
        return cls(
            user_id=str(doc.get("userId") or user_id),
            run_id=str(doc.get("runId") or ""),
            base_name=base_name,
            midi_storage_path=midi,
            mp3_storage_path=mp3,
            created_at=created,
            expires_at=expires,
            user_file_name=file_name if isinstance(file_name, str) else None,
        )


def _encode(doc: dict[str, object]) -> bytes:
    return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class ArtifactRecordRepository:
    """Reads and writes ArtifactRecords and rename mappings in an ArtifactStore."""

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    async def save(self, record: ArtifactRecord) -> None:
        """Write (overwrite) the user's metadata sidecar. Raises StorageError."""
        await self.store.upload(
            metadata_path(record.user_id), _encode(record.to_document()), "application/json"
        )

    async def load(self, user_id: str) -> ArtifactRecord | None:
        """Return the user's record, or None when there is none.

        Raises:
            ValueError: The metadata document exists but cannot be parsed.
        """
        try:
            raw = await self.store.download(metadata_path(user_id))
        except NotFoundError:
            return None
        doc = json.loads(raw.decode("utf-8"))
        if not isinstance(doc, dict):
            raise ValueError(f"metadata for {user_id} is not a JSON object")
        return ArtifactRecord.from_document(doc, user_id=user_id)

    async def delete(self, user_id: str) -> DeleteResult:
        return await self.store.delete(metadata_path(user_id))

    async def iter_user_ids(self) -> AsyncIterator[str]:
        """Yield every user that currently has a metadata sidecar."""
        for path in await self.store.list_paths(USERS_PREFIX):
            if _is_metadata_path(path):
                yield path.split("/")[1]

    # ── rename mapping ──────────────────────────────────────────────────

    async def file_names(self, user_id: str) -> dict[str, str]:
        """Return ``{baseName: userFileName}`` for the user (empty when absent)."""
        try:
            raw = await self.store.download(file_names_path(user_id))
        except NotFoundError:
            return {}
        try:
            doc = json.loads(raw.decode("utf-8"))
        except ValueError:
            logger.warning("⚠️ Unreadable rename mapping for %s, starting fresh", user_id)
            return {}
        if not isinstance(doc, dict):
            return {}
        return {str(k): str(v) for k, v in doc.items() if isinstance(v, str)}

    async def set_file_name(self, user_id: str, base_name: str, file_name: str) -> None:
        """Map a generated base name to the caller's display name. Raises StorageError."""
        names = await self.file_names(user_id)
        names[base_name] = file_name
        await self.store.upload(file_names_path(user_id), _encode(dict(names)), "application/json")

    async def remove_file_name(self, user_id: str, base_name: str) -> None:
        """Drop one mapping entry; removes the file when it becomes empty."""
        names = await self.file_names(user_id)
        if base_name not in names:
            return
        del names[base_name]
        if names:
            await self.store.upload(file_names_path(user_id), _encode(dict(names)), "application/json")
            return
        result = await self.store.delete(file_names_path(user_id))
        if not result.ok:
            raise StorageError(f"Failed to delete rename mapping for {user_id}: {result.error}")
