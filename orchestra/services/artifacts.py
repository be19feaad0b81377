"""
Artifact storage for generated note and audio files.

Two backends behind one ``ArtifactStore`` interface:

  - ``S3ArtifactStore``: boto3, SigV4 presigned ``get_object`` URLs.
  - ``LocalArtifactStore``: a directory on disk; signed URLs are HMAC-SHA256
    tokens verified by ``GET /api/v1/artifacts/{path}``.

Contract shared by both:
  - ``upload`` overwrites idempotently and raises ``StorageError`` on failure.
  - ``signed_url`` raises ``NotFoundError`` when the path does not exist.
  - ``delete`` never raises; a missing path counts as already deleted and
    any other failure is reported through ``DeleteResult``.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, Protocol, cast
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from orchestra.config import Settings
from orchestra.errors import NotFoundError, StorageError
from orchestra.models.base import utc_now

logger = logging.getLogger(__name__)

# Use Signature Version 4 for presigned URLs. SigV2 (legacy) can cause 403 from S3.
S3_CONFIG = Config(signature_version="s3v4")

ARTIFACT_ROUTE_PREFIX = "/api/v1/artifacts"

_CONTENT_TYPES: dict[str, str] = {
    ".mid": "audio/midi",
    ".midi": "audio/midi",
    ".mp3": "audio/mpeg",
    ".json": "application/json",
}

_S3_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def content_type_for(path: str) -> str:
    """Return the MIME type served for an artifact path."""
    return _CONTENT_TYPES.get(PurePosixPath(path).suffix.lower(), "application/octet-stream")


@dataclass(frozen=True)
class SignedUrl:
    """A time-limited read link and the instant it stops working."""

    url: str
    expires_at: datetime


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a best-effort delete."""

    path: str
    ok: bool
    error: str | None = None

    @classmethod
    def success(cls, path: str) -> "DeleteResult":
        return cls(path=path, ok=True)

    @classmethod
    def failure(cls, path: str, error: str) -> "DeleteResult":
        return cls(path=path, ok=False, error=error)


class ArtifactStore(Protocol):
    """Durable blob storage keyed by slash-separated path."""

    async def upload(self, path: str, data: bytes, content_type: str) -> None: ...
    async def download(self, path: str) -> bytes: ...
    async def exists(self, path: str) -> bool: ...
    async def signed_url(self, path: str, ttl: timedelta) -> SignedUrl: ...
    async def delete(self, path: str) -> DeleteResult: ...
    async def list_paths(self, prefix: str) -> list[str]: ...
    async def check_reachable(self) -> bool: ...


# ---------------------------------------------------------------------------
# Local filesystem backend
# ---------------------------------------------------------------------------


def _validate_key(path: str) -> PurePosixPath:
    """Reject absolute, empty, and parent-traversing artifact keys."""
    if not path or any(part in ("", ".", "..") for part in path.split("/")):
        raise StorageError(f"Invalid artifact path: {path!r}")
    return PurePosixPath(path)


class LocalArtifactStore:
    """Filesystem-backed artifact store with HMAC-signed download URLs."""

    def __init__(
        self,
        root: Path | str,
        *,
        public_base_url: str,
        signing_secret: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")
        self._secret = signing_secret.encode()
        self._clock = clock

    def _full_path(self, path: str) -> Path:
        key = _validate_key(path)
        return self.root.joinpath(*key.parts)

    def _sign(self, path: str, expires: int) -> str:
        mac = hmac.new(self._secret, f"{path}\n{expires}".encode(), hashlib.sha256)
        return mac.hexdigest()

    def verify_signature(self, path: str, expires: int, signature: str) -> bool:
        """True when ``signature`` matches ``path``/``expires`` and has not expired."""
        if expires < int(self._clock().timestamp()):
            return False
        return hmac.compare_digest(self._sign(path, expires), signature)

    @staticmethod
    def _write(full: Path, data: bytes) -> None:
        full.parent.mkdir(parents=True, exist_ok=True)
        tmp = full.with_name(f".{full.name}.{secrets.token_hex(4)}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, full)

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        full = self._full_path(path)
        try:
            await asyncio.to_thread(self._write, full, data)
        except OSError as e:
            logger.error("Local upload failed for %s: %s", path, e)
            raise StorageError(f"Failed to store {path}: {e}") from e
        logger.debug("Stored %s (%d bytes, %s)", path, len(data), content_type)

    async def download(self, path: str) -> bytes:
        full = self._full_path(path)
        try:
            return await asyncio.to_thread(full.read_bytes)
        except FileNotFoundError as e:
            raise NotFoundError(f"Artifact not found: {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    async def signed_url(self, path: str, ttl: timedelta) -> SignedUrl:
        if not await self.exists(path):
            raise NotFoundError(f"Artifact not found: {path}")
        expires_at = self._clock() + ttl
        expires = int(expires_at.timestamp())
        query = urlencode({"expires": expires, "signature": self._sign(path, expires)})
        url = f"{self.public_base_url}{ARTIFACT_ROUTE_PREFIX}/{quote(path)}?{query}"
        return SignedUrl(url=url, expires_at=expires_at)

    async def delete(self, path: str) -> DeleteResult:
        try:
            full = self._full_path(path)
            await asyncio.to_thread(full.unlink, missing_ok=True)
        except (OSError, StorageError) as e:
            return DeleteResult.failure(path, str(e))
        return DeleteResult.success(path)

    def _iter_files(self, prefix: str) -> Iterator[str]:
        # Walk only the deepest directory named by the prefix.
        directory = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        start = self.root.joinpath(*PurePosixPath(directory).parts) if directory else self.root
        if not start.is_dir():
            return
        for file in start.rglob("*"):
            if not file.is_file() or file.name.endswith(".tmp"):
                continue
            rel = file.relative_to(self.root).as_posix()
            if rel.startswith(prefix):
                yield rel

    async def list_paths(self, prefix: str) -> list[str]:
        return sorted(await asyncio.to_thread(lambda: list(self._iter_files(prefix))))

    async def check_reachable(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.debug("Local artifact dir unavailable: %s", e)
            return False
        return os.access(self.root, os.W_OK)


# ---------------------------------------------------------------------------
# S3 backend
# ---------------------------------------------------------------------------


class _S3Paginator(Protocol):
    def paginate(self, **kwargs: object) -> Iterator[dict[str, object]]: ...


class _S3Client(Protocol):
    """Structural interface for the boto3 S3 client methods used in this module."""

    def put_object(self, **kwargs: object) -> dict[str, object]: ...
    def get_object(self, *, Bucket: str, Key: str) -> dict[str, object]: ...
    def head_object(self, *, Bucket: str, Key: str) -> dict[str, object]: ...
    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, object]: ...
    def head_bucket(self, *, Bucket: str) -> dict[str, object]: ...
    def generate_presigned_url(self, operation: str, /, **kwargs: object) -> str: ...
    def get_paginator(self, operation: str, /) -> _S3Paginator: ...


def _s3_client(region: str) -> _S3Client:
    """
    Create S3 client with SigV4 and regional endpoint.
    Using the regional endpoint avoids redirects from the global endpoint that
    can break presigned URL signatures.
    """
    endpoint_url = f"https://s3.{region}.amazonaws.com"
    # boto3 has no type stubs; cast to our Protocol at the untyped library boundary.
    return cast(
        _S3Client,
        boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            config=S3_CONFIG,
        ),
    )


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class S3ArtifactStore:
    """S3-backed artifact store."""

    def __init__(self, bucket: str, *, region: str, client: _S3Client | None = None) -> None:
        if not bucket:
            raise ValueError("ORCHESTRA_AWS_S3_ARTIFACT_BUCKET is not set")
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self) -> _S3Client:
        if self._client is None:
            self._client = _s3_client(self.region)
        return self._client

    async def upload(self, path: str, data: bytes, content_type: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 upload failed for %s: %s", path, e)
            raise StorageError(f"Failed to upload {path}: {e}") from e

    async def download(self, path: str) -> bytes:
        try:
            resp = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=path)
            body = resp["Body"]
            return cast(bytes, await asyncio.to_thread(body.read))  # type: ignore[attr-defined]
        except ClientError as e:
            if _error_code(e) in _S3_MISSING_CODES:
                raise NotFoundError(f"Artifact not found: {path}") from e
            raise StorageError(f"Failed to read {path}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def exists(self, path: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=path)
            return True
        except ClientError as e:
            if _error_code(e) in _S3_MISSING_CODES:
                return False
            raise StorageError(f"Failed to stat {path}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to stat {path}: {e}") from e

    async def signed_url(self, path: str, ttl: timedelta) -> SignedUrl:
        if not await self.exists(path):
            raise NotFoundError(f"Artifact not found: {path}")
        expires_in = int(ttl.total_seconds())
        try:
            url = await asyncio.to_thread(
                self.client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": path},
                ExpiresIn=expires_in,
            )
        except NoCredentialsError as e:
            logger.warning("AWS credentials not configured: %s", e)
            raise StorageError("AWS credentials not configured") from e
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 presign failed for %s: %s", path, e)
            raise StorageError(f"Unable to generate download URL for {path}") from e
        return SignedUrl(url=url, expires_at=utc_now() + timedelta(seconds=expires_in))

    async def delete(self, path: str) -> DeleteResult:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in _S3_MISSING_CODES:
                return DeleteResult.success(path)
            return DeleteResult.failure(path, str(e))
        except BotoCoreError as e:
            return DeleteResult.failure(path, str(e))
        return DeleteResult.success(path)

    def _list(self, prefix: str) -> list[str]:
        keys: list[str] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            contents = page.get("Contents") or []
            for obj in contents:  # type: ignore[attr-defined]
                keys.append(str(obj["Key"]))
        return keys

    async def list_paths(self, prefix: str) -> list[str]:
        try:
            return sorted(await asyncio.to_thread(self._list, prefix))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to list {prefix}: {e}") from e

    async def check_reachable(self) -> bool:
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self.bucket)
            return True
        except Exception as e:
            logger.debug("S3 health check failed: %s", e)
            return False


def _signing_secret(configured: str | None) -> str:
    if configured:
        return configured
    logger.warning(
        "⚠️ ORCHESTRA_URL_SIGNING_SECRET is not set, using a per-process key. "
        "Signed URLs will stop working after a restart."
    )
    return secrets.token_hex(32)


def build_artifact_store(config: Settings) -> ArtifactStore:
    """Create the artifact store selected by ``artifact_backend``."""
    if config.artifact_backend == "s3":
        return S3ArtifactStore(config.aws_s3_artifact_bucket or "", region=config.aws_region)
    return LocalArtifactStore(
        config.local_artifact_dir,
        public_base_url=config.public_base_url,
        signing_secret=_signing_secret(config.url_signing_secret),
    )
