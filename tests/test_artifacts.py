"""Tests for artifact storage (orchestra/services/artifacts.py).

Covers: LocalArtifactStore (upload, download, signed URLs, delete, listing,
path validation) and S3ArtifactStore against a mocked boto3 client.
"""
from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from orchestra.errors import NotFoundError, StorageError
from orchestra.services.artifacts import (
    LocalArtifactStore,
    S3ArtifactStore,
    build_artifact_store,
    content_type_for,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _make_client_error(code: str = "NoSuchKey", operation: str = "GetObject") -> ClientError:
    return ClientError(
        error_response={"Error": {"Code": code, "Message": "test"}},
        operation_name=operation,
    )


def _local(tmp_path: Path, clock=lambda: NOW) -> LocalArtifactStore:
    return LocalArtifactStore(
        tmp_path,
        public_base_url="http://test/",
        signing_secret="secret",
        clock=clock,
    )


# ---------------------------------------------------------------------------
# content_type_for
# ---------------------------------------------------------------------------


class TestContentType:

    def test_known_extensions(self) -> None:
        assert content_type_for("users/u/temp/a.midi") == "audio/midi"
        assert content_type_for("users/u/temp/a.MP3") == "audio/mpeg"
        assert content_type_for("users/u/temp/metadata.json") == "application/json"

    def test_unknown_extension(self) -> None:
        assert content_type_for("x.bin") == "application/octet-stream"


# ---------------------------------------------------------------------------
# LocalArtifactStore
# ---------------------------------------------------------------------------


class TestLocalArtifactStore:

    async def test_upload_then_download(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.midi", b"abc", "audio/midi")
        assert await store.download("users/u1/temp/a.midi") == b"abc"
        assert await store.exists("users/u1/temp/a.midi")

    async def test_upload_overwrites(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.midi", b"one", "audio/midi")
        await store.upload("users/u1/temp/a.midi", b"two", "audio/midi")
        assert await store.download("users/u1/temp/a.midi") == b"two"

    async def test_download_missing_raises_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            await _local(tmp_path).download("users/u1/temp/missing.mp3")

    @pytest.mark.parametrize("path", ["../escape.mp3", "/abs/path.mp3", "users//x.mp3", ""])
    async def test_invalid_paths_rejected(self, tmp_path: Path, path: str) -> None:
        with pytest.raises(StorageError):
            await _local(tmp_path).upload(path, b"x", "audio/mpeg")

    async def test_signed_url_missing_path_raises(self, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            await _local(tmp_path).signed_url("users/u1/temp/none.mp3", timedelta(hours=1))

    async def test_signed_url_round_trips_through_verify(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.mp3", b"x", "audio/mpeg")
        signed = await store.signed_url("users/u1/temp/a.mp3", timedelta(hours=48))

        assert signed.expires_at == NOW + timedelta(hours=48)
        parsed = urlparse(signed.url)
        assert parsed.netloc == "test"
        assert parsed.path == "/api/v1/artifacts/users/u1/temp/a.mp3"
        query = parse_qs(parsed.query)
        expires = int(query["expires"][0])
        assert expires == int(signed.expires_at.timestamp())
        assert store.verify_signature("users/u1/temp/a.mp3", expires, query["signature"][0])

    async def test_signature_bound_to_path(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.mp3", b"x", "audio/mpeg")
        signed = await store.signed_url("users/u1/temp/a.mp3", timedelta(hours=1))
        query = parse_qs(urlparse(signed.url).query)
        expires = int(query["expires"][0])
        assert not store.verify_signature("users/u2/temp/a.mp3", expires, query["signature"][0])
        assert not store.verify_signature("users/u1/temp/a.mp3", expires + 1, query["signature"][0])

    async def test_signature_expires(self, tmp_path: Path) -> None:
        now = {"t": NOW}
        store = _local(tmp_path, clock=lambda: now["t"])
        await store.upload("users/u1/temp/a.mp3", b"x", "audio/mpeg")
        signed = await store.signed_url("users/u1/temp/a.mp3", timedelta(hours=1))
        query = parse_qs(urlparse(signed.url).query)
        expires, signature = int(query["expires"][0]), query["signature"][0]

        now["t"] = NOW + timedelta(hours=1, seconds=1)
        assert not store.verify_signature("users/u1/temp/a.mp3", expires, signature)

    async def test_delete_missing_is_success(self, tmp_path: Path) -> None:
        result = await _local(tmp_path).delete("users/u1/temp/never.mp3")
        assert result.ok
        assert result.error is None

    async def test_delete_removes_file(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.mp3", b"x", "audio/mpeg")
        assert (await store.delete("users/u1/temp/a.mp3")).ok
        assert not await store.exists("users/u1/temp/a.mp3")

    async def test_delete_invalid_path_reports_failure(self, tmp_path: Path) -> None:
        result = await _local(tmp_path).delete("../outside.mp3")
        assert not result.ok
        assert result.error

    async def test_list_paths_by_prefix(self, tmp_path: Path) -> None:
        store = _local(tmp_path)
        await store.upload("users/u1/temp/a.midi", b"x", "audio/midi")
        await store.upload("users/u1/temp/a.mp3", b"x", "audio/mpeg")
        await store.upload("users/u10/temp/b.mp3", b"x", "audio/mpeg")
        await store.upload("users/u2/temp/c.mp3", b"x", "audio/mpeg")

        assert await store.list_paths("users/u1/temp/") == [
            "users/u1/temp/a.midi",
            "users/u1/temp/a.mp3",
        ]
        assert len(await store.list_paths("users/")) == 4
        assert await store.list_paths("users/nobody/temp/") == []

    async def test_check_reachable(self, tmp_path: Path) -> None:
        assert await _local(tmp_path / "new-root").check_reachable()


# ---------------------------------------------------------------------------
# S3ArtifactStore
# ---------------------------------------------------------------------------


class TestS3ArtifactStore:

    def test_requires_bucket(self) -> None:
        with pytest.raises(ValueError):
            S3ArtifactStore("", region="us-east-1", client=MagicMock())

    async def test_upload_puts_object(self) -> None:
        client = MagicMock()
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        await store.upload("users/u1/temp/a.mp3", b"abc", "audio/mpeg")
        client.put_object.assert_called_once_with(
            Bucket="bucket", Key="users/u1/temp/a.mp3", Body=b"abc", ContentType="audio/mpeg"
        )

    async def test_upload_failure_raises_storage_error(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = _make_client_error("AccessDenied", "PutObject")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        with pytest.raises(StorageError):
            await store.upload("users/u1/temp/a.mp3", b"abc", "audio/mpeg")

    async def test_download_reads_body(self) -> None:
        client = MagicMock()
        client.get_object.return_value = {"Body": io.BytesIO(b"payload")}
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        assert await store.download("k") == b"payload"

    async def test_download_missing_raises_not_found(self) -> None:
        client = MagicMock()
        client.get_object.side_effect = _make_client_error("NoSuchKey")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        with pytest.raises(NotFoundError):
            await store.download("k")

    async def test_signed_url_presigns_get_object(self) -> None:
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://s3.example/signed"
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)

        signed = await store.signed_url("users/u1/temp/a.mp3", timedelta(hours=48))

        assert signed.url == "https://s3.example/signed"
        client.head_object.assert_called_once_with(Bucket="bucket", Key="users/u1/temp/a.mp3")
        client.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "bucket", "Key": "users/u1/temp/a.mp3"},
            ExpiresIn=48 * 3600,
        )

    async def test_signed_url_missing_object(self) -> None:
        client = MagicMock()
        client.head_object.side_effect = _make_client_error("404", "HeadObject")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        with pytest.raises(NotFoundError):
            await store.signed_url("k", timedelta(hours=1))
        client.generate_presigned_url.assert_not_called()

    async def test_delete_missing_counts_as_success(self) -> None:
        client = MagicMock()
        client.delete_object.side_effect = _make_client_error("NoSuchKey", "DeleteObject")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        assert (await store.delete("k")).ok

    async def test_delete_failure_is_captured(self) -> None:
        client = MagicMock()
        client.delete_object.side_effect = EndpointConnectionError(endpoint_url="https://s3")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        result = await store.delete("k")
        assert not result.ok
        assert "s3" in (result.error or "")

    async def test_list_paths_paginates(self) -> None:
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [{"Key": "users/u1/temp/b.mp3"}]},
            {"Contents": [{"Key": "users/u1/temp/a.midi"}]},
            {},
        ]
        client = MagicMock()
        client.get_paginator.return_value = paginator
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)

        assert await store.list_paths("users/u1/temp/") == [
            "users/u1/temp/a.midi",
            "users/u1/temp/b.mp3",
        ]
        paginator.paginate.assert_called_once_with(Bucket="bucket", Prefix="users/u1/temp/")

    async def test_check_reachable_false_on_error(self) -> None:
        client = MagicMock()
        client.head_bucket.side_effect = _make_client_error("403", "HeadBucket")
        store = S3ArtifactStore("bucket", region="us-east-1", client=client)
        assert await store.check_reachable() is False


# ---------------------------------------------------------------------------
# build_artifact_store
# ---------------------------------------------------------------------------


class TestBuildArtifactStore:

    def test_local_backend(self, tmp_path: Path) -> None:
        config = MagicMock()
        config.artifact_backend = "local"
        config.local_artifact_dir = str(tmp_path)
        config.public_base_url = "http://test"
        config.url_signing_secret = "s"
        assert isinstance(build_artifact_store(config), LocalArtifactStore)

    @patch("orchestra.services.artifacts.boto3")
    def test_s3_backend(self, mock_boto3: MagicMock) -> None:
        config = MagicMock()
        config.artifact_backend = "s3"
        config.aws_s3_artifact_bucket = "bucket"
        config.aws_region = "eu-west-1"
        store = build_artifact_store(config)
        assert isinstance(store, S3ArtifactStore)
        assert store.region == "eu-west-1"
        mock_boto3.client.assert_not_called()
