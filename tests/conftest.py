"""Pytest configuration and fixtures."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from orchestra.config import settings
from orchestra.core.runtime import Runtime, assemble_runtime, get_runtime
from orchestra.db.database import Base
from orchestra.models.requests import GenerationRequest
from orchestra.services.artifacts import LocalArtifactStore
from orchestra.services.status_store import InMemoryStatusStore

MIDI_BYTES = b"MThd\x00\x00\x00\x06\x00\x01\x00\x01\x01\xe0MTrk"
MP3_BYTES = b"ID3\x04\x00\x00\x00\x00\x00\x00fake-mp3-frames"
TEST_SECRET = "test-signing-secret"
BASE_URL = "http://test"


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


class FixedClock:
    """Deterministic clock; tests move it with ``advance``."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGenerator:
    """Stands in for GenerationClient."""

    def __init__(self, midi: bytes = MIDI_BYTES, error: Exception | None = None) -> None:
        self.midi = midi
        self.error = error
        self.calls: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> bytes:
        self.calls.append(request)
        if self.error is not None:
            raise self.error
        return self.midi

    async def health_check(self) -> bool:
        return True


class FakeRenderer:
    """Stands in for RenderClient."""

    def __init__(self, mp3: bytes = MP3_BYTES, error: Exception | None = None) -> None:
        self.mp3 = mp3
        self.error = error
        self.calls: list[tuple[bytes, str]] = []

    async def render(self, midi: bytes, filename: str) -> bytes:
        self.calls.append((midi, filename))
        if self.error is not None:
            raise self.error
        return self.mp3

    async def health_check(self) -> bool:
        return True


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def status_store() -> InMemoryStatusStore:
    return InMemoryStatusStore(poll_interval=0.05)


@pytest.fixture
def artifact_store(tmp_path: Path) -> LocalArtifactStore:
    return LocalArtifactStore(
        tmp_path / "artifacts",
        public_base_url=BASE_URL,
        signing_secret=TEST_SECRET,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest_asyncio.fixture
async def runtime(
    status_store: InMemoryStatusStore,
    artifact_store: LocalArtifactStore,
    generator: FakeGenerator,
    renderer: FakeRenderer,
) -> AsyncIterator[Runtime]:
    """Runtime wired to in-memory status, a tmp-dir artifact store and fake upstreams."""
    rt = assemble_runtime(
        settings,
        status_store=status_store,
        artifact_store=artifact_store,
        generator=generator,
        renderer=renderer,
    )
    yield rt
    await rt.stop()


@pytest_asyncio.fixture
async def client(runtime: Runtime) -> AsyncIterator[AsyncClient]:
    """Async test client against the app with the test runtime injected."""
    from orchestra.main import app, limiter

    app.dependency_overrides[get_runtime] = lambda: runtime
    limiter.enabled = False
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url=BASE_URL) as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """In-memory SQLite session factory with the schema created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
