"""Health check endpoints."""
from __future__ import annotations

from typing import Required
from typing_extensions import TypedDict

from fastapi import APIRouter, Depends

from orchestra.config import settings
from orchestra.core.runtime import Runtime, get_runtime

router = APIRouter()


class HealthDependencyDict(TypedDict, total=False):
    """Status entry for one dependency in the full health check.

    ``status`` is always present. Additional keys depend on the dependency:
    ``url`` for upstream services, ``backend`` for storage and status.
    """

    status: Required[str]
    url: str        # generation / render only
    backend: str    # artifacts / status only


class FullHealthCheckDict(TypedDict):
    """Response shape for ``GET /health/full``."""

    status: str             # "ok" | "degraded"
    service: str
    version: str
    dependencies: dict[str, HealthDependencyDict]
    queue: dict[str, object]


async def _probe(client: object) -> bool:
    check = getattr(client, "health_check", None)
    if check is None:
        return True
    return bool(await check())


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@router.get("/health/full")
async def full_health_check(runtime: Runtime = Depends(get_runtime)) -> FullHealthCheckDict:
    """Full health check including dependencies.

    Reports:
    - Note-generation service (if reachable)
    - Audio-render service (if reachable)
    - Artifact storage (writable directory / reachable bucket)
    - Task queue depth and worker count
    """
    generation_ok = await _probe(runtime.generator)
    render_ok = await _probe(runtime.renderer)
    storage_ok = await runtime.artifact_store.check_reachable()

    deps: dict[str, HealthDependencyDict] = {
        "generation": {
            "status": "ok" if generation_ok else "unavailable",
            "url": settings.generation_base_url,
        },
        "render": {
            "status": "ok" if render_ok else "unavailable",
            "url": settings.render_base_url,
        },
        "artifacts": {
            "status": "ok" if storage_ok else "error",
            "backend": settings.artifact_backend,
        },
        "status_store": {
            "status": "ok",
            "backend": settings.status_backend,
        },
    }
    all_ok = generation_ok and render_ok and storage_ok
    return {
        "status": "ok" if all_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "dependencies": deps,
        "queue": runtime.task_queue.status_snapshot(),
    }
