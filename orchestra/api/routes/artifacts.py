"""
Signed artifact downloads for the local storage backend.

URLs issued by ``LocalArtifactStore.signed_url`` point here. The S3 backend
hands out presigned S3 URLs instead, so this route 404s when S3 is active.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from orchestra.core.runtime import Runtime, get_runtime
from orchestra.errors import NotFoundError, StorageError
from orchestra.services.artifacts import LocalArtifactStore, content_type_for

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"message": message},
        headers={"Cache-Control": "no-store"},
    )


@router.get(
    "/artifacts/{path:path}",
    response_model=None,
    responses={
        200: {"description": "Artifact bytes"},
        403: {"description": "Invalid or expired signature"},
        404: {"description": "Artifact not found"},
    },
)
async def download_artifact(
    path: str,
    expires: int = Query(..., description="Unix timestamp the link expires at"),
    signature: str = Query(..., description="HMAC-SHA256 signature"),
    runtime: Runtime = Depends(get_runtime),
) -> Response:
    """Serve one artifact if the signature is valid and unexpired."""
    store = runtime.artifact_store
    if not isinstance(store, LocalArtifactStore):
        return _error(404, "Artifact not found.")
    if not store.verify_signature(path, expires, signature):
        logger.warning("Rejected artifact download for %s: bad or expired signature", path)
        return _error(403, "Invalid or expired signature.")
    try:
        data = await store.download(path)
    except NotFoundError:
        return _error(404, "Artifact not found.")
    except StorageError as e:
        logger.error("Artifact read failed for %s: %s", path, e)
        return _error(404, "Artifact not found.")
    return Response(
        content=data,
        media_type=content_type_for(path),
        headers={"Cache-Control": "private, max-age=300"},
    )
