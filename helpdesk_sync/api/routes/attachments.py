"""Attachment API Routes - Authenticated download and local blob handles"""
import urllib.parse
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ..deps import get_workspace_dep, get_workspace_manager, get_correlation_id_dep
from ...services.workspace_service import AgentWorkspace, WorkspaceManager
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


def _download_headers(filename: str, size: int) -> dict:
    # Encode filename for Content-Disposition header (handle special characters)
    encoded_filename = urllib.parse.quote(filename)
    return {
        "Content-Disposition": f"attachment; filename*=UTF-8''{encoded_filename}",
        "Content-Length": str(size),
        "Access-Control-Expose-Headers": "Content-Disposition, Content-Length",
        "Cache-Control": "no-cache",
    }


@router.get("/attachments/download")
async def download_attachment(
    storage_key: str = Query(..., min_length=1),
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Download an attachment by storage key

    Bytes are fetched through the authenticated channel for the
    workspace's selected desk.
    """
    content = await workspace.download_attachment(storage_key)
    filename = storage_key.rsplit("/", 1)[-1] or "attachment"
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers=_download_headers(filename, len(content))
    )


@router.get("/blobs/{blob_id}")
async def get_blob(
    blob_id: str,
    manager: WorkspaceManager = Depends(get_workspace_manager)
):
    """
    Serve a local inline-content handle

    Handles are minted while rendering a conversation and released when the
    view is discarded; released handles answer 404.
    """
    blob = manager.blobs.get(blob_id)
    return Response(
        content=blob.content,
        media_type=blob.content_type,
        headers={"Cache-Control": "private, max-age=300"}
    )
