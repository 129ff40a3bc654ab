"""Health API Routes"""
from fastapi import APIRouter, Depends

from ..deps import get_workspace_manager
from ...config.settings import settings
from ...services.workspace_service import WorkspaceManager
from ...sync.event_bus import HttpStreamChangeEventBus

router = APIRouter()


@router.get("/health")
async def health(manager: WorkspaceManager = Depends(get_workspace_manager)):
    """
    Health check endpoint.

    Reports the change-stream transport in use and how many agent
    workspaces are open.
    """
    transport = "http-stream" if isinstance(manager.bus, HttpStreamChangeEventBus) else "in-process"
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.environment,
        "change_stream": transport,
        "workspaces": len(manager.list_workspaces()),
        "blobs": len(manager.blobs),
    }
