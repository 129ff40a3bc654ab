"""API Routes module"""
from fastapi import APIRouter

from .workspace import router as workspace_router
from .attachments import router as attachments_router
from .health import router as health_router

# Main API router
api_router = APIRouter()

# Include all route modules
api_router.include_router(workspace_router, prefix="/workspace", tags=["Workspace"])
api_router.include_router(attachments_router, tags=["Attachments"])
api_router.include_router(health_router, tags=["Health"])

__all__ = ["api_router"]
