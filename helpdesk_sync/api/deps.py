"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Depends, Header, Request

from ..services.workspace_service import AgentWorkspace, WorkspaceManager
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """
    Get or generate correlation ID for request tracing

    If client provides X-Correlation-Id, use it.
    Otherwise generate a new one.
    """
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


async def get_access_token_dep(
    authorization: Optional[str] = Header(None)
) -> Optional[str]:
    """
    Dependency to extract raw access token from Authorization header

    Returns the token without 'Bearer ' prefix; it is forwarded to the
    helpdesk backend as-is.
    """
    if not authorization:
        return None

    # Remove "Bearer " prefix if present
    if authorization.startswith("Bearer "):
        return authorization[7:]
    return authorization


def get_workspace_manager(request: Request) -> WorkspaceManager:
    """Manager created by the application lifespan"""
    return request.app.state.workspaces


async def get_workspace_dep(
    x_workspace_id: str = Header(..., alias="X-Workspace-Id"),
    manager: WorkspaceManager = Depends(get_workspace_manager)
) -> AgentWorkspace:
    """Existing workspace named by X-Workspace-Id (404 if unknown)"""
    return manager.get(x_workspace_id)


async def get_or_create_workspace_dep(
    x_workspace_id: str = Header(..., alias="X-Workspace-Id"),
    access_token: Optional[str] = Depends(get_access_token_dep),
    manager: WorkspaceManager = Depends(get_workspace_manager)
) -> AgentWorkspace:
    """Workspace named by X-Workspace-Id, created on first use"""
    return manager.get_or_create(x_workspace_id, access_token)
