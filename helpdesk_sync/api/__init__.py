"""API module - Routes and dependencies"""
from .deps import get_correlation_id_dep, get_workspace_dep, get_or_create_workspace_dep

__all__ = ["get_correlation_id_dep", "get_workspace_dep", "get_or_create_workspace_dep"]
