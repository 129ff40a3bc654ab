"""Service modules - Business logic layer"""
from .helpdesk_client import HelpdeskClient
from .blob_registry import BlobRegistry
from .inline_content import InlineContentResolver
from .message_view import ConversationView
from .workspace_service import AgentWorkspace, WorkspaceManager

__all__ = [
    "HelpdeskClient",
    "BlobRegistry",
    "InlineContentResolver",
    "ConversationView",
    "AgentWorkspace",
    "WorkspaceManager",
]
