"""
Workspace API Schemas

Request and response models for the agent workspace endpoints.
"""
from typing import List, Optional
from pydantic import BaseModel, Field

from ...domain.enums import TicketStatus
from ...domain.models import Message, Ticket


# ============================================================================
# Request Models
# ============================================================================

class SelectDeskRequest(BaseModel):
    """Switch the workspace to a desk"""
    desk_id: str = Field(..., min_length=1)


class SelectTicketRequest(BaseModel):
    """Open a ticket's conversation; null closes the open one"""
    ticket_id: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    """Set a ticket's status"""
    status: TicketStatus


# ============================================================================
# Response Models
# ============================================================================

class TicketResponse(BaseModel):
    """Ticket summary after an action"""
    ticket: Ticket


class ReplyResponse(BaseModel):
    """Sent message, if the backend echoed it"""
    message: Optional[Message] = None
    recipients_cc: List[str] = Field(default_factory=list)


class ActionResponse(BaseModel):
    """Generic action result"""
    ok: bool = True
    message: str = ""
