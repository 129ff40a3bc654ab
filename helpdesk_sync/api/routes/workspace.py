"""
Workspace API Routes

One agent workspace per X-Workspace-Id:
- Desk and ticket selection
- Ticket lists with search and pagination
- The open conversation and replies
- Status changes, resolution, feedback requests
- Live-update status and an event stream announcing changes
"""
import asyncio
import json
from typing import List, Optional
from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from ..deps import (
    get_correlation_id_dep, get_or_create_workspace_dep, get_workspace_dep, get_workspace_manager
)
from ...domain.enums import TicketListView
from ...domain.models import ConversationSnapshot, LiveStatusSnapshot, OutgoingAttachment, TicketPage
from ...services.workspace_service import AgentWorkspace, WorkspaceManager, parse_cc
from ...utils.logger import get_logger
from .schemas import (
    ActionResponse, ReplyResponse, SelectDeskRequest, SelectTicketRequest, StatusUpdateRequest,
    TicketResponse
)

logger = get_logger(__name__)
router = APIRouter()

KEEPALIVE_SECONDS = 15.0


# ============================================================================
# Selection
# ============================================================================

@router.put("/desk", response_model=TicketPage)
async def select_desk(
    request: SelectDeskRequest,
    workspace: AgentWorkspace = Depends(get_or_create_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Switch to a desk.

    Creates the workspace on first use, closes the open conversation,
    reloads the ticket lists and returns the first page of the active list.
    """
    return await workspace.select_desk(request.desk_id)


@router.put("/ticket", response_model=ConversationSnapshot)
async def select_ticket(
    request: SelectTicketRequest,
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Open a ticket's conversation, or close it with a null ticket_id"""
    if request.ticket_id is None:
        workspace.close_ticket()
        return await workspace.conversation_snapshot()
    return await workspace.select_ticket(request.ticket_id)


# ============================================================================
# Reads
# ============================================================================

@router.get("/tickets", response_model=TicketPage)
async def list_tickets(
    view: Optional[TicketListView] = Query(None),
    q: Optional[str] = Query(None, max_length=200),
    page: Optional[int] = Query(None, ge=1),
    workspace: AgentWorkspace = Depends(get_workspace_dep)
):
    """Page of the active list; changing view or query resets to page 1"""
    return workspace.tickets_page(view=view, query=q, page=page)


@router.get("/conversation", response_model=ConversationSnapshot)
async def get_conversation(workspace: AgentWorkspace = Depends(get_workspace_dep)):
    """Open conversation with inline content resolved"""
    return await workspace.conversation_snapshot()


@router.get("/status", response_model=LiveStatusSnapshot)
async def get_status(workspace: AgentWorkspace = Depends(get_workspace_dep)):
    """Live-update health"""
    return workspace.live_status()


# ============================================================================
# Actions
# ============================================================================

@router.post("/conversation/reply", response_model=ReplyResponse)
async def reply(
    html_content: str = Form(...),
    cc: Optional[str] = Form(None),
    is_internal: bool = Form(False),
    files: List[UploadFile] = File(default=[]),
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Reply on the open ticket.

    Accepts multipart form data; CC is a comma-separated address list.
    """
    attachments = []
    for upload in files:
        attachments.append(OutgoingAttachment(
            filename=upload.filename or "unnamed",
            content_type=upload.content_type or "application/octet-stream",
            content=await upload.read(),
        ))
    message = await workspace.send_reply(
        html_content, cc=cc, attachments=attachments, is_internal=is_internal
    )
    return ReplyResponse(message=message, recipients_cc=parse_cc(cc))


@router.post("/tickets/{ticket_id}/status", response_model=TicketResponse)
async def update_status(
    ticket_id: str,
    request: StatusUpdateRequest,
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Set a ticket's status; closing moves it to the closed list"""
    ticket = await workspace.update_ticket_status(ticket_id, request.status)
    return TicketResponse(ticket=ticket)


@router.post("/tickets/{ticket_id}/resolve", response_model=TicketResponse)
async def resolve(
    ticket_id: str,
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Send the resolution notice with the feedback scale, then close"""
    ticket = await workspace.resolve_ticket(ticket_id)
    return TicketResponse(ticket=ticket)


@router.post("/tickets/{ticket_id}/feedback", response_model=ActionResponse)
async def request_feedback(
    ticket_id: str,
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    await workspace.request_feedback(ticket_id)
    return ActionResponse(message=f"Feedback requested for {ticket_id}")


@router.post("/refresh", response_model=TicketPage)
async def refresh(
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Manual refresh; also retries degraded live updates"""
    return await workspace.refresh()


@router.delete("", response_model=ActionResponse)
async def close_workspace(
    workspace: AgentWorkspace = Depends(get_workspace_dep),
    manager: WorkspaceManager = Depends(get_workspace_manager)
):
    """Tear down subscriptions and release every inline handle"""
    await manager.remove(workspace.workspace_id)
    return ActionResponse(message=f"Workspace {workspace.workspace_id} closed")


# ============================================================================
# Event stream
# ============================================================================

@router.get("/events")
async def events(
    request: Request,
    workspace: AgentWorkspace = Depends(get_workspace_dep)
):
    """
    Server-sent events announcing changes.

    Event names are ``tickets``, ``conversation`` and ``status``; clients
    re-read the matching resource. A comment line is sent as keep-alive.
    """
    queue = workspace.subscribe()

    async def stream():
        try:
            yield f"event: status\ndata: {workspace.live_status().model_dump_json()}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if event is None:
                    break
                yield f"event: {event.type.value}\ndata: {json.dumps(event.data, default=str)}\n\n"
        finally:
            workspace.unsubscribe(queue)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    )
