"""Agent Workspace Service - one synchronized helpdesk view per agent

A workspace bundles everything one agent sees: the ticket lists of the
selected desk, the open conversation with its rendered bodies, and the
scoped subscriptions that keep both live. Workspaces are keyed by an
opaque id and kept by the ``WorkspaceManager`` for the lifetime of the
process.

User actions (select, reply, resolve, status change) run here. REST
failures surface as FetchError and leave local state untouched; follow-up
calls nobody waits on (mark as read) are logged, never raised.
"""
import asyncio
from typing import Any, Callable, Coroutine, Dict, List, Optional, Sequence, Set, Union

from pydantic import BaseModel, Field

from ..config.settings import settings
from ..domain.enums import (
    ConversationState, LiveUpdateStatus, MessageDirection, TicketListView, TicketStatus,
    WorkspaceEventType
)
from ..domain.errors import (
    AttachmentTooLargeError, DeskNotSelectedError, DomainError, EmptyReplyError, FetchError,
    NoTicketOpenError, TicketNotFoundError, WorkspaceNotFoundError
)
from ..domain.models import (
    ConversationSnapshot, LiveStatusSnapshot, Message, OutgoingAttachment, Ticket, TicketPage,
    html_to_preview
)
from ..scheduler.refresh_scheduler import RefreshScheduler
from ..sync.conversation_store import ConversationStore
from ..sync.coordinator import SubscriptionCoordinator
from ..sync.event_bus import ChangeEventBus, HttpStreamChangeEventBus, InMemoryChangeEventBus
from ..sync.ticket_list_store import TicketListStore
from ..templates.notices import RESOLUTION_SUBJECT, get_resolution_notice
from ..utils.logger import get_logger
from ..utils.time import utc_now
from .blob_registry import BlobRegistry
from .helpdesk_client import HelpdeskClient
from .inline_content import InlineContentResolver
from .message_view import ConversationView

logger = get_logger(__name__)

EVENT_QUEUE_SIZE = 100


class WorkspaceEvent(BaseModel):
    """Change announcement pushed to event-stream subscribers"""
    type: WorkspaceEventType
    data: Dict[str, Any] = Field(default_factory=dict)


def parse_cc(cc: Union[str, Sequence[str], None]) -> List[str]:
    """Comma-separated string or list -> trimmed, de-duplicated addresses"""
    if not cc:
        return []
    items = cc.split(",") if isinstance(cc, str) else cc
    result: List[str] = []
    for item in items:
        address = item.strip()
        if address and address not in result:
            result.append(address)
    return result


def create_event_bus() -> ChangeEventBus:
    """Change stream transport selected by configuration"""
    if settings.realtime_url:
        return HttpStreamChangeEventBus(settings.realtime_url, api_key=settings.realtime_api_key)
    logger.info("No realtime_url configured, using in-process change bus")
    return InMemoryChangeEventBus()


class AgentWorkspace:
    """Stores, coordinator and renderers of one agent"""

    def __init__(
        self,
        workspace_id: str,
        client: HelpdeskClient,
        bus: ChangeEventBus,
        blobs: Optional[BlobRegistry] = None,
        page_size: Optional[int] = None,
        refresh_interval_seconds: Optional[int] = None,
        coordinator_options: Optional[Dict[str, Any]] = None
    ):
        self.workspace_id = workspace_id
        self.client = client
        self.bus = bus
        self.blobs = blobs if blobs is not None else BlobRegistry()
        self.ticket_list = TicketListStore(client, page_size or settings.page_size)
        self.conversation = ConversationStore(client)
        self.coordinator = SubscriptionCoordinator(
            bus, self.ticket_list, self.conversation, **(coordinator_options or {})
        )
        self.resolver = InlineContentResolver(self.download_attachment, self.blobs)
        self.view = ConversationView(self.resolver)
        self.fallback = RefreshScheduler(
            self.refresh, interval_seconds=refresh_interval_seconds, name=workspace_id
        )
        self.created_at = utc_now()
        self._tasks: Set[asyncio.Task] = set()
        self._subscribers: List[asyncio.Queue] = []

        self.ticket_list.add_listener(lambda: self._emit(WorkspaceEventType.TICKETS))
        self.conversation.add_listener(self._on_conversation_changed)
        self.coordinator.add_listener(self._on_status_changed)

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def desk_id(self) -> Optional[str]:
        return self.coordinator.selection.desk_id

    @property
    def ticket(self) -> Optional[Ticket]:
        return self.conversation.ticket

    def _require_desk(self) -> str:
        if self.desk_id is None:
            raise DeskNotSelectedError("Select a desk first")
        return self.desk_id

    def _require_ticket(self) -> Ticket:
        if self.conversation.ticket is None:
            raise NoTicketOpenError("No ticket is open")
        return self.conversation.ticket

    def _find_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.ticket_list.find(ticket_id)
        if ticket is None and self.conversation.ticket_id == ticket_id:
            ticket = self.conversation.ticket
        if ticket is None:
            raise TicketNotFoundError(
                f"Ticket {ticket_id} is not loaded",
                details={"ticket_id": ticket_id, "desk_id": self.desk_id}
            )
        return ticket

    # =========================================================================
    # Event stream
    # =========================================================================

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event_type: WorkspaceEventType, data: Optional[Dict[str, Any]] = None) -> None:
        event = WorkspaceEvent(type=event_type, data=data or {})
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(
                    "Event subscriber is not keeping up, dropping event",
                    extra={"workspace_id": self.workspace_id}
                )

    def _on_conversation_changed(self) -> None:
        self._emit(
            WorkspaceEventType.CONVERSATION,
            {"ticket_id": self.conversation.ticket_id, "state": self.conversation.state.value}
        )

    def _on_status_changed(self, snapshot: LiveStatusSnapshot) -> None:
        if snapshot.status == LiveUpdateStatus.DEGRADED:
            if not self.fallback.is_running:
                self.fallback.start()
        elif self.fallback.is_running:
            self.fallback.stop()
        self._emit(WorkspaceEventType.STATUS, snapshot.model_dump(mode="json"))

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for background work of this workspace and its coordinator"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.coordinator.settle()

    # =========================================================================
    # Selection
    # =========================================================================

    async def select_desk(self, desk_id: str) -> TicketPage:
        """
        Switch to desk_id: the open conversation is closed, the lists are
        reloaded and the desk-scope subscription replaces the old one.
        """
        if desk_id != self.desk_id:
            self.view.discard()
            self.conversation.clear()
            self.ticket_list.reset(desk_id)
        await self.coordinator.set_desk(desk_id)
        await self.ticket_list.load()
        logger.info(f"Workspace on desk {desk_id}", extra={"workspace_id": self.workspace_id, "desk_id": desk_id})
        return self.ticket_list.current_page()

    async def select_ticket(self, ticket_id: str) -> ConversationSnapshot:
        """Open a ticket's conversation (marks it read when it was unread)"""
        desk_id = self._require_desk()
        ticket = self.ticket_list.find(ticket_id)
        if ticket is None:
            ticket = await self.client.get_ticket_by_id(ticket_id)

        if self.conversation.ticket_id != ticket.id:
            self.view.discard()
        self.coordinator.select_ticket(ticket)
        if ticket.has_unread:
            ticket = self.ticket_list.mark_read(ticket.id) or ticket.model_copy(update={"has_unread": False})
            message_id = ticket.latest_message_id or ticket.id
            self._spawn(self._mark_read(message_id, desk_id), name=f"mark-read-{ticket.id}")
        await self.conversation.select(ticket)
        return await self.conversation_snapshot()

    def close_ticket(self) -> None:
        """Close the open conversation and its subscription"""
        self.coordinator.select_ticket(None)
        self.conversation.clear()
        self.view.discard()

    async def _mark_read(self, message_id: str, desk_id: str) -> None:
        try:
            await self.client.mark_as_read(message_id, desk_id)
        except FetchError as e:
            logger.warning(
                f"Mark as read failed for {message_id}: {e.message}",
                extra={"workspace_id": self.workspace_id, "message_id": message_id}
            )

    # =========================================================================
    # Reads
    # =========================================================================

    def tickets_page(
        self,
        view: Optional[TicketListView] = None,
        query: Optional[str] = None,
        page: Optional[int] = None
    ) -> TicketPage:
        self._require_desk()
        if view is not None:
            self.ticket_list.set_view(view)
        if query is not None:
            self.ticket_list.set_query(query)
        if page is not None:
            self.ticket_list.set_page(page)
        return self.ticket_list.current_page()

    async def conversation_snapshot(self) -> ConversationSnapshot:
        store = self.conversation
        rendered = []
        if store.state == ConversationState.READY:
            rendered = await self.view.render(store.messages)
        return ConversationSnapshot(
            state=store.state,
            ticket=store.ticket,
            messages=rendered,
            error=store.error.to_dict()["error"] if store.error else None,
        )

    def live_status(self) -> LiveStatusSnapshot:
        return self.coordinator.status()

    async def download_attachment(self, storage_key: str) -> bytes:
        desk_id = self._require_desk()
        return await self.client.download_by_storage_key(storage_key, desk_id)

    # =========================================================================
    # Actions
    # =========================================================================

    def _latest_incoming(self, ticket: Ticket) -> str:
        """Provider message a reply or notice is threaded onto"""
        if self.conversation.ticket_id == ticket.id:
            for message in reversed(self.conversation.messages):
                if message.direction == MessageDirection.INCOMING and not message.is_internal:
                    return message.id
        return ticket.latest_message_id or ticket.id

    async def send_reply(
        self,
        html_content: str,
        cc: Union[str, Sequence[str], None] = None,
        attachments: Sequence[OutgoingAttachment] = (),
        is_internal: bool = False
    ) -> Optional[Message]:
        """
        Reply on the open ticket.

        Legacy email tickets reply in the provider thread, native tickets
        through the ticket endpoint. The sent message is folded into both
        stores; when the backend does not echo it, the conversation is
        re-read instead.
        """
        desk_id = self._require_desk()
        ticket = self._require_ticket()
        if not html_to_preview(html_content) and not attachments:
            raise EmptyReplyError("Reply cannot be empty")
        for attachment in attachments:
            if attachment.size > settings.attachments_max_bytes:
                raise AttachmentTooLargeError(
                    f"File exceeds maximum size of {settings.attachments_max_mb}MB",
                    details={
                        "filename": attachment.filename,
                        "size_bytes": attachment.size,
                        "max_bytes": settings.attachments_max_bytes
                    }
                )

        recipients = parse_cc(cc)
        if ticket.is_email_thread:
            sent = await self.client.reply(
                self._latest_incoming(ticket), desk_id, html_content, recipients, attachments
            )
        else:
            sent = await self.client.send_ticket_reply(
                ticket.id, desk_id, html_content, attachments, is_internal
            )
        logger.info(
            f"Reply sent on ticket {ticket.id}",
            extra={"workspace_id": self.workspace_id, "ticket_id": ticket.id, "desk_id": desk_id}
        )

        if sent is None:
            await self.conversation.reload()
        else:
            if sent.ticket_id is None and sent.conversation_id is None:
                sent = sent.model_copy(update={"ticket_id": ticket.id})
            if sent.direction != MessageDirection.OUTGOING:
                sent = sent.model_copy(update={"direction": MessageDirection.OUTGOING})
            self.coordinator.apply_message(sent)
        self.ticket_list.mark_read(ticket.id)
        return sent

    async def update_ticket_status(self, ticket_id: str, status: TicketStatus) -> Ticket:
        old = self._find_ticket(ticket_id)
        updated = await self.client.update_ticket(ticket_id, {"status": status.value})
        await self.coordinator.apply_ticket_update(old, updated)
        logger.info(
            f"Ticket {ticket_id} status set to {status.value}",
            extra={"workspace_id": self.workspace_id, "ticket_id": ticket_id}
        )
        return self.ticket_list.find(ticket_id) or updated

    async def resolve_ticket(self, ticket_id: Optional[str] = None) -> Ticket:
        """Send the resolution notice, then close the ticket"""
        desk_id = self._require_desk()
        ticket = self._find_ticket(ticket_id) if ticket_id else self._require_ticket()
        await self.client.send_resolution_notice(
            self._latest_incoming(ticket),
            desk_id,
            get_resolution_notice(ticket.number),
            RESOLUTION_SUBJECT,
        )
        return await self.update_ticket_status(ticket.id, TicketStatus.CLOSED)

    async def request_feedback(self, ticket_id: str) -> None:
        self._find_ticket(ticket_id)
        await self.client.request_feedback(ticket_id)

    async def refresh(self) -> TicketPage:
        """
        Manual refresh: reload the lists and the open conversation, and try
        live updates again if they are degraded.
        """
        self._require_desk()
        await self.ticket_list.load()
        if self.conversation.ticket is not None:
            await self.conversation.reload()
        if self.coordinator.degraded:
            await self.coordinator.reconnect()
        return self.ticket_list.current_page()

    async def close(self) -> None:
        self.fallback.stop()
        await self.coordinator.close()
        self.view.discard()
        self.conversation.clear()
        await self.settle()
        # None tells event-stream consumers the workspace is gone
        for queue in list(self._subscribers):
            while queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        self._subscribers.clear()


# =============================================================================
# Workspace manager
# =============================================================================

class WorkspaceManager:
    """
    Per-agent workspaces keyed by workspace id.

    Single-process, single-event-loop. The change bus is shared by all
    workspaces; each workspace gets its own REST client carrying the agent's
    token.
    """

    def __init__(
        self,
        bus: Optional[ChangeEventBus] = None,
        client_factory: Optional[Callable[[Optional[str]], HelpdeskClient]] = None,
        blobs: Optional[BlobRegistry] = None,
        workspace_options: Optional[Dict[str, Any]] = None
    ):
        self.bus = bus if bus is not None else create_event_bus()
        self._client_factory = client_factory or (lambda token: HelpdeskClient(access_token=token))
        self.blobs = blobs if blobs is not None else BlobRegistry()
        self._workspace_options = workspace_options or {}
        self._workspaces: Dict[str, AgentWorkspace] = {}

    def get(self, workspace_id: str) -> AgentWorkspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(
                f"Workspace {workspace_id} not found",
                details={"workspace_id": workspace_id}
            )
        return workspace

    def get_or_create(self, workspace_id: str, access_token: Optional[str] = None) -> AgentWorkspace:
        if workspace_id not in self._workspaces:
            self._workspaces[workspace_id] = AgentWorkspace(
                workspace_id,
                self._client_factory(access_token),
                self.bus,
                blobs=self.blobs,
                **self._workspace_options
            )
            logger.info(f"Created workspace {workspace_id}", extra={"workspace_id": workspace_id})
        return self._workspaces[workspace_id]

    def list_workspaces(self) -> List[str]:
        return list(self._workspaces.keys())

    async def remove(self, workspace_id: str) -> None:
        """Close and forget a workspace; unknown ids are ignored"""
        workspace = self._workspaces.pop(workspace_id, None)
        if workspace is None:
            return
        try:
            await workspace.close()
        finally:
            await workspace.client.aclose()
        logger.info(f"Removed workspace {workspace_id}", extra={"workspace_id": workspace_id})

    async def aclose(self) -> None:
        for workspace_id in list(self._workspaces):
            try:
                await self.remove(workspace_id)
            except DomainError as e:
                logger.warning(f"Error closing workspace {workspace_id}: {e.message}")
        await self.bus.aclose()
