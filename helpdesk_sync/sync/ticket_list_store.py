"""Ticket List Store - open, closed and unread ticket collections of one desk

The lists are kept most-recent-first: activity moves a ticket to the front
of every list holding it, everything else keeps its relative position. A
ticket id lives in at most one of {open, closed}; the unread view is a
subset of open.

Search and pagination never touch the lists. They produce a derived view
of the active list which resets to page 1 whenever the query or the active
list changes.
"""
import math
from typing import Callable, Dict, List, Optional, Tuple

from ..domain.enums import MessageDirection, TicketListView, TicketStatus
from ..domain.errors import FetchError
from ..domain.models import Message, Ticket, TicketPage
from ..utils.logger import get_logger
from .ordering import contains, merge_message, message_timestamp, replace_message

logger = get_logger(__name__)

_TICKET_INSERT = "ticket_insert"
_TICKET_UPDATE = "ticket_update"
_MESSAGE_INSERT = "message_insert"
_MESSAGE_UPDATE = "message_update"


class TicketListStore:
    """Owns the ticket summaries shown in the sidebar"""

    def __init__(self, client, page_size: int = 20):
        self._client = client
        self.page_size = page_size
        self.desk_id: Optional[str] = None
        self.lists: Dict[TicketListView, List[Ticket]] = {view: [] for view in TicketListView}
        self.active_view = TicketListView.OPEN
        self.query = ""
        self.page = 1
        self._generation = 0
        self._buffers: List[List[Tuple[str, tuple]]] = []
        self._listeners: List[Callable[[], None]] = []

    # =========================================================================
    # Change notification
    # =========================================================================

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Ticket list listener failed: {e}")

    # =========================================================================
    # Loading
    # =========================================================================

    def reset(self, desk_id: Optional[str]) -> None:
        """Forget every list; in-flight loads for the old desk become stale"""
        self._generation += 1
        self.desk_id = desk_id
        self.lists = {view: [] for view in TicketListView}
        self.page = 1
        self._notify()

    async def load(self) -> None:
        """
        Replace all lists with a fresh read of the current desk.

        Raises FetchError and leaves the lists untouched when either read
        fails. A load that resolves after a desk switch is discarded.
        Events applied while the reads are in flight are replayed over the
        fetched lists.
        """
        if self.desk_id is None:
            return
        desk_id = self.desk_id
        generation = self._generation
        buffer: List[Tuple[str, tuple]] = []
        self._buffers.append(buffer)
        try:
            open_tickets = await self._client.get_tickets_by_status(desk_id, TicketStatus.OPEN.value)
            closed_tickets = await self._client.get_tickets_by_status(desk_id, TicketStatus.CLOSED.value)
        finally:
            self._buffers.remove(buffer)
        if generation != self._generation or desk_id != self.desk_id:
            logger.debug(f"Discarding stale ticket lists for desk {desk_id}", extra={"desk_id": desk_id})
            return

        closed_ids = {t.id for t in closed_tickets}
        open_list = _dedupe([t for t in open_tickets if t.id not in closed_ids and not t.is_closed])
        closed_list = _dedupe(closed_tickets)
        self.lists = {
            TicketListView.OPEN: open_list,
            TicketListView.CLOSED: closed_list,
            TicketListView.UNREAD: [t for t in open_list if t.has_unread],
        }
        logger.info(
            f"Loaded {len(open_list)} open and {len(closed_list)} closed tickets",
            extra={"desk_id": desk_id}
        )
        if buffer:
            logger.debug(f"Replaying {len(buffer)} events received during load", extra={"desk_id": desk_id})
            await self._replay(buffer)
        self._clamp_page()
        self._notify()

    def _record(self, kind: str, *args) -> None:
        for buffer in self._buffers:
            buffer.append((kind, args))

    async def _replay(self, buffer: List[Tuple[str, tuple]]) -> None:
        for kind, args in buffer:
            if kind == _TICKET_INSERT:
                self.apply_ticket_insert(*args)
            elif kind == _TICKET_UPDATE:
                await self.apply_ticket_update(*args)
            elif kind == _MESSAGE_INSERT:
                self.apply_message_insert(*args)
            else:
                self.apply_message_update(*args)

    # =========================================================================
    # Lookup
    # =========================================================================

    def find(self, ticket_id: str) -> Optional[Ticket]:
        for view in (TicketListView.OPEN, TicketListView.CLOSED):
            for ticket in self.lists[view]:
                if ticket.id == ticket_id:
                    return ticket
        return None

    def find_owner(self, message: Message) -> Optional[Ticket]:
        """Ticket a message belongs to, by ticket id or legacy conversation id"""
        for view in (TicketListView.OPEN, TicketListView.CLOSED):
            for ticket in self.lists[view]:
                if ticket.owns(message):
                    return ticket
        return None

    def _views_holding(self, ticket_id: str) -> List[TicketListView]:
        return [
            view for view in TicketListView
            if any(t.id == ticket_id for t in self.lists[view])
        ]

    def _remove(self, ticket_id: str, views: Tuple[TicketListView, ...] = tuple(TicketListView)) -> None:
        for view in views:
            self.lists[view] = [t for t in self.lists[view] if t.id != ticket_id]

    def _replace(self, ticket: Ticket, to_front: bool) -> None:
        """Swap the stored copy in every list that holds it"""
        for view in self._views_holding(ticket.id):
            items = self.lists[view]
            if to_front:
                self.lists[view] = [ticket] + [t for t in items if t.id != ticket.id]
            else:
                self.lists[view] = [ticket if t.id == ticket.id else t for t in items]

    def _sync_unread(self, ticket: Ticket, to_front: bool) -> None:
        in_unread = any(t.id == ticket.id for t in self.lists[TicketListView.UNREAD])
        if ticket.has_unread and not ticket.is_closed:
            if not in_unread:
                self.lists[TicketListView.UNREAD].insert(0, ticket)
            elif to_front:
                self._replace(ticket, to_front=True)
        elif in_unread:
            self._remove(ticket.id, (TicketListView.UNREAD,))

    def _place(self, ticket: Ticket) -> None:
        """Prepend a ticket that no list holds yet"""
        if ticket.is_closed:
            self.lists[TicketListView.CLOSED].insert(0, ticket)
        else:
            self.lists[TicketListView.OPEN].insert(0, ticket)
            if ticket.has_unread:
                self.lists[TicketListView.UNREAD].insert(0, ticket)

    # =========================================================================
    # Events
    # =========================================================================

    def apply_ticket_insert(self, ticket: Ticket) -> bool:
        """Prepend unless the id is already present; returns whether it was added"""
        self._record(_TICKET_INSERT, ticket)
        if self.find(ticket.id) is not None:
            return False
        if self.desk_id is not None and ticket.desk_id and ticket.desk_id != self.desk_id:
            return False
        self._place(ticket)
        self._notify()
        return True

    async def apply_ticket_update(self, old: Optional[Ticket], new: Ticket) -> None:
        """
        Apply a ticket change.

        Closing moves the ticket out of open/unread and into closed with a
        fresh read (the closed list shows server-derived fields a field copy
        does not have). Reopening moves it back. Anything else is patched in
        place; only a newer last-activity moves it to the front. An update
        for a ticket no list holds is an implicit insert.
        """
        self._record(_TICKET_UPDATE, old, new)
        current = self.find(new.id)
        if current is None:
            if old is not None and old.desk_id and self.desk_id and old.desk_id != self.desk_id:
                return
            self.apply_ticket_insert(new)
            return

        was_closed = current.status == TicketStatus.CLOSED
        patched = _patch(current, new)

        if new.is_closed and not was_closed:
            await self._close(current, patched)
            return

        if was_closed and not new.is_closed:
            self._remove(new.id)
            self._place(patched)
            logger.info(f"Ticket {new.id} reopened", extra={"ticket_id": new.id})
            self._notify()
            return

        moved = _newer(patched, current)
        self._replace(patched, to_front=moved)
        self._sync_unread(patched, to_front=moved)
        self._notify()

    async def _close(self, current: Ticket, patched: Ticket) -> None:
        ticket_id = current.id
        generation = self._generation
        self._remove(ticket_id, (TicketListView.OPEN, TicketListView.UNREAD))
        self._notify()

        try:
            fresh = await self._client.get_ticket_by_id(ticket_id)
        except FetchError as e:
            logger.warning(
                f"Closed-ticket read failed for {ticket_id}, using event fields: {e.message}",
                extra={"ticket_id": ticket_id}
            )
            fresh = patched
        else:
            if not fresh.messages and patched.messages:
                fresh = fresh.model_copy(update={"messages": patched.messages})

        if generation != self._generation:
            logger.debug("Discarding closed-ticket read for stale desk", extra={"ticket_id": ticket_id})
            return
        if any(t.id == ticket_id for t in self.lists[TicketListView.OPEN]):
            # Reopened while the read was in flight
            return
        if not fresh.is_closed:
            fresh = fresh.model_copy(update={"status": TicketStatus.CLOSED})
        self._remove(ticket_id, (TicketListView.CLOSED,))
        self.lists[TicketListView.CLOSED].insert(0, fresh)
        logger.info(f"Ticket {ticket_id} moved to closed", extra={"ticket_id": ticket_id})
        self._notify()

    def apply_message_insert(self, message: Message) -> Optional[Ticket]:
        """
        Refresh the owning ticket's summary and move it to the front.

        Messages whose ticket is not in any loaded list are dropped; the
        next list refresh picks the ticket up.
        """
        self._record(_MESSAGE_INSERT, message)
        owner = self.find_owner(message)
        if owner is None:
            logger.debug(
                f"Dropping message {message.id}: owning ticket not loaded",
                extra={"message_id": message.id, "desk_id": self.desk_id}
            )
            return None
        if contains(owner.messages, message.id):
            return owner

        timestamp = message_timestamp(message)
        last_activity = owner.last_activity_at
        if last_activity is None or timestamp > last_activity:
            last_activity = timestamp
        unread = owner.has_unread
        if message.direction == MessageDirection.INCOMING and not message.is_internal:
            unread = True

        updated = owner.model_copy(update={
            "messages": merge_message(owner.messages, message),
            "preview": message.preview or owner.preview,
            "last_activity_at": last_activity,
            "message_count": owner.message_count + 1,
            "has_unread": unread,
            "latest_message_id": message.id,
        })
        self._replace(updated, to_front=True)
        self._sync_unread(updated, to_front=True)
        self._notify()
        return updated

    def apply_message_update(self, message: Message) -> Optional[Ticket]:
        """Keep the owning ticket's message cache in line with an edit"""
        self._record(_MESSAGE_UPDATE, message)
        owner = self.find_owner(message)
        if owner is None:
            return None
        if not contains(owner.messages, message.id):
            return self.apply_message_insert(message)
        updated = owner.model_copy(update={"messages": replace_message(owner.messages, message)})
        if owner.latest_message_id == message.id and message.preview:
            updated = updated.model_copy(update={"preview": message.preview})
        self._replace(updated, to_front=False)
        self._notify()
        return updated

    def mark_read(self, ticket_id: str) -> Optional[Ticket]:
        """Clear the unread flag locally"""
        current = self.find(ticket_id)
        if current is None or not current.has_unread:
            return current
        updated = current.model_copy(update={"has_unread": False})
        self._replace(updated, to_front=False)
        self._sync_unread(updated, to_front=False)
        self._notify()
        return updated

    # =========================================================================
    # Search & pagination
    # =========================================================================

    def set_view(self, view: TicketListView) -> None:
        if view != self.active_view:
            self.active_view = view
            self.page = 1
            self._notify()

    def set_query(self, query: str) -> None:
        query = query or ""
        if query != self.query:
            self.query = query
            self.page = 1
            self._notify()

    def set_page(self, page: int) -> None:
        self.page = max(1, page)
        self._clamp_page()

    def filtered(self) -> List[Ticket]:
        """Active list filtered by the current query, most-recent-first"""
        items = [t for t in self.lists[self.active_view] if matches_query(t, self.query)]
        return sort_by_activity(items)

    def current_page(self) -> TicketPage:
        items = self.filtered()
        total_pages = max(1, math.ceil(len(items) / self.page_size))
        page = min(self.page, total_pages)
        start = (page - 1) * self.page_size
        return TicketPage(
            view=self.active_view,
            query=self.query,
            page=page,
            page_size=self.page_size,
            total=len(items),
            total_pages=total_pages,
            items=items[start:start + self.page_size],
        )

    def _clamp_page(self) -> None:
        total_pages = max(1, math.ceil(len(self.filtered()) / self.page_size))
        self.page = min(self.page, total_pages)


# =============================================================================
# Helpers
# =============================================================================

def matches_query(ticket: Ticket, query: str) -> bool:
    """Case-insensitive substring match over the searchable fields"""
    needle = (query or "").strip().lower()
    if not needle:
        return True
    haystack = (
        ticket.id,
        ticket.subject,
        ticket.sender_name,
        ticket.sender_address,
        ticket.preview,
        str(ticket.number) if ticket.number is not None else None,
    )
    return any(needle in value.lower() for value in haystack if value)


def sort_by_activity(tickets: List[Ticket]) -> List[Ticket]:
    """Most-recent-first; ties keep their list order (stable sort)"""
    dated = [t for t in tickets if t.activity_at is not None]
    undated = [t for t in tickets if t.activity_at is None]
    return sorted(dated, key=lambda t: t.activity_at, reverse=True) + undated


def _dedupe(tickets: List[Ticket]) -> List[Ticket]:
    seen = set()
    result = []
    for ticket in tickets:
        if ticket.id not in seen:
            seen.add(ticket.id)
            result.append(ticket)
    return result


def _newer(patched: Ticket, current: Ticket) -> bool:
    if patched.last_activity_at is None:
        return False
    return current.last_activity_at is None or patched.last_activity_at > current.last_activity_at


def _patch(current: Ticket, new: Ticket) -> Ticket:
    """
    Overlay the fields an update carries onto the stored summary.

    The message cache is kept; activity never moves backwards.
    """
    update = {
        "subject": new.subject or current.subject,
        "status": new.status,
        "has_unread": new.has_unread,
        "number": new.number if new.number is not None else current.number,
        "preview": new.preview or current.preview,
        "message_count": max(new.message_count, current.message_count),
        "sender_name": new.sender_name or current.sender_name,
        "sender_address": new.sender_address or current.sender_address,
        "conversation_id": new.conversation_id or current.conversation_id,
        "latest_message_id": new.latest_message_id or current.latest_message_id,
    }
    if new.last_activity_at and (
        current.last_activity_at is None or new.last_activity_at > current.last_activity_at
    ):
        update["last_activity_at"] = new.last_activity_at
    return current.model_copy(update=update)
