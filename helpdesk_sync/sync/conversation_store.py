"""Conversation Store - message list of the currently open ticket

States: EMPTY -> LOADING -> READY | ERROR. Selecting a ticket starts a
full fetch; events for the ticket that arrive while the fetch is in flight
are buffered and folded in once it lands, so nothing is lost in between.
A fetch that resolves after the selection moved on is discarded.
"""
from typing import Callable, List, Optional, Tuple

from ..domain.enums import ConversationState
from ..domain.errors import FetchError, StaleResponseError
from ..domain.models import Message, Ticket
from ..utils.logger import get_logger
from .ordering import merge_message, merge_messages, replace_message

logger = get_logger(__name__)

_INSERT = "insert"
_UPDATE = "update"


class ConversationStore:
    """Owns the displayed message list for one ticket"""

    def __init__(self, client):
        self._client = client
        self.state: ConversationState = ConversationState.EMPTY
        self.ticket: Optional[Ticket] = None
        self.messages: List[Message] = []
        self.error: Optional[FetchError] = None
        self._generation = 0
        self._pending: List[Tuple[str, Message]] = []
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
                logger.warning(f"Conversation listener failed: {e}")

    # =========================================================================
    # Selection
    # =========================================================================

    @property
    def ticket_id(self) -> Optional[str]:
        return self.ticket.id if self.ticket else None

    def _ensure_current(self, generation: int, ticket: Ticket) -> None:
        if (
            self.ticket is None
            or self.ticket.id != ticket.id
            or generation != self._generation
        ):
            raise StaleResponseError(
                f"Conversation fetch for {ticket.id} resolved after selection changed",
                details={"ticket_id": ticket.id, "current_ticket_id": self.ticket_id}
            )

    async def select(self, ticket: Ticket) -> None:
        """
        Open ticket and load its full message list.

        Never raises FetchError: a failed load moves to ERROR and is
        recovered by selecting the ticket again.
        """
        self._generation += 1
        generation = self._generation
        self.ticket = ticket
        self.state = ConversationState.LOADING
        self.messages = []
        self.error = None
        self._pending = []
        self._notify()

        try:
            if ticket.is_email_thread:
                fetched = await self._client.get_ticket_messages(conversation_id=ticket.conversation_id)
            else:
                fetched = await self._client.get_ticket_messages(ticket_id=ticket.id)
            self._ensure_current(generation, ticket)
        except StaleResponseError as e:
            logger.debug(e.message, extra={"ticket_id": ticket.id})
            return
        except FetchError as e:
            if generation != self._generation:
                logger.debug(
                    f"Ignoring failed fetch for stale selection {ticket.id}",
                    extra={"ticket_id": ticket.id}
                )
                return
            self.state = ConversationState.ERROR
            self.error = e
            logger.warning(
                f"Failed to load conversation {ticket.id}: {e.message}",
                extra={"ticket_id": ticket.id}
            )
            self._notify()
            return

        messages = merge_messages([], fetched)
        for kind, message in self._pending:
            if kind == _INSERT:
                messages = merge_message(messages, message)
            else:
                messages = replace_message(messages, message)
        self._pending = []
        self.messages = messages
        self.state = ConversationState.READY
        logger.info(
            f"Conversation {ticket.id} ready with {len(messages)} messages",
            extra={"ticket_id": ticket.id}
        )
        self._notify()

    async def reload(self) -> None:
        """Re-select the current ticket (recovers from ERROR)"""
        if self.ticket is not None:
            await self.select(self.ticket)

    def clear(self) -> None:
        """Close the conversation; in-flight fetches become stale"""
        self._generation += 1
        self.ticket = None
        self.state = ConversationState.EMPTY
        self.messages = []
        self.error = None
        self._pending = []
        self._notify()

    def update_ticket(self, ticket: Ticket) -> None:
        """Refresh the summary of the open ticket (e.g. after a status change)"""
        if self.ticket is not None and self.ticket.id == ticket.id:
            self.ticket = ticket
            self._notify()

    # =========================================================================
    # Events
    # =========================================================================

    def _accepts(self, message: Message) -> bool:
        return self.ticket is not None and self.ticket.owns(message)

    def apply_insert(self, message: Message) -> bool:
        """Fold a new message in; returns whether it belonged to this ticket"""
        if not self._accepts(message):
            return False
        if self.state == ConversationState.LOADING:
            self._pending.append((_INSERT, message))
            return True
        if self.state != ConversationState.READY:
            return False
        merged = merge_message(self.messages, message)
        if len(merged) != len(self.messages):
            self.messages = merged
            self._notify()
        return True

    def apply_update(self, message: Message) -> bool:
        """Replace a message by id (implicit insert if unseen)"""
        if not self._accepts(message):
            return False
        if self.state == ConversationState.LOADING:
            self._pending.append((_UPDATE, message))
            return True
        if self.state != ConversationState.READY:
            return False
        self.messages = replace_message(self.messages, message)
        self._notify()
        return True
