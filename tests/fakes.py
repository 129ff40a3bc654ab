"""
Test Fakes

Factories for tickets and messages, and an in-memory fake of the helpdesk
REST backend.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from helpdesk_sync.domain.errors import FetchError
from helpdesk_sync.domain.models import Message, Ticket


T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

FAST_COORDINATOR = {
    "debounce_seconds": 0.01,
    "retry_base_seconds": 0.01,
    "retry_max_seconds": 0.05,
    "retry_jitter": 0.0,
    "retry_max_attempts": 3,
}


# ============================================================================
# Factories
# ============================================================================

def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


async def settle_all(bus, coordinator) -> None:
    """Run bus error reports and coordinator retries until both are quiet"""
    while bus.pending_reports or coordinator.busy:
        await bus.settle()
        await coordinator.settle()


def ticket_record(ticket_id: str, desk_id: str = "D1", status: str = "open", **fields: Any) -> Dict[str, Any]:
    record = {
        "id": ticket_id,
        "desk_id": desk_id,
        "status": status,
        "subject": fields.pop("subject", f"Subject {ticket_id}"),
        "created_at": fields.pop("created_at", T0.isoformat()),
        "last_activity_at": fields.pop("last_activity_at", T0.isoformat()),
    }
    record.update(fields)
    return record


def make_ticket(ticket_id: str, desk_id: str = "D1", status: str = "open", **fields: Any) -> Ticket:
    return Ticket.model_validate(ticket_record(ticket_id, desk_id, status, **fields))


def message_record(
    message_id: str,
    ticket_id: Optional[str] = "T1",
    created_at: Optional[datetime] = None,
    desk_id: str = "D1",
    **fields: Any
) -> Dict[str, Any]:
    record = {
        "id": message_id,
        "ticket_id": ticket_id,
        "desk_id": desk_id,
        "content": fields.pop("content", f"<p>Body of {message_id}</p>"),
        "direction": fields.pop("direction", "incoming"),
    }
    if created_at is not None:
        record["created_at"] = created_at.isoformat()
    record.update(fields)
    return record


def make_message(
    message_id: str,
    ticket_id: Optional[str] = "T1",
    created_at: Optional[datetime] = None,
    **fields: Any
) -> Message:
    return Message.model_validate(message_record(message_id, ticket_id, created_at, **fields))


# ============================================================================
# Fake helpdesk backend
# ============================================================================

class FakeHelpdeskClient:
    """
    In-memory stand-in for HelpdeskClient.

    ``fail_ops`` makes the named operations raise FetchError. ``gates``
    holds conversation fetches for a ticket (or list reads, keyed
    ``tickets:<status>``) until the test releases them.
    """

    def __init__(self):
        self.tickets: Dict[str, Ticket] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.fail_ops: Set[str] = set()
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[tuple] = []
        self.reply_echo = True
        self.closed = False

    # --- setup helpers ---

    def add_ticket(self, ticket: Ticket, messages: Optional[List[Message]] = None) -> Ticket:
        self.tickets[ticket.id] = ticket
        key = ticket.conversation_id if ticket.is_email_thread else ticket.id
        self.messages[key] = list(messages or [])
        return ticket

    def gate(self, key: str) -> asyncio.Event:
        self.gates[key] = asyncio.Event()
        return self.gates[key]

    def _check(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, *args))
        if operation in self.fail_ops:
            raise FetchError(f"{operation} failed", operation=operation, status_code=500)

    def called(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    # --- HelpdeskClient surface ---

    async def get_tickets_by_status(self, desk_id: str, status: str) -> List[Ticket]:
        self._check("get_tickets_by_status", desk_id, status)
        gate = self.gates.get(f"tickets:{status}")
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        want_closed = status == "closed"
        return [
            t for t in self.tickets.values()
            if t.desk_id == desk_id and t.is_closed == want_closed
        ]

    async def get_ticket_by_id(self, ticket_id: str) -> Ticket:
        self._check("get_ticket_by_id", ticket_id)
        await asyncio.sleep(0)
        if ticket_id not in self.tickets:
            raise FetchError("Ticket not found", operation="get_ticket_by_id", status_code=404)
        return self.tickets[ticket_id]

    async def get_ticket_messages(
        self, ticket_id: Optional[str] = None, conversation_id: Optional[str] = None
    ) -> List[Message]:
        key = ticket_id or conversation_id
        self._check("get_ticket_messages", key)
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        return list(self.messages.get(key, []))

    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Ticket:
        self._check("update_ticket", ticket_id, fields)
        await asyncio.sleep(0)
        updated = self.tickets[ticket_id].model_copy(
            update={"status": Ticket.model_validate({"id": ticket_id, **fields}).status}
        )
        self.tickets[ticket_id] = updated
        return updated

    async def request_feedback(self, ticket_id: str) -> None:
        self._check("request_feedback", ticket_id)

    async def reply(self, email_or_message_id, desk_id, html_content, cc=(), attachments=()):
        self._check("reply", email_or_message_id, desk_id, html_content, list(cc), len(attachments))
        if not self.reply_echo:
            return None
        return make_message(
            f"sent-{len(self.calls)}", ticket_id=None, created_at=at(3600),
            content=html_content, direction="outgoing"
        )

    async def send_ticket_reply(self, ticket_id, desk_id, html_content, attachments=(), is_internal=False):
        self._check("send_ticket_reply", ticket_id, desk_id, html_content, len(attachments), is_internal)
        if not self.reply_echo:
            return None
        return make_message(
            f"sent-{len(self.calls)}", ticket_id=ticket_id, created_at=at(3600),
            content=html_content, direction="outgoing", is_internal=is_internal
        )

    async def mark_as_read(self, message_id: str, desk_id: str) -> None:
        self._check("mark_as_read", message_id, desk_id)

    async def send_resolution_notice(self, message_id, desk_id, content, subject) -> None:
        self._check("send_resolution_notice", message_id, desk_id, content, subject)

    async def download_by_storage_key(self, key: str, desk_id: str) -> bytes:
        self._check("download_by_storage_key", key, desk_id)
        if key not in self.blobs:
            raise FetchError("Attachment not found", operation="download_by_storage_key", status_code=404)
        return self.blobs[key]

    async def aclose(self) -> None:
        self.closed = True
