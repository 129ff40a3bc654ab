"""Domain Models - Pydantic schemas for all entities

Records reach this process in two shapes: native rows from the ticket
backend (snake_case, ``content``/``created_at``) and email-provider messages
(``conversationId``, ``bodyPreview``, ``from.emailAddress``...). The
``mode="before"`` validators fold both into one vocabulary so the stores
never see provider-specific keys.
"""
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import (
    TicketStatus, MessageDirection, ChangeTable, ChangeType, ScopeKind,
    SubscriptionState, TicketListView, LiveUpdateStatus, ConversationState
)
from ..utils.time import coerce_datetime, utc_now


PREVIEW_LENGTH = 200

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


def html_to_preview(html: str, limit: int = PREVIEW_LENGTH) -> str:
    """Plain-text preview of an HTML body"""
    text = _TAG_RE.sub(" ", html or "")
    text = text.replace("&nbsp;", " ").replace("&amp;", "&")
    text = _SPACE_RE.sub(" ", text).strip()
    return text[:limit]


def _first(data: Dict[str, Any], *keys: str) -> Any:
    """First non-None value among keys"""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _as_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


# ============================================================================
# Desk
# ============================================================================

class Desk(BaseModel):
    """Inbox/queue scope tickets belong to"""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    agent_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, (str, int)):
            data = {"id": data}
        if not isinstance(data, dict):
            return data
        desk_id = _as_id(_first(data, "id", "desk_id"))
        agents = _first(data, "agent_ids", "assignedAgents", "agents") or []
        return {
            "id": desk_id,
            "name": _first(data, "name", "desk_name") or f"Desk {desk_id or ''}".strip(),
            "agent_ids": [str(a.get("id") if isinstance(a, dict) else a) for a in agents],
        }


# ============================================================================
# Attachments & Messages
# ============================================================================

class AttachmentDescriptor(BaseModel):
    """Attachment metadata carried on a message"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    storage_key: Optional[str] = Field(None, description="Key for authenticated download")
    name: Optional[str] = None
    content_type: Optional[str] = None
    content_id: Optional[str] = Field(None, description="cid referenced from inline HTML")
    is_inline: bool = False
    size: Optional[int] = None
    url: Optional[str] = Field(None, description="Remote URL usable as-is")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            "id": _as_id(_first(data, "id", "attachment_id")),
            "storage_key": _first(data, "storage_key", "s3Key", "s3_key", "key"),
            "name": _first(data, "name", "filename", "file_name"),
            "content_type": _first(data, "content_type", "contentType", "mimeType", "mime_type"),
            "content_id": _first(data, "content_id", "contentId", "cid"),
            "is_inline": bool(_first(data, "is_inline", "isInline", "inline") or False),
            "size": _first(data, "size", "size_bytes"),
            "url": _first(data, "url", "contentUrl", "download_url"),
        }


class Message(BaseModel):
    """One unit of conversation content"""
    model_config = ConfigDict(extra="ignore")

    id: str
    ticket_id: Optional[str] = None
    conversation_id: Optional[str] = Field(None, description="Legacy email-provider thread id")
    desk_id: Optional[str] = None
    direction: MessageDirection = MessageDirection.INCOMING
    is_internal: bool = False
    is_read: Optional[bool] = None
    sender_name: Optional[str] = None
    sender_address: Optional[str] = None
    subject: Optional[str] = None
    body_html: str = ""
    preview: str = ""
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    attachments: List[AttachmentDescriptor] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        body = data.get("body")
        if isinstance(body, dict):
            body = body.get("content")
        body_html = _first(data, "body_html", "content", "html") or body or ""

        sender = data.get("from") or data.get("sender")
        sender_name = _first(data, "sender_name", "fromName", "from_name")
        sender_address = _first(data, "sender_address", "sender_email", "from_email", "fromAddress")
        if isinstance(sender, dict):
            address = sender.get("emailAddress", sender)
            sender_name = sender_name or address.get("name")
            sender_address = sender_address or address.get("address")

        direction = data.get("direction")
        if direction is None:
            outgoing = _first(data, "is_from_agent", "isFromCurrentUser", "is_outgoing")
            direction = MessageDirection.OUTGOING if outgoing else MessageDirection.INCOMING

        return {
            "id": _as_id(_first(data, "id", "message_id")),
            "ticket_id": _as_id(_first(data, "ticket_id", "ticketId")),
            "conversation_id": _as_id(_first(data, "conversation_id", "conversationId", "legacy_conversation_id")),
            "desk_id": _as_id(_first(data, "desk_id", "deskId")),
            "direction": direction,
            "is_internal": bool(_first(data, "is_internal", "isInternal") or False),
            "is_read": _first(data, "is_read", "isRead"),
            "sender_name": sender_name,
            "sender_address": sender_address,
            "subject": data.get("subject"),
            "body_html": body_html,
            "preview": _first(data, "preview", "bodyPreview", "body_preview") or html_to_preview(body_html),
            "created_at": coerce_datetime(_first(data, "created_at", "createdDateTime")),
            "sent_at": coerce_datetime(_first(data, "sent_at", "sentDateTime")),
            "received_at": coerce_datetime(_first(data, "received_at", "receivedDateTime")),
            "attachments": data.get("attachments") or [],
        }

    @property
    def best_timestamp(self) -> Optional[datetime]:
        """created, else sent, else received"""
        return self.created_at or self.sent_at or self.received_at


# ============================================================================
# Tickets
# ============================================================================

_STATUS_ALIASES = {
    "resolved": TicketStatus.CLOSED,
    "solved": TicketStatus.CLOSED,
    "in_progress": TicketStatus.OPEN,
    "waiting": TicketStatus.PENDING,
}


def coerce_status(value: Any) -> Optional[TicketStatus]:
    """Map a backend status string onto TicketStatus (None if absent)"""
    if value is None or value == "":
        return None
    if isinstance(value, TicketStatus):
        return value
    text = str(value).strip().lower()
    if text in _STATUS_ALIASES:
        return _STATUS_ALIASES[text]
    try:
        return TicketStatus(text)
    except ValueError:
        return TicketStatus.OPEN


class Ticket(BaseModel):
    """Ticket summary as held by the ticket lists"""
    model_config = ConfigDict(extra="ignore")

    id: str
    number: Optional[int] = Field(None, description="Human-facing sequence number")
    subject: str = ""
    status: TicketStatus = TicketStatus.NEW
    desk_id: Optional[str] = None
    conversation_id: Optional[str] = Field(None, description="Legacy email-provider thread id")
    sender_name: Optional[str] = None
    sender_address: Optional[str] = None
    preview: str = ""
    has_unread: bool = False
    message_count: int = 0
    latest_message_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    messages: List[Message] = Field(default_factory=list, description="Summarized message cache")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        is_read = data.get("isRead")
        has_unread = _first(data, "has_unread", "hasUnread", "unread")
        if has_unread is None and is_read is not None:
            has_unread = not is_read
        normalized = {
            "id": _as_id(_first(data, "id", "ticket_id")),
            "number": _first(data, "number", "ticket_number", "sequence_number"),
            "subject": _first(data, "subject", "title") or "",
            "status": coerce_status(data.get("status")) or TicketStatus.NEW,
            "desk_id": _as_id(_first(data, "desk_id", "deskId")),
            "conversation_id": _as_id(_first(data, "conversation_id", "conversationId", "legacy_conversation_id")),
            "sender_name": _first(data, "sender_name", "fromName", "customer_name"),
            "sender_address": _first(data, "sender_address", "customer_email", "fromAddress", "from_email"),
            "preview": _first(data, "preview", "bodyPreview", "description") or "",
            "has_unread": bool(has_unread or False),
            "message_count": _first(data, "message_count", "messageCount") or 0,
            "latest_message_id": _as_id(_first(data, "latest_message_id", "latestMessageId", "email_message_id")),
            "created_at": coerce_datetime(_first(data, "created_at", "createdDateTime")),
            "last_activity_at": coerce_datetime(
                _first(data, "last_activity_at", "lastActivityAt", "updated_at", "receivedDateTime")
            ),
            "messages": data.get("messages") or [],
        }
        if isinstance(normalized["preview"], str):
            normalized["preview"] = html_to_preview(normalized["preview"])
        return normalized

    @property
    def activity_at(self) -> Optional[datetime]:
        """Last activity, falling back to creation time"""
        return self.last_activity_at or self.created_at

    @property
    def is_closed(self) -> bool:
        return self.status == TicketStatus.CLOSED

    @property
    def is_email_thread(self) -> bool:
        """Ticket that only exists as an email-provider thread"""
        return self.conversation_id is not None and self.id == self.conversation_id

    def owns(self, message: Message) -> bool:
        """Whether message belongs to this ticket (canonical or legacy id)"""
        if message.ticket_id and message.ticket_id == self.id:
            return True
        if self.conversation_id and message.conversation_id == self.conversation_id:
            return True
        return False


# ============================================================================
# Change Stream
# ============================================================================

class ScopeFilter(BaseModel):
    """Equality predicate over one record field"""
    model_config = ConfigDict(frozen=True)

    field: str
    value: str

    def matches(self, record: Dict[str, Any]) -> bool:
        value = record.get(self.field)
        return value is not None and str(value) == self.value

    def as_param(self) -> str:
        """PostgREST-style rendering used by the HTTP stream transport"""
        return f"{self.field}.eq.{self.value}"


class ChangeEvent(BaseModel):
    """One insert/update delivered by the change stream"""
    table: ChangeTable
    type: ChangeType
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Optional[Dict[str, Any]] = None


class SubscriptionSpec(BaseModel):
    """What one scoped subscription listens to"""
    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    scope_key: str
    filters: List[ScopeFilter]
    tables: Dict[ChangeTable, List[ChangeType]]

    def matches(self, record: Dict[str, Any]) -> bool:
        """Filters are ORed"""
        return any(f.matches(record) for f in self.filters)

    def wants(self, table: ChangeTable, change_type: ChangeType) -> bool:
        return change_type in self.tables.get(table, [])


class SubscriptionHandle(BaseModel):
    """One live scoped stream connection"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    handle_id: str
    spec: SubscriptionSpec
    state: SubscriptionState = SubscriptionState.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None

    @property
    def scope_key(self) -> str:
        return self.spec.scope_key


# ============================================================================
# Views
# ============================================================================

class OutgoingAttachment(BaseModel):
    """File attached to a reply"""
    filename: str
    content_type: str = "application/octet-stream"
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class TicketPage(BaseModel):
    """One page of the (optionally filtered) active ticket list"""
    view: TicketListView
    query: str = ""
    page: int = 1
    page_size: int
    total: int
    total_pages: int
    items: List[Ticket] = Field(default_factory=list)


class RenderedMessage(BaseModel):
    """Message with its body resolved for display"""
    message: Message
    html: str


class ConversationSnapshot(BaseModel):
    """What the presentation layer sees of the open conversation"""
    state: ConversationState
    ticket: Optional[Ticket] = None
    messages: List[RenderedMessage] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None


class LiveStatusSnapshot(BaseModel):
    """Live update health plus per-scope handle states"""
    status: LiveUpdateStatus
    desk_id: Optional[str] = None
    ticket_id: Optional[str] = None
    scopes: Dict[str, SubscriptionState] = Field(default_factory=dict)
    detail: Optional[str] = None
