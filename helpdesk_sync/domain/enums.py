"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class TicketStatus(str, Enum):
    """Ticket lifecycle status"""
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    """Which way a message travelled relative to the desk"""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class ChangeTable(str, Enum):
    """Backend tables carried by the change stream"""
    TICKETS = "tickets"
    MESSAGES = "messages"


class ChangeType(str, Enum):
    """Change stream event kinds"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ScopeKind(str, Enum):
    """Granularity of a scoped subscription"""
    DESK = "desk"
    TICKET = "ticket"


class SubscriptionState(str, Enum):
    """Lifecycle of one subscription handle"""
    PENDING = "pending"
    ACTIVE = "active"
    ERROR = "error"
    CLOSED = "closed"


class LiveUpdateStatus(str, Enum):
    """Live update health as shown to the agent"""
    IDLE = "idle"              # No desk selected, nothing to subscribe to
    CONNECTING = "connecting"  # Subscriptions being established
    LIVE = "live"
    RECONNECTING = "reconnecting"  # Transient failure, retry scheduled
    DEGRADED = "degraded"      # Hard failure, manual-refresh semantics


class ConversationState(str, Enum):
    """State of the currently open conversation"""
    EMPTY = "empty"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class TicketListView(str, Enum):
    """The three independently filterable ticket lists"""
    OPEN = "open"
    CLOSED = "closed"
    UNREAD = "unread"


class WorkspaceEventType(str, Enum):
    """Change notifications pushed to presentation consumers"""
    TICKETS = "tickets"
    CONVERSATION = "conversation"
    STATUS = "status"


class FeedbackRating(str, Enum):
    """Feedback scale offered in resolution notices"""
    GREAT = "Great"
    GOOD = "Good"
    AVERAGE = "Average"
    POOR = "Poor"
    BAD = "Bad"
