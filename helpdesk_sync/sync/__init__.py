"""Synchronization engine - change stream, ordering, stores, coordinator"""
from .event_bus import (
    ChangeEventBus,
    ChangeListener,
    HttpStreamChangeEventBus,
    InMemoryChangeEventBus,
)
from .ordering import canonical_order, merge_message, merge_messages, replace_message
from .conversation_store import ConversationStore
from .ticket_list_store import TicketListStore
from .coordinator import SubscriptionCoordinator, Selection, desk_scope, ticket_scope

__all__ = [
    "ChangeEventBus",
    "ChangeListener",
    "HttpStreamChangeEventBus",
    "InMemoryChangeEventBus",
    "canonical_order",
    "merge_message",
    "merge_messages",
    "replace_message",
    "ConversationStore",
    "TicketListStore",
    "SubscriptionCoordinator",
    "Selection",
    "desk_scope",
    "ticket_scope",
]
