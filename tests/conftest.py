"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
Factories and the fake REST backend live in ``tests/fakes.py``.
"""

import random

import pytest

from helpdesk_sync.services.blob_registry import BlobRegistry
from helpdesk_sync.services.workspace_service import AgentWorkspace
from helpdesk_sync.sync.conversation_store import ConversationStore
from helpdesk_sync.sync.coordinator import SubscriptionCoordinator
from helpdesk_sync.sync.event_bus import InMemoryChangeEventBus
from helpdesk_sync.sync.ticket_list_store import TicketListStore
from tests.fakes import FAST_COORDINATOR, FakeHelpdeskClient


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_client() -> FakeHelpdeskClient:
    return FakeHelpdeskClient()


@pytest.fixture
def bus() -> InMemoryChangeEventBus:
    return InMemoryChangeEventBus()


@pytest.fixture
def ticket_list(fake_client) -> TicketListStore:
    store = TicketListStore(fake_client, page_size=2)
    store.desk_id = "D1"
    return store


@pytest.fixture
def conversation(fake_client) -> ConversationStore:
    return ConversationStore(fake_client)


@pytest.fixture
def coordinator(bus, ticket_list, conversation) -> SubscriptionCoordinator:
    return SubscriptionCoordinator(
        bus, ticket_list, conversation, rng=random.Random(7), **FAST_COORDINATOR
    )


@pytest.fixture
def workspace(fake_client, bus) -> AgentWorkspace:
    return AgentWorkspace(
        "WS-test",
        fake_client,
        bus,
        blobs=BlobRegistry(url_prefix="/api/blobs"),
        page_size=20,
        refresh_interval_seconds=60,
        coordinator_options=FAST_COORDINATOR,
    )
