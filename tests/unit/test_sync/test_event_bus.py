"""Tests for the change event bus implementations"""

import asyncio
import json

import httpx
import pytest

from helpdesk_sync.domain.enums import ChangeTable, ChangeType, SubscriptionState
from helpdesk_sync.domain.errors import HardStreamError, TransientStreamError
from helpdesk_sync.sync.coordinator import desk_scope, ticket_scope
from helpdesk_sync.sync.event_bus import (
    ChangeListener, HttpStreamChangeEventBus, InMemoryChangeEventBus, decode_change,
    iter_sse_data
)
from tests.fakes import make_ticket, message_record, ticket_record


class RecordingListener(ChangeListener):
    def __init__(self):
        self.inserts = []
        self.updates = []
        self.errors = []
        self.error_seen = asyncio.Event()

    async def on_insert(self, handle, table, record):
        self.inserts.append((handle.handle_id, table, record))

    async def on_update(self, handle, table, old_record, record):
        self.updates.append((handle.handle_id, table, old_record, record))

    async def on_error(self, handle, error):
        self.errors.append((handle.handle_id, error))
        self.error_seen.set()


async def lines(*items):
    for item in items:
        yield item


# =========================================================================
# In-memory bus
# =========================================================================


@pytest.mark.asyncio
async def test_filters_are_ored():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    ticket = make_ticket("T1", conversation_id="CONV-1")
    await bus.open_scoped(ticket_scope(ticket), listener)

    by_ticket = await bus.publish_insert(ChangeTable.MESSAGES, message_record("m1", ticket_id="T1"))
    by_thread = await bus.publish_insert(
        ChangeTable.MESSAGES, message_record("m2", ticket_id=None, conversation_id="CONV-1")
    )
    other = await bus.publish_insert(ChangeTable.MESSAGES, message_record("m3", ticket_id="T2"))

    assert (by_ticket, by_thread, other) == (1, 1, 0)
    assert [r["id"] for _, _, r in listener.inserts] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_only_wanted_table_and_event_are_delivered():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    await bus.open_scoped(desk_scope("D1"), listener)

    assert await bus.publish_insert(ChangeTable.TICKETS, ticket_record("T1")) == 1
    assert await bus.publish_update(ChangeTable.TICKETS, None, ticket_record("T1", status="closed")) == 1
    assert await bus.publish_insert(ChangeTable.MESSAGES, message_record("m1")) == 1
    # desk scope does not carry message edits
    assert await bus.publish_update(ChangeTable.MESSAGES, None, message_record("m1")) == 0
    assert await bus.publish_insert(ChangeTable.TICKETS, ticket_record("T9", desk_id="D2")) == 0


@pytest.mark.asyncio
async def test_update_matched_through_old_record():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    await bus.open_scoped(desk_scope("D1"), listener)

    moved = await bus.publish_update(
        ChangeTable.TICKETS, {"id": "T1", "desk_id": "D1"}, ticket_record("T1", desk_id="D2")
    )
    assert moved == 1
    assert listener.updates[0][2] == {"id": "T1", "desk_id": "D1"}


@pytest.mark.asyncio
async def test_close_is_idempotent_and_stops_delivery():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    handle = await bus.open_scoped(desk_scope("D1"), listener)

    await bus.close(handle)
    await bus.close(handle)

    assert handle.state == SubscriptionState.CLOSED
    assert bus.closed == [handle]
    assert bus.active_handles() == []
    assert await bus.publish_insert(ChangeTable.TICKETS, ticket_record("T1")) == 0


@pytest.mark.asyncio
async def test_queued_open_failure_reported_through_listener():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    bus.queue_open_failure(TransientStreamError("timeout"))

    handle = await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    handle_id, error = listener.errors[0]
    assert handle_id == handle.handle_id
    assert isinstance(error, TransientStreamError)
    assert error.scope_key == "desk:D1"


@pytest.mark.asyncio
async def test_active_handles_by_scope_key():
    bus = InMemoryChangeEventBus()
    listener = RecordingListener()
    await bus.open_scoped(desk_scope("D1"), listener)
    await bus.open_scoped(desk_scope("D2"), listener)

    assert len(bus.active_handles()) == 2
    assert [h.scope_key for h in bus.active_handles("desk:D2")] == ["desk:D2"]


@pytest.mark.asyncio
async def test_handle_history_is_bounded():
    bus = InMemoryChangeEventBus(history_size=2)
    listener = RecordingListener()
    for desk_id in ("D1", "D2", "D3"):
        await bus.close(await bus.open_scoped(desk_scope(desk_id), listener))

    assert [h.scope_key for h in bus.opened] == ["desk:D2", "desk:D3"]
    assert len(bus.closed) == 2
    assert bus.active_handles() == []


# =========================================================================
# Stream decoding
# =========================================================================


@pytest.mark.asyncio
async def test_iter_sse_data_joins_lines_and_skips_comments():
    payloads = [
        p async for p in iter_sse_data(lines(
            ": keep-alive", "", "event: change", "data: {\"a\":", "data: 1}", "", "data: tail"
        ))
    ]
    assert payloads == ["{\"a\":\n1}", "tail"]


def test_decode_change_record_shape():
    event = decode_change(json.dumps({
        "table": "messages", "type": "insert", "record": {"id": "m1"}
    }))
    assert event.table == ChangeTable.MESSAGES
    assert event.type == ChangeType.INSERT
    assert event.record == {"id": "m1"}
    assert event.old_record is None


def test_decode_change_new_old_shape():
    event = decode_change(json.dumps({
        "table": "tickets", "eventType": "UPDATE", "new": {"id": "T1"}, "old": {"status": "open"}
    }))
    assert event.type == ChangeType.UPDATE
    assert event.record == {"id": "T1"}
    assert event.old_record == {"status": "open"}


@pytest.mark.parametrize("payload", [
    "not json",
    "[1, 2]",
    json.dumps({"table": "desks", "type": "INSERT", "record": {}}),
    json.dumps({"table": "tickets", "type": "DELETE", "record": {}}),
])
def test_decode_change_discards_unusable_payloads(payload):
    assert decode_change(payload) is None


# =========================================================================
# HTTP stream bus
# =========================================================================


def stream_bus(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStreamChangeEventBus("http://stream.test/", api_key="secret", client=client)


@pytest.mark.asyncio
async def test_http_stream_rejection_is_hard_error():
    bus = stream_bus(lambda request: httpx.Response(401))
    listener = RecordingListener()

    await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    assert isinstance(listener.errors[0][1], HardStreamError)
    await bus.aclose()


@pytest.mark.asyncio
async def test_http_stream_server_error_is_transient():
    bus = stream_bus(lambda request: httpx.Response(503))
    listener = RecordingListener()

    await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    error = listener.errors[0][1]
    assert isinstance(error, TransientStreamError)
    assert error.details["status_code"] == 503
    await bus.aclose()


@pytest.mark.asyncio
async def test_http_stream_dispatches_events_then_reports_closed_stream():
    seen_requests = []
    body = "\n".join([
        "data: " + json.dumps({"table": "tickets", "type": "INSERT", "record": ticket_record("T1")}),
        "",
        "data: " + json.dumps({"table": "tickets", "type": "INSERT", "record": ticket_record("T2", desk_id="D2")}),
        "",
        "",
    ])

    def handler(request):
        seen_requests.append(request)
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    bus = stream_bus(handler)
    listener = RecordingListener()
    await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    request = seen_requests[0]
    assert request.url.path == "/changes"
    assert request.url.params["or"] == "(desk_id.eq.D1)"
    assert request.url.params["tables"] == "messages,tickets"
    assert request.headers["Authorization"] == "Bearer secret"

    assert [r["id"] for _, _, r in listener.inserts] == ["T1"]
    assert isinstance(listener.errors[0][1], TransientStreamError)
    await bus.aclose()


@pytest.mark.asyncio
async def test_http_stream_connect_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    bus = stream_bus(handler)
    listener = RecordingListener()
    await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    error = listener.errors[0][1]
    assert isinstance(error, TransientStreamError)
    assert error.details["error_type"] == "ConnectError"
    await bus.aclose()


class FailingListener(RecordingListener):
    async def on_insert(self, handle, table, record):
        raise RuntimeError("listener blew up")


@pytest.mark.asyncio
async def test_http_stream_listener_failure_is_reported_as_transient():
    body = "data: " + json.dumps({"table": "tickets", "type": "INSERT", "record": ticket_record("T1")}) + "\n\n"
    bus = stream_bus(lambda request: httpx.Response(200, text=body))
    listener = FailingListener()

    await bus.open_scoped(desk_scope("D1"), listener)
    await asyncio.wait_for(listener.error_seen.wait(), timeout=1)

    error = listener.errors[0][1]
    assert isinstance(error, TransientStreamError)
    assert error.details["error_type"] == "RuntimeError"
    await bus.aclose()
