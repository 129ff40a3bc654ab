"""Tests for the helpdesk REST client"""

import json

import httpx
import pytest

from helpdesk_sync.domain.enums import TicketStatus
from helpdesk_sync.domain.errors import FetchError
from helpdesk_sync.domain.models import OutgoingAttachment
from helpdesk_sync.services.helpdesk_client import HelpdeskClient
from tests.fakes import message_record, ticket_record


def make_client(handler):
    transport = httpx.MockTransport(handler)
    return HelpdeskClient(
        base_url="http://helpdesk.test/api/",
        access_token="agent-token",
        client=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
async def test_tickets_by_status_accepts_wrapped_list():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": [ticket_record("T1"), ticket_record("T2")]})

    client = make_client(handler)
    tickets = await client.get_tickets_by_status("D1", "open")

    assert [t.id for t in tickets] == ["T1", "T2"]
    assert seen[0].url.path == "/api/tickets"
    assert seen[0].url.params["desk_id"] == "D1"
    assert seen[0].headers["Authorization"] == "Bearer agent-token"


@pytest.mark.asyncio
async def test_ticket_by_id_unwraps_ticket_key():
    client = make_client(lambda request: httpx.Response(200, json={"ticket": ticket_record("T1", status="resolved")}))
    ticket = await client.get_ticket_by_id("T1")
    assert ticket.status == TicketStatus.CLOSED


@pytest.mark.asyncio
async def test_messages_by_ticket_and_by_thread():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json=[message_record("m1")])

    client = make_client(handler)
    await client.get_ticket_messages(ticket_id="T1")
    messages = await client.get_ticket_messages(conversation_id="CONV-1")

    assert paths == ["/api/tickets/T1/messages", "/api/emails/conversation/CONV-1"]
    assert messages[0].id == "m1"


@pytest.mark.asyncio
async def test_error_status_raises_fetch_error_with_backend_message():
    client = make_client(lambda request: httpx.Response(500, json={"message": "database down"}))

    with pytest.raises(FetchError) as exc_info:
        await client.get_tickets_by_status("D1", "open")

    error = exc_info.value
    assert error.operation == "get_tickets_by_status"
    assert error.status_code == 500
    assert "database down" in error.message


@pytest.mark.asyncio
async def test_transport_error_raises_fetch_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(FetchError) as exc_info:
        await client.get_ticket_by_id("T1")
    assert exc_info.value.details["error_type"] == "ConnectTimeout"


@pytest.mark.asyncio
async def test_update_ticket_reads_back_on_empty_body():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "PUT":
            assert json.loads(request.content) == {"status": "closed"}
            return httpx.Response(204)
        return httpx.Response(200, json=ticket_record("T1", status="closed"))

    client = make_client(handler)
    ticket = await client.update_ticket("T1", {"status": "closed"})

    assert ticket.is_closed
    assert calls == [("PUT", "/api/tickets/T1"), ("GET", "/api/tickets/T1")]


@pytest.mark.asyncio
async def test_send_ticket_reply_posts_form_with_files():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"message": message_record("sent-1", direction="outgoing")})

    client = make_client(handler)
    message = await client.send_ticket_reply(
        "T1", "D1", "<p>hello</p>",
        attachments=[OutgoingAttachment(filename="a.txt", content=b"abc", content_type="text/plain")],
        is_internal=True,
    )

    assert message.id == "sent-1"
    request = seen[0]
    assert request.url.path == "/api/emails/send/T1"
    assert request.headers["content-type"].startswith("multipart/form-data")
    assert b"a.txt" in request.content


@pytest.mark.asyncio
async def test_reply_without_echo_returns_none():
    client = make_client(lambda request: httpx.Response(200, json={"success": True}))
    assert await client.reply("msg-1", "D1", "<p>hi</p>", cc=["a@example.com"]) is None


@pytest.mark.asyncio
async def test_resolution_notice_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    client = make_client(handler)
    await client.send_resolution_notice("msg-1", "D1", "<p>done</p>", "Ticket Resolved")

    assert seen[0].url.path == "/api/emails/msg-1/resolve"
    assert json.loads(seen[0].content) == {"content": "<p>done</p>", "deskId": "D1", "subject": "Ticket Resolved"}


@pytest.mark.asyncio
async def test_download_returns_raw_bytes():
    client = make_client(lambda request: httpx.Response(200, content=b"\x89PNG"))
    assert await client.download_by_storage_key("s3/key", "D1") == b"\x89PNG"


@pytest.mark.asyncio
async def test_list_desks_accepts_bare_ids():
    client = make_client(lambda request: httpx.Response(200, json=[{"id": 1, "name": "Support"}, 2]))
    desks = await client.list_desks()
    assert [(d.id, d.name) for d in desks] == [("1", "Support"), ("2", "Desk 2")]
