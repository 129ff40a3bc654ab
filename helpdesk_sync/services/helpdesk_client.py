"""Helpdesk Client - REST calls to the ticket, email and attachment backend

Every failure (transport error, timeout, non-2xx status) surfaces as a
``FetchError`` naming the operation, so callers can show it next to the
action that triggered it and leave their state untouched.
"""
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..config.settings import settings
from ..domain.errors import FetchError
from ..domain.models import Desk, Message, OutgoingAttachment, Ticket
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


def _unwrap_list(payload: Any) -> List[Dict[str, Any]]:
    """Backend returns either a bare list or ``{"data": [...]}``"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    return []


def _unwrap_object(payload: Any, *keys: str) -> Optional[Dict[str, Any]]:
    """Backend wraps single objects inconsistently (``data``/``ticket``/``message``)"""
    if not isinstance(payload, dict):
        return None
    for key in keys:
        inner = payload.get(key)
        if isinstance(inner, dict):
            return inner
    return payload if "id" in payload else None


class HelpdeskClient:
    """Async client for the helpdesk REST API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = (base_url or settings.helpdesk_api_url).rstrip("/")
        self.access_token = access_token if access_token is not None else settings.helpdesk_api_token
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.request_timeout_seconds
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        return headers

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{operation} failed: {e}")
            raise FetchError(
                f"{operation} failed: {e}",
                operation=operation,
                details={"error_type": type(e).__name__}
            ) from e

        if response.status_code >= 400:
            message = response.reason_phrase
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message") or body.get("error") or message
            except ValueError:
                pass
            logger.warning(
                f"{operation} returned {response.status_code}: {message}",
                extra={"error_code": "FETCH_ERROR"}
            )
            raise FetchError(
                f"{operation} failed: {message}",
                operation=operation,
                status_code=response.status_code
            )
        return response

    async def _json(self, operation: str, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(operation, method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"{operation} returned invalid JSON", operation=operation) from e

    # =========================================================================
    # Desks & Tickets
    # =========================================================================

    async def list_desks(self) -> List[Desk]:
        payload = await self._json("list_desks", "GET", "/desks")
        return [Desk.model_validate(d) for d in _unwrap_list(payload)]

    async def get_tickets_by_status(self, desk_id: str, status: str) -> List[Ticket]:
        """Tickets of a desk; status "open" means every non-closed ticket"""
        payload = await self._json(
            "get_tickets_by_status", "GET", "/tickets",
            params={"desk_id": desk_id, "status": status}
        )
        return [Ticket.model_validate(t) for t in _unwrap_list(payload)]

    async def get_ticket_by_id(self, ticket_id: str) -> Ticket:
        payload = await self._json("get_ticket_by_id", "GET", f"/tickets/{ticket_id}")
        record = _unwrap_object(payload, "data", "ticket")
        if record is None:
            raise FetchError("get_ticket_by_id returned no ticket", operation="get_ticket_by_id")
        return Ticket.model_validate(record)

    async def get_ticket_messages(
        self,
        ticket_id: Optional[str] = None,
        conversation_id: Optional[str] = None
    ) -> List[Message]:
        """
        Full message list of a ticket.

        Native tickets are read by ticket id; tickets that came from email
        ingestion without a native row are read by their legacy thread id.
        """
        if ticket_id:
            path = f"/tickets/{ticket_id}/messages"
        elif conversation_id:
            path = f"/emails/conversation/{conversation_id}"
        else:
            raise ValueError("ticket_id or conversation_id is required")
        payload = await self._json("get_ticket_messages", "GET", path)
        return [Message.model_validate(m) for m in _unwrap_list(payload)]

    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Ticket:
        payload = await self._json("update_ticket", "PUT", f"/tickets/{ticket_id}", json=fields)
        record = _unwrap_object(payload, "data", "ticket")
        if record is None:
            # Some backends answer 204; read the ticket back
            return await self.get_ticket_by_id(ticket_id)
        return Ticket.model_validate(record)

    async def request_feedback(self, ticket_id: str) -> None:
        await self._request("request_feedback", "POST", f"/tickets/{ticket_id}/request-feedback")

    # =========================================================================
    # Email provider
    # =========================================================================

    @staticmethod
    def _files(attachments: Sequence[OutgoingAttachment]) -> List[Any]:
        return [
            ("attachments", (a.filename, a.content, a.content_type))
            for a in attachments
        ]

    async def reply(
        self,
        email_or_message_id: str,
        desk_id: str,
        html_content: str,
        cc: Sequence[str] = (),
        attachments: Sequence[OutgoingAttachment] = ()
    ) -> Optional[Message]:
        """Reply in the provider thread of a legacy email ticket"""
        data: Dict[str, Any] = {"content": html_content, "cc_recipients[]": list(cc)}
        payload = await self._json(
            "reply", "POST", f"/emails/{email_or_message_id}/reply",
            params={"desk_id": desk_id},
            data=data,
            files=self._files(attachments) or None,
        )
        record = _unwrap_object(payload, "message", "data", "sentMessage")
        return Message.model_validate(record) if record else None

    async def send_ticket_reply(
        self,
        ticket_id: str,
        desk_id: Optional[str],
        html_content: str,
        attachments: Sequence[OutgoingAttachment] = (),
        is_internal: bool = False
    ) -> Optional[Message]:
        """Reply on a native ticket"""
        params = {"desk_id": desk_id} if desk_id else None
        payload = await self._json(
            "send_ticket_reply", "POST", f"/emails/send/{ticket_id}",
            params=params,
            data={"content": html_content, "is_internal": str(is_internal).lower()},
            files=self._files(attachments) or None,
        )
        record = _unwrap_object(payload, "message", "data")
        return Message.model_validate(record) if record else None

    async def mark_as_read(self, message_id: str, desk_id: str) -> None:
        await self._request(
            "mark_as_read", "POST", f"/emails/mark-read/{message_id}",
            params={"deskId": desk_id}
        )

    async def send_resolution_notice(
        self,
        message_id: str,
        desk_id: str,
        content: str,
        subject: str
    ) -> None:
        await self._request(
            "send_resolution_notice", "POST", f"/emails/{message_id}/resolve",
            json={"content": content, "deskId": desk_id, "subject": subject}
        )

    # =========================================================================
    # Attachments
    # =========================================================================

    async def download_by_storage_key(self, key: str, desk_id: str) -> bytes:
        response = await self._request(
            "download_by_storage_key", "GET", "/emails/s3-download",
            params={"s3Key": key, "desk_id": desk_id}
        )
        return response.content
