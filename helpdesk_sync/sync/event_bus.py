"""Change Event Bus - scoped subscriptions over the backend change stream

A subscription is opened with a ``SubscriptionSpec``: a scope key, one or
more equality filters (ORed), and the (table, event) pairs of interest.
Matching records are pushed to a ``ChangeListener``. Failures never raise
out of the bus; they are reported through ``ChangeListener.on_error`` so
the caller can keep working while it decides whether to retry.

Two implementations:

- ``InMemoryChangeEventBus`` delivers records published in-process. Used
  when no stream endpoint is configured, and by the test-suite.
- ``HttpStreamChangeEventBus`` holds one streaming HTTP request per handle
  and decodes server-sent events. Reconnecting is left to the caller.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set, Tuple

import httpx

from ..domain.enums import ChangeTable, ChangeType, SubscriptionState
from ..domain.errors import HardStreamError, StreamError, TransientStreamError
from ..domain.models import ChangeEvent, SubscriptionHandle, SubscriptionSpec
from ..utils.idgen import generate_handle_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ChangeListener(ABC):
    """Receives events for one handle"""

    @abstractmethod
    async def on_insert(
        self, handle: SubscriptionHandle, table: ChangeTable, record: Dict[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def on_update(
        self,
        handle: SubscriptionHandle,
        table: ChangeTable,
        old_record: Optional[Dict[str, Any]],
        record: Dict[str, Any]
    ) -> None:
        ...

    @abstractmethod
    async def on_error(self, handle: SubscriptionHandle, error: StreamError) -> None:
        ...


class ChangeEventBus(ABC):
    """Open/close scoped subscriptions"""

    @abstractmethod
    async def open_scoped(
        self, spec: SubscriptionSpec, listener: ChangeListener
    ) -> SubscriptionHandle:
        """Open a subscription; errors are reported via listener.on_error"""

    @abstractmethod
    async def close(self, handle: SubscriptionHandle) -> None:
        """Close a subscription; closing twice is a no-op"""

    async def aclose(self) -> None:
        """Release transport resources"""


async def dispatch(
    handle: SubscriptionHandle, listener: ChangeListener, event: ChangeEvent
) -> bool:
    """Deliver event to listener if the handle's spec selects it"""
    if handle.state == SubscriptionState.CLOSED:
        return False
    spec = handle.spec
    if not spec.wants(event.table, event.type):
        return False
    if not spec.matches(event.record) and not (
        event.old_record and spec.matches(event.old_record)
    ):
        return False
    if event.type == ChangeType.INSERT:
        await listener.on_insert(handle, event.table, event.record)
    else:
        await listener.on_update(handle, event.table, event.old_record, event.record)
    return True


# =============================================================================
# In-process bus
# =============================================================================

class InMemoryChangeEventBus(ChangeEventBus):
    """
    Change stream living inside the process.

    Keeps a bounded history of the handles opened and closed so callers can
    check subscription lifecycles. ``queue_open_failure`` makes the next open
    report an error right after it is established.
    """

    def __init__(self, open_delay: float = 0.0, history_size: int = 256):
        self.open_delay = open_delay
        self._handles: Dict[str, Tuple[SubscriptionHandle, ChangeListener]] = {}
        self._pending_failures: List[StreamError] = []
        self._background: Set[asyncio.Task] = set()
        self.opened: Deque[SubscriptionHandle] = deque(maxlen=history_size)
        self.closed: Deque[SubscriptionHandle] = deque(maxlen=history_size)

    async def open_scoped(
        self, spec: SubscriptionSpec, listener: ChangeListener
    ) -> SubscriptionHandle:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        handle = SubscriptionHandle(handle_id=generate_handle_id(), spec=spec)
        self._handles[handle.handle_id] = (handle, listener)
        self.opened.append(handle)
        logger.debug(
            f"Opened in-memory subscription {spec.scope_key}",
            extra={"scope_key": spec.scope_key, "handle_id": handle.handle_id}
        )
        if self._pending_failures:
            error = self._pending_failures.pop(0)
            error.scope_key = spec.scope_key
            task = asyncio.create_task(listener.on_error(handle, error))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return handle

    async def close(self, handle: SubscriptionHandle) -> None:
        entry = self._handles.pop(handle.handle_id, None)
        if entry is None:
            return
        handle.state = SubscriptionState.CLOSED
        self.closed.append(handle)
        logger.debug(
            f"Closed in-memory subscription {handle.scope_key}",
            extra={"scope_key": handle.scope_key, "handle_id": handle.handle_id}
        )

    def queue_open_failure(self, error: StreamError) -> None:
        self._pending_failures.append(error)

    @property
    def pending_reports(self) -> int:
        """Error reports scheduled but not yet delivered"""
        return len(self._background)

    async def settle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def active_handles(self, scope_key: Optional[str] = None) -> List[SubscriptionHandle]:
        """Handles not yet closed, optionally for one scope key"""
        return [
            handle for handle, _ in self._handles.values()
            if scope_key is None or handle.scope_key == scope_key
        ]

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver to every matching handle; returns the delivery count"""
        delivered = 0
        for handle, listener in list(self._handles.values()):
            if await dispatch(handle, listener, event):
                delivered += 1
        return delivered

    async def publish_insert(self, table: ChangeTable, record: Dict[str, Any]) -> int:
        return await self.publish(ChangeEvent(table=table, type=ChangeType.INSERT, record=record))

    async def publish_update(
        self,
        table: ChangeTable,
        old_record: Optional[Dict[str, Any]],
        record: Dict[str, Any]
    ) -> int:
        return await self.publish(
            ChangeEvent(table=table, type=ChangeType.UPDATE, record=record, old_record=old_record)
        )

    async def fail(self, handle: SubscriptionHandle, error: StreamError) -> None:
        """Report error on handle as the transport would"""
        entry = self._handles.get(handle.handle_id)
        if entry is None:
            return
        error.scope_key = handle.scope_key
        await entry[1].on_error(handle, error)


# =============================================================================
# HTTP stream transport
# =============================================================================

HARD_FAILURE_STATUSES = {400, 401, 403, 404, 422}


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined ``data:`` payload of each server-sent event"""
    data: List[str] = []
    async for line in lines:
        if line == "":
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue  # comment / keep-alive
        if line.startswith("data:"):
            data.append(line[5:].lstrip(" "))
    if data:
        yield "\n".join(data)


def decode_change(payload: str) -> Optional[ChangeEvent]:
    """
    Decode one stream payload.

    Accepts ``{"table", "type", "record", "old_record"}`` as well as the
    ``{"table", "eventType", "new", "old"}`` form. Returns None for
    payloads that are not insert/update events on a known table.
    """
    try:
        body = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning(f"Discarding undecodable stream payload: {payload[:200]}")
        return None
    if not isinstance(body, dict):
        return None
    try:
        table = ChangeTable(body.get("table"))
        change_type = ChangeType(str(body.get("type") or body.get("eventType") or "").upper())
    except ValueError:
        return None
    record = body.get("record") or body.get("new") or {}
    old_record = body.get("old_record") or body.get("old")
    return ChangeEvent(table=table, type=change_type, record=record, old_record=old_record)


class HttpStreamChangeEventBus(ChangeEventBus):
    """One long-lived streaming GET per handle"""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 10.0
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, read=None)
        )
        self._owns_client = client is None
        self._tasks: Dict[str, asyncio.Task] = {}

    def _request_params(self, spec: SubscriptionSpec) -> Dict[str, str]:
        events = sorted({t.value for types in spec.tables.values() for t in types})
        return {
            "tables": ",".join(sorted(table.value for table in spec.tables)),
            "events": ",".join(events),
            "or": "(" + ",".join(f.as_param() for f in spec.filters) + ")",
        }

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def open_scoped(
        self, spec: SubscriptionSpec, listener: ChangeListener
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(handle_id=generate_handle_id(), spec=spec)
        self._tasks[handle.handle_id] = asyncio.create_task(
            self._pump(handle, listener), name=f"stream-{spec.scope_key}"
        )
        return handle

    async def _pump(self, handle: SubscriptionHandle, listener: ChangeListener) -> None:
        scope_key = handle.scope_key
        try:
            async with self._client.stream(
                "GET",
                f"{self.base_url}/changes",
                params=self._request_params(handle.spec),
                headers=self._headers(),
            ) as response:
                if response.status_code in HARD_FAILURE_STATUSES:
                    raise HardStreamError(
                        f"Change stream rejected subscription: {response.status_code}",
                        scope_key=scope_key,
                        details={"status_code": response.status_code}
                    )
                if response.status_code >= 400:
                    raise TransientStreamError(
                        f"Change stream unavailable: {response.status_code}",
                        scope_key=scope_key,
                        details={"status_code": response.status_code}
                    )
                async for payload in iter_sse_data(response.aiter_lines()):
                    event = decode_change(payload)
                    if event is not None:
                        await dispatch(handle, listener, event)
            raise TransientStreamError("Change stream closed by server", scope_key=scope_key)
        except asyncio.CancelledError:
            raise
        except StreamError as e:
            await listener.on_error(handle, e)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            await listener.on_error(
                handle,
                TransientStreamError(
                    f"Change stream connection failed: {e}",
                    scope_key=scope_key,
                    details={"error_type": type(e).__name__}
                )
            )
        except Exception as e:
            logger.error(
                f"Change stream pump failed for {scope_key}: {e}",
                extra={"scope_key": scope_key, "handle_id": handle.handle_id},
                exc_info=True
            )
            await listener.on_error(
                handle,
                TransientStreamError(
                    f"Change stream failed: {e}",
                    scope_key=scope_key,
                    details={"error_type": type(e).__name__}
                )
            )
        finally:
            self._tasks.pop(handle.handle_id, None)

    async def close(self, handle: SubscriptionHandle) -> None:
        handle.state = SubscriptionState.CLOSED
        task = self._tasks.pop(handle.handle_id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
        if self._owns_client:
            await self._client.aclose()
