"""Subscription Coordinator - which scoped streams exist, and where their events go

Two logical scopes are maintained: the selected desk and the selected ticket.
Each has at most one canonical slot; a slot owns at most one handle. Every
change of target bumps the scope's generation counter, and work scheduled
for an older generation (debounced opens, retries, late opens) turns into a
no-op when it wakes up.

Stream callbacks never capture the selection: they read it through the
``Selection`` accessor and ask whether the delivering handle is still the
canonical one for its scope. Events from any other handle are ignored.
"""
import asyncio
import random
from datetime import timedelta
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from ..config.settings import settings
from ..domain.enums import ChangeTable, ChangeType, LiveUpdateStatus, ScopeKind, SubscriptionState
from ..domain.errors import HardStreamError, StreamError
from ..domain.models import (
    LiveStatusSnapshot, Message, ScopeFilter, SubscriptionHandle, SubscriptionSpec, Ticket,
    coerce_status
)
from ..utils.logger import get_logger
from ..utils.time import utc_now
from .conversation_store import ConversationStore
from .event_bus import ChangeEventBus, ChangeListener
from .ticket_list_store import TicketListStore

logger = get_logger(__name__)


# =============================================================================
# Scope definitions
# =============================================================================

def desk_scope(desk_id: str) -> SubscriptionSpec:
    """Ticket inserts/updates and message inserts of one desk"""
    return SubscriptionSpec(
        kind=ScopeKind.DESK,
        scope_key=f"desk:{desk_id}",
        filters=[ScopeFilter(field="desk_id", value=desk_id)],
        tables={
            ChangeTable.TICKETS: [ChangeType.INSERT, ChangeType.UPDATE],
            ChangeTable.MESSAGES: [ChangeType.INSERT],
        },
    )


def ticket_scope(ticket: Ticket) -> SubscriptionSpec:
    """Message inserts and edits of one ticket, by ticket id or legacy thread id"""
    filters = [ScopeFilter(field="ticket_id", value=ticket.id)]
    scope_key = f"ticket:{ticket.id}"
    if ticket.conversation_id:
        filters.append(ScopeFilter(field="conversation_id", value=ticket.conversation_id))
        if ticket.conversation_id != ticket.id:
            scope_key = f"{scope_key}|{ticket.conversation_id}"
    return SubscriptionSpec(
        kind=ScopeKind.TICKET,
        scope_key=scope_key,
        filters=filters,
        tables={ChangeTable.MESSAGES: [ChangeType.INSERT, ChangeType.UPDATE]},
    )


class Selection:
    """Current desk and ticket, read by stream callbacks at delivery time"""

    def __init__(self):
        self.desk_id: Optional[str] = None
        self.ticket: Optional[Ticket] = None

    @property
    def ticket_id(self) -> Optional[str]:
        return self.ticket.id if self.ticket else None


class _ScopeSlot:
    """Canonical state of one logical scope"""

    def __init__(self, spec: SubscriptionSpec, generation: int):
        self.spec = spec
        self.generation = generation
        self.handle: Optional[SubscriptionHandle] = None
        self.opening = False
        self.attempt = 0
        self.retry_task: Optional[asyncio.Task] = None
        self.degraded = False
        self.detail: Optional[str] = None

    @property
    def scope_key(self) -> str:
        return self.spec.scope_key

    @property
    def live(self) -> bool:
        """A handle is active or being established"""
        if self.opening:
            return True
        return self.handle is not None and self.handle.state in (
            SubscriptionState.PENDING, SubscriptionState.ACTIVE
        )

    @property
    def state(self) -> SubscriptionState:
        if self.opening:
            return SubscriptionState.PENDING
        if self.handle is None:
            return SubscriptionState.ERROR if (self.degraded or self.retry_task) else SubscriptionState.PENDING
        return self.handle.state


# =============================================================================
# Coordinator
# =============================================================================

class SubscriptionCoordinator(ChangeListener):
    """Keeps the scoped subscriptions in line with the selection"""

    def __init__(
        self,
        bus: ChangeEventBus,
        ticket_list: TicketListStore,
        conversation: ConversationStore,
        debounce_seconds: Optional[float] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        retry_jitter: Optional[float] = None,
        retry_max_attempts: Optional[int] = None,
        rng: Optional[random.Random] = None
    ):
        self.bus = bus
        self.ticket_list = ticket_list
        self.conversation = conversation
        self.selection = Selection()
        self.debounce_seconds = (
            settings.ticket_switch_debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self.retry_base_seconds = (
            settings.stream_retry_base_seconds if retry_base_seconds is None else retry_base_seconds
        )
        self.retry_max_seconds = (
            settings.stream_retry_max_seconds if retry_max_seconds is None else retry_max_seconds
        )
        self.retry_jitter = settings.stream_retry_jitter if retry_jitter is None else retry_jitter
        self.retry_max_attempts = (
            settings.stream_retry_max_attempts if retry_max_attempts is None else retry_max_attempts
        )
        self._rng = rng or random.Random()

        self._slots: Dict[ScopeKind, _ScopeSlot] = {}
        self._generations: Dict[ScopeKind, int] = {kind: 0 for kind in ScopeKind}
        self._debounce_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[LiveStatusSnapshot], None]] = []
        self._last_status: Optional[LiveStatusSnapshot] = None
        self._closed = False

    # =========================================================================
    # Status
    # =========================================================================

    def add_listener(self, callback: Callable[[LiveStatusSnapshot], None]) -> None:
        self._listeners.append(callback)

    def status(self) -> LiveStatusSnapshot:
        slots = list(self._slots.values())
        detail = next((s.detail for s in slots if s.detail), None)
        if self.selection.desk_id is None:
            status = LiveUpdateStatus.IDLE
        elif any(s.degraded for s in slots):
            status = LiveUpdateStatus.DEGRADED
        elif any(s.retry_task is not None for s in slots):
            status = LiveUpdateStatus.RECONNECTING
        elif any(s.state == SubscriptionState.PENDING for s in slots):
            status = LiveUpdateStatus.CONNECTING
        else:
            status = LiveUpdateStatus.LIVE
        return LiveStatusSnapshot(
            status=status,
            desk_id=self.selection.desk_id,
            ticket_id=self.selection.ticket_id,
            scopes={s.scope_key: s.state for s in slots},
            detail=detail,
        )

    @property
    def degraded(self) -> bool:
        return any(s.degraded for s in self._slots.values())

    def _publish_status(self) -> None:
        snapshot = self.status()
        if snapshot == self._last_status:
            return
        self._last_status = snapshot
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Live status listener failed: {e}")

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Background task {task.get_name()} failed: {error}",
                exc_info=(type(error), error, error.__traceback__)
            )

    @property
    def busy(self) -> bool:
        return bool(self._tasks)

    async def settle(self) -> None:
        """Wait until no teardown, debounce or retry work is outstanding"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Selection
    # =========================================================================

    async def set_desk(self, desk_id: Optional[str]) -> None:
        """
        Switch desks: both scopes of the previous desk are torn down and one
        desk-scope subscription is opened for the new desk.
        """
        if desk_id == self.selection.desk_id and desk_id is not None:
            await self._request(ScopeKind.DESK, desk_scope(desk_id))
            return
        self._cancel_debounce()
        self.selection.desk_id = desk_id
        self.selection.ticket = None
        self._release(ScopeKind.TICKET)
        self._release(ScopeKind.DESK)
        logger.info(f"Desk selected: {desk_id}", extra={"desk_id": desk_id})
        if desk_id is not None:
            await self._request(ScopeKind.DESK, desk_scope(desk_id))
        self._publish_status()

    def select_ticket(self, ticket: Optional[Ticket]) -> None:
        """
        Switch the ticket scope.

        The previous ticket's handle stops being canonical immediately and is
        closed in the background. The new handle is opened after the debounce
        window, unless another switch happened in the meantime.
        """
        if ticket is not None and self.selection.ticket_id == ticket.id:
            self.selection.ticket = ticket
            slot = self._slots.get(ScopeKind.TICKET)
            if (slot is not None and slot.live) or self._debounce_task is not None:
                return
        self._cancel_debounce()
        self.selection.ticket = ticket
        self._release(ScopeKind.TICKET)
        if ticket is not None:
            generation = self._generations[ScopeKind.TICKET]
            self._debounce_task = self._spawn(
                self._open_after_debounce(ticket, generation), name=f"debounce-ticket:{ticket.id}"
            )
        self._publish_status()

    async def _open_after_debounce(self, ticket: Ticket, generation: int) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if generation != self._generations[ScopeKind.TICKET] or self.selection.ticket_id != ticket.id:
            return
        self._debounce_task = None
        await self._request(ScopeKind.TICKET, ticket_scope(ticket))

    def _cancel_debounce(self) -> None:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None

    async def reconnect(self) -> None:
        """Retry every degraded scope (used by manual refresh)"""
        for kind, slot in list(self._slots.items()):
            if slot.degraded or (slot.handle is None and not slot.opening and slot.retry_task is None):
                spec = slot.spec
                self._release(kind)
                await self._request(kind, spec)
        self._publish_status()

    async def close(self) -> None:
        """Tear everything down and wait for it"""
        self._closed = True
        self._cancel_debounce()
        self._release(ScopeKind.TICKET)
        self._release(ScopeKind.DESK)
        self.selection.desk_id = None
        self.selection.ticket = None
        await self.settle()
        self._publish_status()

    # =========================================================================
    # Slot lifecycle
    # =========================================================================

    def _release(self, kind: ScopeKind) -> None:
        """Drop the canonical slot of a scope and close its handle in the background"""
        self._generations[kind] += 1
        slot = self._slots.pop(kind, None)
        if slot is None:
            return
        if slot.retry_task is not None:
            slot.retry_task.cancel()
            slot.retry_task = None
        if slot.handle is not None:
            self._spawn(self._close_handle(slot.handle), name=f"teardown-{slot.scope_key}")

    async def _close_handle(self, handle: SubscriptionHandle) -> None:
        try:
            await self.bus.close(handle)
        except Exception as e:
            logger.warning(
                f"Teardown of {handle.scope_key} failed: {e}",
                extra={"scope_key": handle.scope_key, "handle_id": handle.handle_id}
            )
        handle.state = SubscriptionState.CLOSED

    async def _request(self, kind: ScopeKind, spec: SubscriptionSpec) -> None:
        """Open a subscription unless one for this scope key is live already"""
        if self._closed:
            return
        slot = self._slots.get(kind)
        if slot is not None and slot.scope_key == spec.scope_key and (slot.live or slot.retry_task):
            logger.debug(f"Subscription {spec.scope_key} already live", extra={"scope_key": spec.scope_key})
            return
        if slot is not None:
            self._release(kind)
        slot = _ScopeSlot(spec, self._generations[kind])
        self._slots[kind] = slot
        await self._connect(kind, slot)

    def _is_current(self, kind: ScopeKind, slot: _ScopeSlot) -> bool:
        return self._slots.get(kind) is slot and slot.generation == self._generations[kind]

    async def _connect(self, kind: ScopeKind, slot: _ScopeSlot) -> None:
        slot.opening = True
        self._publish_status()
        try:
            handle = await self.bus.open_scoped(slot.spec, self)
        except StreamError as e:
            slot.opening = False
            if self._is_current(kind, slot):
                # Transport raised instead of reporting through on_error
                await self._handle_failure(kind, slot, None, e)
            return
        finally:
            slot.opening = False

        if not self._is_current(kind, slot):
            # Superseded while the open was in flight
            logger.debug(
                f"Closing superseded subscription {slot.scope_key}",
                extra={"scope_key": slot.scope_key, "handle_id": handle.handle_id}
            )
            await self._close_handle(handle)
            return

        slot.handle = handle
        if handle.state == SubscriptionState.PENDING:
            handle.state = SubscriptionState.ACTIVE
        logger.info(
            f"Subscription {slot.scope_key} open",
            extra={"scope_key": slot.scope_key, "handle_id": handle.handle_id, "generation": slot.generation}
        )
        self._publish_status()

    def _slot_for(self, handle: SubscriptionHandle) -> Optional[ScopeKind]:
        """Scope whose canonical handle this is, if any"""
        for kind, slot in self._slots.items():
            if slot.handle is not None and slot.handle.handle_id == handle.handle_id:
                return kind
        return None

    # =========================================================================
    # Failures & retry
    # =========================================================================

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for attempt (1-based) with +/- jitter"""
        delay = min(self.retry_max_seconds, self.retry_base_seconds * (2 ** (attempt - 1)))
        spread = self.retry_jitter * (2 * self._rng.random() - 1)
        return max(0.0, delay * (1 + spread))

    async def on_error(self, handle: SubscriptionHandle, error: StreamError) -> None:
        handle.last_error = error.message
        kind = self._slot_for(handle)
        if kind is None:
            logger.debug(
                f"Ignoring error from non-canonical handle {handle.scope_key}: {error.message}",
                extra={"scope_key": handle.scope_key, "handle_id": handle.handle_id}
            )
            return
        slot = self._slots[kind]
        handle.state = SubscriptionState.ERROR
        slot.handle = None
        self._spawn(self._close_handle(handle), name=f"close-failed-{handle.scope_key}")
        uptime = utc_now() - handle.created_at
        if uptime >= timedelta(seconds=self.retry_max_seconds):
            slot.attempt = 0
        await self._handle_failure(kind, slot, handle, error)

    async def _handle_failure(
        self,
        kind: ScopeKind,
        slot: _ScopeSlot,
        handle: Optional[SubscriptionHandle],
        error: StreamError
    ) -> None:
        handle_id = handle.handle_id if handle else None
        if isinstance(error, HardStreamError):
            slot.degraded = True
            slot.detail = error.message
            logger.warning(
                f"Live updates degraded for {slot.scope_key}: {error.message}",
                extra={"scope_key": slot.scope_key, "handle_id": handle_id, "error_code": error.error_code}
            )
            self._publish_status()
            return

        slot.attempt += 1
        if slot.attempt > self.retry_max_attempts:
            slot.degraded = True
            slot.detail = f"Gave up after {self.retry_max_attempts} attempts: {error.message}"
            logger.warning(
                f"Live updates degraded for {slot.scope_key}: retries exhausted",
                extra={"scope_key": slot.scope_key, "attempt": slot.attempt, "error_code": error.error_code}
            )
            self._publish_status()
            return

        delay = self.backoff_delay(slot.attempt)
        logger.info(
            f"Retrying {slot.scope_key} in {delay:.2f}s: {error.message}",
            extra={"scope_key": slot.scope_key, "attempt": slot.attempt, "generation": slot.generation}
        )
        slot.retry_task = self._spawn(
            self._retry(kind, slot, delay), name=f"retry-{slot.scope_key}-{slot.attempt}"
        )
        self._publish_status()

    async def _retry(self, kind: ScopeKind, slot: _ScopeSlot, delay: float) -> None:
        await asyncio.sleep(delay)
        slot.retry_task = None
        if not self._is_current(kind, slot):
            logger.debug(
                f"Abandoning retry of superseded scope {slot.scope_key}",
                extra={"scope_key": slot.scope_key, "generation": slot.generation}
            )
            return
        await self._connect(kind, slot)

    # =========================================================================
    # Event routing
    # =========================================================================

    def _accept(self, handle: SubscriptionHandle) -> bool:
        kind = self._slot_for(handle)
        if kind is None:
            logger.debug(
                f"Ignoring event from non-canonical handle {handle.scope_key}",
                extra={"scope_key": handle.scope_key, "handle_id": handle.handle_id}
            )
            return False
        # A stream that delivers is healthy again
        self._slots[kind].attempt = 0
        return True

    async def on_insert(
        self, handle: SubscriptionHandle, table: ChangeTable, record: Dict[str, Any]
    ) -> None:
        if not self._accept(handle):
            return
        try:
            if table == ChangeTable.TICKETS:
                self.ticket_list.apply_ticket_insert(Ticket.model_validate(record))
            else:
                self.apply_message(Message.model_validate(record))
        except PydanticValidationError as e:
            logger.warning(
                f"Dropping malformed {table.value} insert: {e.error_count()} errors",
                extra={"scope_key": handle.scope_key}
            )

    async def on_update(
        self,
        handle: SubscriptionHandle,
        table: ChangeTable,
        old_record: Optional[Dict[str, Any]],
        record: Dict[str, Any]
    ) -> None:
        if not self._accept(handle):
            return
        try:
            if table == ChangeTable.TICKETS:
                await self._apply_ticket_update(old_record, record)
            else:
                self.apply_message_update(Message.model_validate(record))
        except PydanticValidationError as e:
            logger.warning(
                f"Dropping malformed {table.value} update: {e.error_count()} errors",
                extra={"scope_key": handle.scope_key}
            )

    async def _apply_ticket_update(
        self, old_record: Optional[Dict[str, Any]], record: Dict[str, Any]
    ) -> None:
        new = Ticket.model_validate(record)
        stored = self.ticket_list.find(new.id)
        if coerce_status(record.get("status")) is None and stored is not None:
            new = new.model_copy(update={"status": stored.status})
        old = None
        if old_record and "status" in old_record:
            old = Ticket.model_validate({**record, **old_record})
        await self.apply_ticket_update(old, new)

    async def apply_ticket_update(self, old: Optional[Ticket], new: Ticket) -> None:
        """Apply a ticket change (stream event or REST result) to both stores"""
        await self.ticket_list.apply_ticket_update(old, new)
        if self.selection.ticket_id == new.id:
            current = self.ticket_list.find(new.id) or new
            self.selection.ticket = current
            self.conversation.update_ticket(current)

    def apply_message(self, message: Message) -> None:
        """Fan a new message out to both stores"""
        self.ticket_list.apply_message_insert(message)
        self.conversation.apply_insert(message)

    def apply_message_update(self, message: Message) -> None:
        self.ticket_list.apply_message_update(message)
        self.conversation.apply_update(message)
