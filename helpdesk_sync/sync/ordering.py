"""Message Ordering - deterministic merge of messages into a conversation

The backend stamps messages independently of delivery order, so arrival
order is meaningless during bursts. Every merge recomputes a canonical
order from the *set* of messages:

1. Each message is keyed by its best timestamp (created, else sent, else
   received). A message with none is stamped with the merge time once, so
   later merges see a stable value.
2. Messages are walked in (timestamp, id) order and grouped into windows.
   A window starts at its first message and admits every following
   message less than ``CLOCK_SKEW_TOLERANCE`` after that anchor.
3. Windows are emitted in time order; inside a window, messages are ordered
   by id.

Members of one window are pairwise closer than the tolerance and ordered by
id; messages a full tolerance apart are always in different windows and
ordered by time. Because the result depends only on the set, any arrival
permutation produces the same sequence.
"""
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from ..domain.models import Message
from ..utils.time import utc_now


CLOCK_SKEW_TOLERANCE = timedelta(seconds=1)


def message_timestamp(message: Message, now: Optional[datetime] = None) -> datetime:
    """Best available timestamp for ordering"""
    return message.best_timestamp or now or utc_now()


def _stamped(message: Message, now: datetime) -> Message:
    if message.best_timestamp is not None:
        return message
    return message.model_copy(update={"created_at": now})


def canonical_order(
    messages: Iterable[Message],
    tolerance: timedelta = CLOCK_SKEW_TOLERANCE
) -> List[Message]:
    """Order a set of timestamped messages (see module docstring)"""
    by_time = sorted(messages, key=lambda m: (message_timestamp(m), m.id))
    ordered: List[Message] = []
    window: List[Message] = []
    anchor: Optional[datetime] = None

    for message in by_time:
        ts = message_timestamp(message)
        if anchor is None or ts - anchor >= tolerance:
            ordered.extend(sorted(window, key=lambda m: m.id))
            window = []
            anchor = ts
        window.append(message)

    ordered.extend(sorted(window, key=lambda m: m.id))
    return ordered


def contains(sequence: Sequence[Message], message_id: str) -> bool:
    return any(m.id == message_id for m in sequence)


def merge_message(
    existing: Sequence[Message],
    message: Message,
    now: Optional[datetime] = None
) -> List[Message]:
    """
    Merge one message into an ordered sequence.

    Idempotent: a message whose id is already present leaves the sequence
    unchanged. Never mutates ``existing``.
    """
    if contains(existing, message.id):
        return list(existing)
    stamped = _stamped(message, now or utc_now())
    return canonical_order([*existing, stamped])


def merge_messages(
    existing: Sequence[Message],
    messages: Iterable[Message],
    now: Optional[datetime] = None
) -> List[Message]:
    """Fold many messages in with repeated merge_message"""
    merged = list(existing)
    now = now or utc_now()
    for message in messages:
        merged = merge_message(merged, message, now=now)
    return merged


def replace_message(
    existing: Sequence[Message],
    message: Message,
    now: Optional[datetime] = None
) -> List[Message]:
    """
    Replace the message with the same id.

    An update for a message not yet seen is treated as an implicit insert.
    Fields the update does not carry (no timestamp at all) keep the value
    already held so the message does not jump to "now".
    """
    for current in existing:
        if current.id == message.id:
            if message.best_timestamp is None:
                message = message.model_copy(update={
                    "created_at": current.created_at,
                    "sent_at": current.sent_at,
                    "received_at": current.received_at,
                })
            remaining = [m for m in existing if m.id != message.id]
            return canonical_order([*remaining, _stamped(message, now or utc_now())])
    return merge_message(existing, message, now=now)
