"""Conversation View - rendered message bodies of the open conversation

Owns the blob handles minted while rendering. A message keeps its rendered
body until its HTML changes; handles of bodies that are replaced or of
messages that left the conversation are released on the next render, and
all of them are released when the view is discarded.
"""
from typing import Dict, List, Sequence, Tuple

from ..domain.models import Message, RenderedMessage
from ..utils.logger import get_logger
from .inline_content import InlineContentResolver, ResolvedContent

logger = get_logger(__name__)


class ConversationView:
    """Renders messages through an injected InlineContentResolver"""

    def __init__(self, resolver: InlineContentResolver):
        self.resolver = resolver
        self._rendered: Dict[str, Tuple[str, ResolvedContent]] = {}

    @property
    def handle_count(self) -> int:
        return sum(len(resolved.handles) for _, resolved in self._rendered.values())

    async def render(self, messages: Sequence[Message]) -> List[RenderedMessage]:
        current_ids = {m.id for m in messages}
        for message_id in [mid for mid in self._rendered if mid not in current_ids]:
            self._drop(message_id)

        result = []
        for message in messages:
            cached = self._rendered.get(message.id)
            if cached is None or cached[0] != message.body_html:
                if cached is not None:
                    self._drop(message.id)
                resolved = await self.resolver.resolve(message.body_html, message.attachments)
                self._rendered[message.id] = (message.body_html, resolved)
                cached = self._rendered[message.id]
            result.append(RenderedMessage(message=message, html=cached[1].html))
        return result

    def _drop(self, message_id: str) -> None:
        entry = self._rendered.pop(message_id, None)
        if entry is not None and entry[1].handles:
            self.resolver.release(entry[1].handles)

    def discard(self) -> int:
        """Release every handle this view minted"""
        released = 0
        for _, resolved in self._rendered.values():
            released += self.resolver.release(resolved.handles)
        self._rendered.clear()
        if released:
            logger.debug(f"Released {released} inline blob(s)")
        return released
