"""Inline Content Resolver - turns cid: references into fetchable URLs

Email bodies reference inline attachments by content identifier
(``<img src="cid:image001.png@01D9...">``). Browsers cannot dereference
those, so each reference is matched against the message's attachment
descriptors and replaced with a URL:

- an attachment with a storage key is downloaded through the authenticated
  channel and parked in the BlobRegistry (a local ephemeral handle);
- otherwise the attachment's remote URL is used as-is.

Resolution is fail-open: a reference that matches nothing, or whose bytes
cannot be fetched, is left untouched.
"""
import re
from html import unescape
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import unquote

from pydantic import BaseModel, Field

from ..domain.errors import FetchError
from ..domain.models import AttachmentDescriptor
from ..utils.logger import get_logger
from .blob_registry import BlobRegistry

logger = get_logger(__name__)

CID_REFERENCE = re.compile(
    r"cid:(<[^<>\"']*>|&lt;[^\"'\s]*?&gt;|[^\"'\s<>)]+)", re.IGNORECASE
)
_PORT_SUFFIX = re.compile(r":\d+$")
_LOCAL_SPLIT = re.compile(r"[@:]")

Downloader = Callable[[str], Awaitable[bytes]]


class ResolvedContent(BaseModel):
    """Rewritten HTML plus the blob handles minted for it"""
    html: str
    handles: List[str] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)


def normalize_cid(value: str) -> str:
    """Strip enclosing angle brackets (raw or escaped) and a trailing ``:<digits>`` suffix"""
    text = unescape(unquote(value or "")).strip()
    if text.startswith("<"):
        text = text[1:]
    if text.endswith(">"):
        text = text[:-1]
    return _PORT_SUFFIX.sub("", text.strip())


def local_part(value: str) -> str:
    """Part before the first ``@`` or ``:``"""
    return _LOCAL_SPLIT.split(value, 1)[0]


def _keys(attachment: AttachmentDescriptor) -> List[str]:
    return [key for key in (attachment.content_id, attachment.id) if key]


def match_attachment(
    reference: str, attachments: Sequence[AttachmentDescriptor]
) -> Optional[AttachmentDescriptor]:
    """
    Find the attachment a reference points at.

    Precedence: exact id, then normalized id, then shared local part.
    Within one rule the first descriptor wins.
    """
    for attachment in attachments:
        if reference in _keys(attachment):
            return attachment

    normalized = normalize_cid(reference)
    for attachment in attachments:
        if any(normalize_cid(key) == normalized for key in _keys(attachment)):
            return attachment

    local = local_part(normalized)
    if not local:
        return None
    for attachment in attachments:
        if any(local_part(normalize_cid(key)) == local for key in _keys(attachment)):
            return attachment
    return None


class InlineContentResolver:
    """Resolves cid: references of one message body at a time"""

    def __init__(self, download: Downloader, blobs: BlobRegistry):
        self._download = download
        self.blobs = blobs

    async def _locate(
        self,
        attachment: AttachmentDescriptor,
        minted: Dict[str, str],
        handles: List[str]
    ) -> Optional[str]:
        if attachment.storage_key:
            if attachment.storage_key in minted:
                return minted[attachment.storage_key]
            try:
                content = await self._download(attachment.storage_key)
            except FetchError as e:
                logger.warning(
                    f"Inline attachment {attachment.name or attachment.storage_key} unavailable: {e.message}"
                )
                return attachment.url
            url = self.blobs.mint(content, attachment.content_type, attachment.name)
            minted[attachment.storage_key] = url
            handles.append(url)
            return url
        return attachment.url

    async def resolve(
        self, html: str, attachments: Sequence[AttachmentDescriptor]
    ) -> ResolvedContent:
        """Rewrite every resolvable cid: reference in html"""
        references = list(dict.fromkeys(CID_REFERENCE.findall(html or "")))
        if not references:
            return ResolvedContent(html=html or "")

        replacements: Dict[str, str] = {}
        minted: Dict[str, str] = {}
        handles: List[str] = []
        unresolved: List[str] = []
        for reference in references:
            attachment = match_attachment(reference, attachments)
            url = await self._locate(attachment, minted, handles) if attachment else None
            if url:
                replacements[reference] = url
            else:
                unresolved.append(reference)

        if unresolved:
            logger.debug(f"Leaving {len(unresolved)} inline reference(s) unresolved")

        def substitute(match: "re.Match[str]") -> str:
            url = replacements.get(match.group(1))
            return url if url else match.group(0)

        return ResolvedContent(
            html=CID_REFERENCE.sub(substitute, html),
            handles=handles,
            unresolved=unresolved,
        )

    def release(self, handles: Sequence[str]) -> int:
        """Release blob handles minted by resolve()"""
        return self.blobs.release_all(handles)
