"""Blob Registry - local ephemeral handles for fetched attachment bytes

Inline images whose bytes had to be downloaded through the authenticated
channel are parked here and addressed by ``{blob_url_prefix}/{blob_id}``.
Every handle lives until it is released; the owning view releases its
handles when it is discarded.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..config.settings import settings
from ..domain.errors import BlobNotFoundError
from ..utils.idgen import generate_blob_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


@dataclass
class Blob:
    blob_id: str
    content: bytes
    content_type: str = "application/octet-stream"
    filename: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def size(self) -> int:
        return len(self.content)


class BlobRegistry:
    """In-process store of minted blob handles"""

    def __init__(self, url_prefix: Optional[str] = None):
        self.url_prefix = (url_prefix or settings.blob_url_prefix).rstrip("/")
        self._blobs: Dict[str, Blob] = {}

    def __len__(self) -> int:
        return len(self._blobs)

    def url_for(self, blob_id: str) -> str:
        return f"{self.url_prefix}/{blob_id}"

    def blob_id_from(self, handle: str) -> str:
        """Accept either a bare blob id or a minted URL"""
        prefix = f"{self.url_prefix}/"
        return handle[len(prefix):] if handle.startswith(prefix) else handle

    def mint(
        self,
        content: bytes,
        content_type: Optional[str] = None,
        filename: Optional[str] = None
    ) -> str:
        """Register bytes and return the URL that serves them"""
        blob = Blob(
            blob_id=generate_blob_id(),
            content=content,
            content_type=content_type or "application/octet-stream",
            filename=filename,
        )
        self._blobs[blob.blob_id] = blob
        logger.debug(f"Minted blob {blob.blob_id} ({blob.size} bytes)")
        return self.url_for(blob.blob_id)

    def get(self, handle: str) -> Blob:
        blob = self._blobs.get(self.blob_id_from(handle))
        if blob is None:
            raise BlobNotFoundError(
                f"Blob {handle} not found",
                details={"blob_id": self.blob_id_from(handle)}
            )
        return blob

    def release(self, handle: str) -> bool:
        """Forget one handle; releasing twice is a no-op"""
        return self._blobs.pop(self.blob_id_from(handle), None) is not None

    def release_all(self, handles: Iterable[str]) -> int:
        released = 0
        for handle in handles:
            if self.release(handle):
                released += 1
        return released

    def handles(self) -> List[str]:
        return [self.url_for(blob_id) for blob_id in self._blobs]
