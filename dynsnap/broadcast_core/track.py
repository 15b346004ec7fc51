import logging
import os
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dynsnap.broadcast_core.format_sniffer import CodecKind
from dynsnap.fetch.rclone_fetcher import remove_partial

logger = logging.getLogger(__name__)


class TrackStatus(Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FETCHED = "fetched"
    DECODING = "decoding"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Track:
    """
    One playout candidate: a catalog locator and its local scratch copy.

    The local file lives for a single playout cycle; discard() removes it
    on every exit path.
    """
    locator: str
    local_path: str
    catalog_id: Optional[int] = None
    detected_format: Optional[CodecKind] = None
    status: TrackStatus = TrackStatus.PENDING
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_locator(cls, locator: str, scratch_dir: str, catalog_id: Optional[int] = None) -> "Track":
        """
        Create a Track with a unique local path under scratch_dir.

        The same locator may be queued twice (current and next), so the local
        name never derives from the locator alone.
        """
        _, ext = os.path.splitext(locator)
        if len(ext) > 8 or "/" in ext:
            ext = ""
        local_path = os.path.join(scratch_dir, f"{uuid.uuid4().hex}{ext}")
        return cls(locator=locator, local_path=local_path, catalog_id=catalog_id)

    def discard(self) -> None:
        """Remove the local file and any partial download. Idempotent."""
        remove_partial(self.local_path)
        logger.debug(f"[PLAYOUT] Discarded local copy of {self.locator}: {self.local_path}")

    def describe(self) -> Dict[str, Any]:
        return {
            "locator": self.locator,
            "catalog_id": self.catalog_id,
            "codec": self.detected_format.value if self.detected_format else None,
            **self.metadata,
        }
