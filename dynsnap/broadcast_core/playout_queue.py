import logging
from typing import Optional

from dynsnap.broadcast_core.track import Track, TrackStatus
from dynsnap.errors import FetchError

logger = logging.getLogger(__name__)


class PlayoutQueue:
    """
    Two-slot queue: the track being streamed and the one being pre-fetched.

    At most one background fetch may be in flight. The next slot is only
    promoted after its fetch handle has been waited on and succeeded.
    """

    def __init__(self):
        self.current: Optional[Track] = None
        self.next: Optional[Track] = None
        self._pending = None  # FetchHandle for self.next

    @property
    def pending(self):
        """FetchHandle of the in-flight background fetch, if any."""
        return self._pending

    @property
    def has_pending_fetch(self) -> bool:
        return self._pending is not None

    def set_current(self, track: Track) -> None:
        if self.current is not None:
            raise RuntimeError(f"Current slot already holds {self.current.locator}")
        self.current = track
        logger.debug(f"[QUEUE] Current: {track.locator}")

    def clear_current(self) -> Optional[Track]:
        track, self.current = self.current, None
        return track

    def begin_prefetch(self, track: Track, handle) -> None:
        """
        Put track in the next slot with its in-flight fetch handle.

        Raises:
            RuntimeError: If a background fetch is already outstanding or next is occupied
        """
        if self._pending is not None:
            raise RuntimeError("A background fetch is already in flight")
        if self.next is not None:
            raise RuntimeError(f"Next slot already holds {self.next.locator}")
        track.status = TrackStatus.FETCHING
        self.next = track
        self._pending = handle
        logger.debug(f"[QUEUE] Prefetching: {track.locator}")

    def settle(self, timeout: Optional[float] = None) -> Optional[Track]:
        """
        Wait for the pending fetch.

        Returns:
            The fetched next track, or None if nothing was being fetched

        Raises:
            FetchError: If the fetch failed; the next slot is cleared and its file removed
        """
        if self._pending is None:
            return self.next
        handle, track = self._pending, self.next
        try:
            handle.wait(timeout)
        except FetchError:
            self._pending = None
            self.next = None
            track.status = TrackStatus.FAILED
            track.discard()
            raise
        self._pending = None
        track.status = TrackStatus.FETCHED
        return track

    def promote(self) -> Track:
        """
        Move next into current.

        Raises:
            RuntimeError: If next is empty, unsettled, or current is still occupied
        """
        if self._pending is not None:
            raise RuntimeError("Cannot promote before the background fetch has settled")
        if self.next is None or self.next.status != TrackStatus.FETCHED:
            raise RuntimeError("No confirmed next track to promote")
        if self.current is not None:
            raise RuntimeError(f"Current slot still holds {self.current.locator}")
        self.current, self.next = self.next, None
        logger.debug(f"[QUEUE] Promoted: {self.current.locator}")
        return self.current

    def abandon_next(self) -> None:
        """Cancel any in-flight fetch and drop the next track and its file."""
        handle, self._pending = self._pending, None
        track, self.next = self.next, None
        if handle is not None:
            handle.cancel()
            try:
                handle.wait(timeout=5.0)
            except (FetchError, TimeoutError):
                pass
        if track is not None:
            track.discard()
            logger.debug(f"[QUEUE] Abandoned next: {track.locator}")

    def clear(self) -> None:
        """Drop both slots and remove their local files."""
        self.abandon_next()
        track = self.clear_current()
        if track is not None:
            track.discard()
