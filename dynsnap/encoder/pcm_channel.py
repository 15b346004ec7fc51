"""
Bounded in-process channel carrying canonical PCM frames from the active
decoder to the encoder pump.

Exactly one writer may hold the channel at a time (open_writer() is a lease),
and writes block while the channel is full. The blocking write is what paces
decoders to the real-time cadence of the encoder pump.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

from dynsnap.constants import FRAME_SIZE_BYTES

# ~1.4 seconds of audio at 21.333ms per frame
DEFAULT_CAPACITY = 64


class ChannelClosed(Exception):
    """The channel was closed while a writer or reader was using it."""


class ChannelBusy(RuntimeError):
    """A second writer tried to open the channel while the first still holds it."""


@dataclass
class PcmChannelStats:
    """
    Statistics for PcmChannel.

    Attributes:
        capacity: Maximum number of frames the channel can hold
        count: Current number of frames queued
        total_written: Frames accepted since creation
        total_read: Frames handed to the reader since creation
        writer: Owner name of the current writer lease, if any
    """
    capacity: int
    count: int
    total_written: int
    total_read: int
    writer: Optional[str]


class PcmWriter:
    """Writer lease returned by PcmChannel.open_writer()."""

    def __init__(self, channel: "PcmChannel", owner: str):
        self._channel = channel
        self.owner = owner
        self._released = False

    def write(self, frame: bytes, timeout: Optional[float] = None) -> None:
        if self._released:
            raise RuntimeError(f"Writer lease for {self.owner} already released")
        self._channel._put(frame, timeout)

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._channel._release_writer(self)

    def __enter__(self) -> "PcmWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class PcmChannel:
    """
    Thread-safe bounded FIFO of PCM frames with a single-writer lease.

    Unlike a drop-oldest ring buffer, a full channel blocks the writer rather
    than losing audio.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, frame_size: int = FRAME_SIZE_BYTES) -> None:
        """
        Args:
            capacity: Maximum number of frames (must be > 0)
            frame_size: Exact size in bytes every frame must have

        Raises:
            ValueError: If capacity <= 0
        """
        if capacity <= 0:
            raise ValueError(f"PcmChannel capacity must be > 0, got {capacity}")
        self._capacity = capacity
        self._frame_size = frame_size
        self._frames: deque[bytes] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._writer: Optional[PcmWriter] = None
        self._closed = False
        self._total_written = 0
        self._total_read = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def open_writer(self, owner: str) -> PcmWriter:
        """
        Acquire the single writer lease.

        Raises:
            ChannelBusy: If another writer currently holds the channel
            ChannelClosed: If the channel has been closed
        """
        with self._lock:
            if self._closed:
                raise ChannelClosed("PCM channel is closed")
            if self._writer is not None:
                raise ChannelBusy(
                    f"PCM channel already held by {self._writer.owner!r}, refused {owner!r}"
                )
            self._writer = PcmWriter(self, owner)
            return self._writer

    def _release_writer(self, writer: PcmWriter) -> None:
        with self._lock:
            if self._writer is writer:
                self._writer = None

    def _put(self, frame: bytes, timeout: Optional[float]) -> None:
        if len(frame) != self._frame_size:
            raise ValueError(f"Frame size must be exactly {self._frame_size} bytes, got {len(frame)} bytes")
        with self._not_full:
            if not self._not_full.wait_for(
                lambda: self._closed or len(self._frames) < self._capacity, timeout
            ):
                raise TimeoutError("PCM channel full")
            if self._closed:
                raise ChannelClosed("PCM channel is closed")
            self._frames.append(frame)
            self._total_written += 1
            self._not_empty.notify()

    def read_frame(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Pop the oldest frame.

        Args:
            timeout: None or <= 0 returns immediately; otherwise waits up to timeout seconds

        Returns:
            Frame bytes, or None if nothing arrived (or the channel is closed and drained)
        """
        with self._not_empty:
            if not self._frames and timeout is not None and timeout > 0:
                self._not_empty.wait_for(lambda: self._closed or bool(self._frames), timeout)
            if not self._frames:
                return None
            frame = self._frames.popleft()
            self._total_read += 1
            self._not_full.notify()
            return frame

    def clear(self) -> int:
        """Drop all queued frames and return how many were dropped."""
        with self._lock:
            dropped = len(self._frames)
            self._frames.clear()
            self._not_full.notify_all()
            return dropped

    def close(self) -> None:
        """Close the channel and wake every blocked writer and reader."""
        with self._lock:
            self._closed = True
            self._not_full.notify_all()
            self._not_empty.notify_all()

    def __len__(self) -> int:
        with self._lock:
            return len(self._frames)

    def get_stats(self) -> PcmChannelStats:
        with self._lock:
            return PcmChannelStats(
                capacity=self._capacity,
                count=len(self._frames),
                total_written=self._total_written,
                total_read=self._total_read,
                writer=self._writer.owner if self._writer else None,
            )
