"""
Observability channel publishers.

Events are small JSON objects addressed by topic ("log", "metadata",
"status"). Publishing is fire-and-forget: a slow or absent observer never
blocks or fails a playout cycle. Events that cannot be delivered are dropped
and counted.
"""

import errno
import json
import logging
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

TOPIC_LOG = "log"
TOPIC_METADATA = "metadata"
TOPIC_STATUS = "status"


class EventPublisher(ABC):
    """Abstract base class for observability publishers."""

    @abstractmethod
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        ...

    def publish_log(self, line: str, source: str = "dynsnap") -> None:
        self.publish(TOPIC_LOG, {"source": source, "line": line, "ts": time.time()})

    def publish_metadata(self, metadata: Dict[str, Any]) -> None:
        self.publish(TOPIC_METADATA, dict(metadata, ts=time.time()))

    def publish_status(self, event: str, **fields: Any) -> None:
        self.publish(TOPIC_STATUS, dict(fields, event=event, ts=time.time()))

    def close(self) -> None:
        pass


class NullEventPublisher(EventPublisher):
    """Discards every event."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        pass


class HttpEventPublisher(EventPublisher):
    """
    POSTs events as JSON to {base_url}/{topic}.

    Requests are made from a background sender thread fed by a bounded queue;
    publish() never blocks and drops the event when the queue is full.
    """

    def __init__(self, base_url: str, timeout: float = 0.5, queue_size: int = 1000,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.dropped = 0
        self.sent = 0
        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue(maxsize=queue_size)
        self._client = client or httpx.Client(timeout=timeout)

        # Suppress httpx INFO level logging (one line per event otherwise)
        logging.getLogger("httpx").setLevel(logging.WARNING)

        self._thread = threading.Thread(target=self._sender, name="EventPublisher", daemon=True)
        self._thread.start()
        logger.info(f"HttpEventPublisher initialized (url={self.base_url})")

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((topic, payload))
        except queue.Full:
            self.dropped += 1

    def _sender(self) -> None:
        while True:
            item = self._queue.get()
            if item is None:
                break
            topic, payload = item
            try:
                self._client.post(f"{self.base_url}/{topic}", json=payload)
                self.sent += 1
            except httpx.HTTPError as e:
                # Fire-and-forget: observer unavailability must not affect playout
                self.dropped += 1
                logger.debug(f"[EVENTS] Failed to publish {topic} event: {e}")
            except Exception as e:
                self.dropped += 1
                logger.debug(f"[EVENTS] Unexpected error publishing {topic} event: {e}", exc_info=True)

    def close(self) -> None:
        try:
            self._queue.put(None, timeout=1.0)
        except queue.Full:
            pass
        self._thread.join(timeout=2.0)
        self._client.close()


class FifoEventPublisher(EventPublisher):
    """
    Writes one JSON line per event into a named pipe (read by the control
    channel relay). Events are dropped while nobody has the pipe open for
    reading or while the pipe is full.
    """

    def __init__(self, path: str):
        self.path = path
        self.dropped = 0
        self._fd: Optional[int] = None
        self._lock = threading.Lock()

    def _ensure_open(self) -> bool:
        if self._fd is not None:
            return True
        try:
            self._fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            if e.errno not in (errno.ENXIO, errno.ENOENT):
                logger.debug(f"[EVENTS] Cannot open {self.path}: {e}")
            return False
        return True

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        line = (json.dumps(dict(payload, topic=topic), default=str) + "\n").encode("utf-8")
        with self._lock:
            if not self._ensure_open():
                self.dropped += 1
                return
            try:
                os.write(self._fd, line)
            except BlockingIOError:
                self.dropped += 1
            except OSError:
                # Reader went away (EPIPE); reopen on the next event
                self.dropped += 1
                self._close_fd()

    def _close_fd(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass

    def close(self) -> None:
        with self._lock:
            self._close_fd()


class CompositeEventPublisher(EventPublisher):
    """Fans every event out to several publishers."""

    def __init__(self, publishers: List[EventPublisher]):
        self.publishers = list(publishers)

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        for publisher in self.publishers:
            publisher.publish(topic, payload)

    def close(self) -> None:
        for publisher in self.publishers:
            publisher.close()


def create_publisher(events_url: Optional[str] = None, log_fifo: Optional[str] = None) -> EventPublisher:
    """Build the publisher for the configured observability backends."""
    publishers: List[EventPublisher] = []
    if events_url:
        publishers.append(HttpEventPublisher(events_url))
    if log_fifo:
        publishers.append(FifoEventPublisher(log_fifo))
    if not publishers:
        return NullEventPublisher()
    if len(publishers) == 1:
        return publishers[0]
    return CompositeEventPublisher(publishers)
