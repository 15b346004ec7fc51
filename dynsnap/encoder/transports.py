"""
Byte transports between the encoder pump and the streaming sink.

StdinTransport feeds an ffmpeg encoder service that pushes to icecast.
FifoTransport writes raw canonical PCM into a named pipe read by the sink.
"""

import errno
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from dynsnap.errors import ServiceStartupFailure
from dynsnap.supervisor.process_supervisor import (
    ProcessSupervisor,
    ServiceHandle,
    ServiceKind,
    ServiceSpec,
)

logger = logging.getLogger(__name__)


class Transport(ABC):
    """
    Abstract base class for encoder transports.

    write() raises OSError (usually BrokenPipeError) when the far end is gone.
    """

    name = "transport"

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def write(self, frame: bytes) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def on_service_restarted(self, old: ServiceHandle, new: ServiceHandle) -> bool:
        """
        React to a supervised service being replaced.

        Returns:
            True if the transport re-established its connection
        """
        return False

    def try_reopen(self) -> bool:
        """
        Make one non-blocking attempt to re-establish a lost connection.

        Returns:
            True if the transport is writable again
        """
        return False


class StdinTransport(Transport):
    """Writes PCM to the stdin of the supervised encoder (TRANSPORT) service."""

    name = "encoder-stdin"

    def __init__(self, supervisor: ProcessSupervisor, spec: ServiceSpec):
        self._supervisor = supervisor
        self._spec = spec
        self._handle: Optional[ServiceHandle] = None

    @property
    def handle(self) -> Optional[ServiceHandle]:
        return self._handle

    def open(self) -> None:
        """
        Raises:
            ServiceStartupFailure: If the encoder service does not come up
        """
        self._handle = self._supervisor.start(self._spec)

    def write(self, frame: bytes) -> None:
        handle = self._handle
        if handle is None or handle.exited.is_set() or handle.stdin is None:
            raise BrokenPipeError("encoder process is not running")
        handle.stdin.write(frame)
        handle.stdin.flush()

    def on_service_restarted(self, old: ServiceHandle, new: ServiceHandle) -> bool:
        if new.kind == ServiceKind.TRANSPORT:
            self._handle = new
            return True
        if new.kind == ServiceKind.SINK and self._handle is not None:
            # The encoder's icecast connection died with the old sink
            logger.info("[ENCODER] Sink restarted, restarting encoder transport")
            self._handle = self._supervisor.restart(self._handle)
            return True
        return False

    def close(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None and not handle.exited.is_set():
            self._supervisor.stop_service(handle, grace_sec=2.0)


class FifoTransport(Transport):
    """
    Writes raw PCM into a named pipe read by the sink process.

    Opening is two-phase. Phase 1 waits until the reader (sink) is alive.
    Phase 2 opens the write end non-blocking, retrying on ENXIO (no reader
    yet) a bounded number of times, then switches the descriptor to blocking.
    """

    name = "pcm-fifo"

    def __init__(
        self,
        path: str,
        reader_alive: Optional[Callable[[], bool]] = None,
        retries: int = 50,
        retry_delay_sec: float = 0.1,
    ):
        self.path = path
        self._reader_alive = reader_alive or (lambda: True)
        self._retries = retries
        self._retry_delay_sec = retry_delay_sec
        self._fd: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def open(self) -> None:
        """
        Raises:
            ServiceStartupFailure: If no reader appears within the retry budget
        """
        self.close()

        for _ in range(self._retries):
            if self._reader_alive():
                break
            time.sleep(self._retry_delay_sec)
        else:
            raise ServiceStartupFailure(f"FIFO reader for {self.path} is not running")

        for attempt in range(1, self._retries + 1):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
            except OSError as e:
                if e.errno != errno.ENXIO:
                    raise ServiceStartupFailure(f"Cannot open FIFO {self.path}: {e}") from e
                logger.debug(f"[ENCODER] FIFO {self.path} has no reader yet (attempt {attempt}/{self._retries})")
                time.sleep(self._retry_delay_sec)
                continue
            os.set_blocking(fd, True)
            self._fd = fd
            logger.info(f"[ENCODER] FIFO {self.path} opened for writing")
            return

        raise ServiceStartupFailure(
            f"FIFO {self.path} still has no reader after {self._retries} attempts"
        )

    def write(self, frame: bytes) -> None:
        if self._fd is None:
            raise BrokenPipeError(f"FIFO {self.path} is not open")
        view = memoryview(frame)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    def try_reopen(self) -> bool:
        self.close()
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as e:
            if e.errno not in (errno.ENXIO, errno.ENOENT):
                logger.warning(f"[ENCODER] Cannot reopen FIFO {self.path}: {e}")
            return False
        os.set_blocking(fd, True)
        self._fd = fd
        logger.info(f"[ENCODER] FIFO {self.path} reopened for writing")
        return True

    def on_service_restarted(self, old: ServiceHandle, new: ServiceHandle) -> bool:
        if new.kind != ServiceKind.SINK:
            return False
        logger.info("[ENCODER] Sink restarted, reopening FIFO")
        self.open()
        return True

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            try:
                os.close(fd)
            except OSError:
                pass
