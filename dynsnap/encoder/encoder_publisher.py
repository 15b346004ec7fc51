"""
Encoder/publisher: keeps the sink connection fed at real-time cadence.

State machine:

    STARTING -> READY -> STREAMING <-> IDLE
    READY | STREAMING | IDLE -> STOPPED  (write failed)
    STOPPED -> READY                     (reconnect)

The pump thread ticks once per canonical frame (1024 samples at 48 kHz).
Each tick takes one frame from the PCM channel; when the channel is empty it
writes a silence frame instead so the sink never sees a gap. A failed write
moves the publisher to STOPPED; the pump keeps draining the channel (so the
active decoder never stalls) until reconnect() is called after the supervisor
has restarted the far end. With a reconnect interval set (an unsupervised
reader such as an external snapserver) the pump itself retries the transport
with a doubling backoff.
"""

import enum
import logging
import threading
import time
from typing import Callable, Optional

from dynsnap.constants import FRAME_DURATION_SEC
from dynsnap.encoder.pcm_channel import PcmChannel
from dynsnap.encoder.silence_source import SilenceSource
from dynsnap.encoder.transports import Transport
from dynsnap.supervisor.process_supervisor import ServiceHandle

logger = logging.getLogger(__name__)

MAX_RECONNECT_INTERVAL_SEC = 5.0


class EncoderState(enum.Enum):
    STARTING = "starting"
    READY = "ready"
    STREAMING = "streaming"
    IDLE = "idle"
    STOPPED = "stopped"


class EncoderPublisher:
    """Owns the transport and the real-time pump between PCM channel and sink."""

    def __init__(
        self,
        channel: PcmChannel,
        transport: Transport,
        silence: Optional[SilenceSource] = None,
        frame_duration: float = FRAME_DURATION_SEC,
        on_state_change: Optional[Callable[[EncoderState], None]] = None,
        reconnect_interval_sec: Optional[float] = None,
    ):
        self.channel = channel
        self.transport = transport
        self.silence = silence or SilenceSource()
        self.frame_duration = frame_duration
        self._on_state_change = on_state_change
        self.reconnect_interval_sec = reconnect_interval_sec
        self._reconnect_delay = reconnect_interval_sec or 0.0
        self._next_reconnect_at = 0.0
        self._state = EncoderState.STARTING
        self._state_lock = threading.Lock()
        self._transport_lock = threading.RLock()
        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.frames_sent = 0
        self.silence_frames_sent = 0
        self.frames_discarded = 0

    @property
    def state(self) -> EncoderState:
        with self._state_lock:
            return self._state

    def _set_state(self, new_state: EncoderState) -> None:
        with self._state_lock:
            old_state = self._state
            if old_state == new_state:
                return
            self._state = new_state
        logger.info(f"[ENCODER] {old_state.value} -> {new_state.value}")
        # Callback outside the lock
        if self._on_state_change is not None:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.error(f"[ENCODER] State change callback failed: {e}", exc_info=True)

    def start(self) -> None:
        """
        Open the transport and start the pump. Must run before any decoder writes.

        Raises:
            ServiceStartupFailure: If the transport cannot be opened
        """
        if self._thread is not None:
            return
        self._set_state(EncoderState.STARTING)
        with self._transport_lock:
            self.transport.open()
        self._set_state(EncoderState.READY)
        self._running.set()
        self._thread = threading.Thread(target=self._run, name="EncoderPump", daemon=True)
        self._thread.start()
        logger.info(f"[ENCODER] Pump started ({self.transport.name})")

    def stop(self, timeout: float = 2.0) -> None:
        if not self._running.is_set() and self._thread is None:
            return
        self._running.clear()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("[ENCODER] Pump thread did not stop within timeout")
            self._thread = None
        with self._transport_lock:
            self.transport.close()
        self._set_state(EncoderState.STOPPED)
        logger.info(
            f"[ENCODER] Stopped (frames={self.frames_sent}, silence={self.silence_frames_sent}, "
            f"discarded={self.frames_discarded})"
        )

    def _run(self) -> None:
        # Absolute clock timing to prevent drift
        next_tick = time.monotonic()

        while self._running.is_set():
            frame = self.channel.read_frame()
            try:
                self._emit(frame)
            except Exception as e:
                logger.error(f"[ENCODER] Pump error: {e}", exc_info=True)

            next_tick += self.frame_duration
            sleep_time = next_tick - time.monotonic()
            if sleep_time > 0:
                time.sleep(sleep_time)
            else:
                # Behind schedule, resync
                next_tick = time.monotonic()

    def _emit(self, frame: Optional[bytes]) -> None:
        state = self.state
        if state == EncoderState.STOPPED:
            if frame is not None:
                self.frames_discarded += 1
            self._maybe_reconnect()
            return

        if frame is None:
            payload = self.silence.next_frame()
            if state == EncoderState.STREAMING:
                self._set_state(EncoderState.IDLE)
        else:
            payload = frame
            if state in (EncoderState.READY, EncoderState.IDLE):
                self._set_state(EncoderState.STREAMING)

        try:
            with self._transport_lock:
                self.transport.write(payload)
        except OSError as e:
            logger.error(f"[ENCODER] Write to {self.transport.name} failed, waiting for reconnect: {e}")
            if self.reconnect_interval_sec is not None:
                self._reconnect_delay = self.reconnect_interval_sec
                self._next_reconnect_at = time.monotonic() + self._reconnect_delay
            self._set_state(EncoderState.STOPPED)
            return

        if frame is None:
            self.silence_frames_sent += 1
        else:
            self.frames_sent += 1

    def _maybe_reconnect(self) -> None:
        if self.reconnect_interval_sec is None or not self._running.is_set():
            return
        now = time.monotonic()
        if now < self._next_reconnect_at:
            return
        with self._transport_lock:
            reopened = self.transport.try_reopen()
        if reopened:
            logger.info(f"[ENCODER] Reconnected to {self.transport.name}")
            self._reconnect_delay = self.reconnect_interval_sec
            self._set_state(EncoderState.READY)
            return
        self._reconnect_delay = min(self._reconnect_delay * 2, MAX_RECONNECT_INTERVAL_SEC)
        self._next_reconnect_at = now + self._reconnect_delay
        logger.debug(f"[ENCODER] {self.transport.name} still unavailable, retrying in {self._reconnect_delay:.1f}s")

    def insert_silence(self, seconds: float) -> int:
        """
        Queue `seconds` of explicit silence through the PCM channel.

        Blocks while the channel is full, so this also paces the caller for
        roughly the silence duration.

        Returns:
            Number of silence frames queued
        """
        count = self.silence.frames_for(seconds)
        frame = self.silence.next_frame()
        logger.info(f"[ENCODER] Inserting {seconds:.1f}s of silence ({count} frames)")
        with self.channel.open_writer("silence") as writer:
            for _ in range(count):
                writer.write(frame)
        return count

    def reconnect(self) -> None:
        """Reopen the transport and resume from READY."""
        with self._transport_lock:
            self.transport.close()
            self.transport.open()
        self._set_state(EncoderState.READY)

    def on_service_restarted(self, old: ServiceHandle, new: ServiceHandle) -> None:
        """ProcessSupervisor restart listener."""
        with self._transport_lock:
            reconnected = self.transport.on_service_restarted(old, new)
        if reconnected:
            logger.info(f"[ENCODER] Reconnected after {new.spec.name} restart (pid={new.process_id})")
            self._set_state(EncoderState.READY)
