"""
Playout engine: the select -> fetch -> decode -> stream loop.

While the current track streams, the next one is already being fetched in
the background, so the gap between tracks is only the inter-cycle delay.
Per-track failures (fetch, format detection, decode) never stop the loop;
they are counted, and only an unbroken run of them reaching the failure
ceiling is fatal.
"""

import logging
import random
import threading
from typing import Callable, Optional, Sequence

from dynsnap.broadcast_core.track import Track, TrackStatus
from dynsnap.errors import (
    CatalogUnavailable,
    DecodeError,
    DetectError,
    FailureCeilingReached,
    FetchError,
    StartupFetchFailed,
)
from dynsnap.outputs.event_publisher import EventPublisher, NullEventPublisher
from dynsnap.state.engine_state import EngineState, FailureCounter

logger = logging.getLogger(__name__)

SELECTION_ERRORS = (CatalogUnavailable, LookupError)
SILENCE_CHUNK_SEC = 1.0


class PlayoutEngine:
    """
    Drives continuous playout from a random catalog.

    Collaborators are injected so the loop can run against real helpers or
    test doubles:

    - catalog: random_entry(rng) -> CatalogEntry
    - fetcher: fetch_async(locator, dest) -> handle with wait() and cancel()
    - sniffer: probe(path) -> ProbeResult
    - decoder_factory: (path, codec) -> decoder with decode(sink) and kill()
    - channel: open_writer(owner) -> writer lease
    - encoder: insert_silence(seconds), optional
    - supervisor: check_services(), optional
    """

    def __init__(
        self,
        catalog,
        fetcher,
        sniffer,
        decoder_factory: Callable,
        channel,
        scratch_dir: str,
        encoder=None,
        supervisor=None,
        publisher: Optional[EventPublisher] = None,
        failure_ceiling: int = 5,
        inter_cycle_delay_sec: float = 1.0,
        silence_windows_sec: Sequence[float] = (1.0, 5.0, 30.0),
        startup_fetch_attempts: int = 2,
        startup_retry_delay_sec: float = 2.0,
        rng: Optional[random.Random] = None,
    ):
        self.catalog = catalog
        self.fetcher = fetcher
        self.sniffer = sniffer
        self.decoder_factory = decoder_factory
        self.channel = channel
        self.scratch_dir = scratch_dir
        self.encoder = encoder
        self.supervisor = supervisor
        self.publisher = publisher or NullEventPublisher()
        self.inter_cycle_delay_sec = inter_cycle_delay_sec
        self.silence_windows_sec = list(silence_windows_sec) or [1.0]
        self.startup_fetch_attempts = startup_fetch_attempts
        self.startup_retry_delay_sec = startup_retry_delay_sec
        self.rng = rng or random.Random()
        self.state = EngineState(failures=FailureCounter(failure_ceiling))
        self._active_lock = threading.RLock()
        self._active_decoder = None
        self._active_fetch = None  # foreground fetch handle

    def run(self) -> None:
        """
        Run playout until stop() is called or a fatal error occurs.

        Raises:
            StartupFetchFailed: If no initial track could be fetched
            FailureCeilingReached: If consecutive failures reach the ceiling
            ServiceCrash: If an essential service died and could not be restarted
        """
        logger.info("[PLAYOUT] Playout engine starting")
        try:
            self._startup_fetch()
            while not self.state.stopping:
                self._check_health()
                self._check_ceiling()

                self._start_prefetch()

                if self._stream_current():
                    self.state.failures.reset()
                    self.state.tracks_streamed += 1
                if self.state.stopping:
                    break

                self._settle_next()
                self.state.cycles_completed += 1
                self._sleep(self.inter_cycle_delay_sec)
        finally:
            self.state.queue.clear()
            logger.info(
                f"[PLAYOUT] Playout engine stopped (cycles={self.state.cycles_completed}, "
                f"streamed={self.state.tracks_streamed})"
            )

    def stop(self) -> None:
        """
        Request the loop to end. Callable from any thread.

        Kills the active decoder and cancels both the foreground and the
        background fetch so run() returns promptly; run() itself removes all
        track files.
        """
        if self.state.stopping:
            return
        logger.info("[PLAYOUT] Stop requested")
        self.state.stop_event.set()
        with self._active_lock:
            decoder = self._active_decoder
            fetch = self._active_fetch
        if decoder is not None:
            decoder.kill()
        if fetch is not None:
            fetch.cancel()
        pending = self.state.queue.pending
        if pending is not None:
            pending.cancel()

    # Selection and fetching

    def _select_track(self) -> Track:
        entry = self.catalog.random_entry(self.rng)
        return Track.for_locator(entry.locator, self.scratch_dir, catalog_id=entry.id)

    def _fetch_sync(self, track: Track) -> Track:
        """Fetch in the foreground through a handle stop() can cancel."""
        track.status = TrackStatus.FETCHING
        handle = self.fetcher.fetch_async(track.locator, track.local_path)
        with self._active_lock:
            self._active_fetch = handle
        try:
            if self.state.stopping:
                handle.cancel()
            handle.wait()
        except FetchError:
            track.status = TrackStatus.FAILED
            track.discard()
            raise
        finally:
            with self._active_lock:
                self._active_fetch = None
        track.status = TrackStatus.FETCHED
        return track

    def _startup_fetch(self) -> None:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.startup_fetch_attempts + 1):
            if self.state.stopping:
                return
            try:
                track = self._fetch_sync(self._select_track())
            except SELECTION_ERRORS + (FetchError,) as e:
                if self.state.stopping:
                    return
                last_error = e
                logger.warning(
                    f"[PLAYOUT] Initial fetch attempt {attempt}/{self.startup_fetch_attempts} failed: {e}"
                )
                if attempt < self.startup_fetch_attempts:
                    self._sleep(self.startup_retry_delay_sec)
                continue
            self.state.queue.set_current(track)
            logger.info(f"[PLAYOUT] Initial track ready: {track.locator}")
            return
        if self.state.stopping:
            return
        raise StartupFetchFailed(
            f"No initial track after {self.startup_fetch_attempts} attempts: {last_error}"
        )

    def _start_prefetch(self) -> None:
        try:
            track = self._select_track()
        except SELECTION_ERRORS as e:
            self._record_failure("select", None, e)
            return
        handle = self.fetcher.fetch_async(track.locator, track.local_path)
        self.state.queue.begin_prefetch(track, handle)
        logger.info(f"[PLAYOUT] Prefetching next track: {track.locator}")

    def _settle_next(self) -> None:
        queue = self.state.queue
        if queue.next is None:
            # Selection already failed and was counted; back off before selecting again
            self._fill_silence(self.silence_windows_sec[0])
            self._emergency_fetch(attempt=1)
            return
        locator = queue.next.locator
        try:
            queue.settle()
        except FetchError as e:
            if self.state.stopping:
                return
            self._record_failure("fetch", locator, e)
            self._emergency_fetch()
            return
        queue.promote()

    def _emergency_fetch(self, attempt: int = 0) -> None:
        """
        Fetch a replacement track synchronously, filling the stream with
        escalating windows of silence between attempts.
        """
        while not self.state.stopping:
            self._check_ceiling()
            locator = None
            try:
                track = self._select_track()
                locator = track.locator
                self._fetch_sync(track)
            except SELECTION_ERRORS + (FetchError,) as e:
                if self.state.stopping:
                    return
                stage = "fetch" if isinstance(e, FetchError) else "select"
                self._record_failure(stage, locator, e)
                window = self.silence_windows_sec[min(attempt, len(self.silence_windows_sec) - 1)]
                attempt += 1
                self._fill_silence(window)
                continue
            self.state.queue.set_current(track)
            logger.info(f"[PLAYOUT] Emergency fetch succeeded: {track.locator}")
            return

    # Streaming

    def _stream_current(self) -> bool:
        queue = self.state.queue
        track = queue.current
        if track is None:
            return False
        self.state.streaming = track
        try:
            track.status = TrackStatus.DECODING
            probe = self.sniffer.probe(track.local_path)
            track.detected_format = probe.codec
            track.metadata = dict(probe.tags, duration=probe.duration)

            decoder = self.decoder_factory(track.local_path, probe.codec)
            with self._active_lock:
                self._active_decoder = decoder
            if self.state.stopping:
                return False

            track.status = TrackStatus.STREAMING
            logger.info(
                f"[PLAYOUT] Now playing: {track.locator} "
                f"(codec={probe.codec.value}, duration={probe.duration})"
            )
            self.publisher.publish_metadata(dict(track.describe(), event="track_started"))
            with self.channel.open_writer(track.locator) as writer:
                frames = decoder.decode(writer)
            track.status = TrackStatus.DONE
            logger.info(f"[PLAYOUT] Finished: {track.locator} ({frames} frames)")
            self.publisher.publish_status("track_finished", locator=track.locator, frames=frames)
            return True
        except DetectError as e:
            track.status = TrackStatus.FAILED
            if not self.state.stopping:
                self._record_failure("detect", track.locator, e)
            return False
        except DecodeError as e:
            track.status = TrackStatus.FAILED
            if not self.state.stopping:
                self._record_failure("decode", track.locator, e)
            return False
        finally:
            with self._active_lock:
                self._active_decoder = None
            self.state.streaming = None
            queue.clear_current()
            track.discard()

    # Helpers

    def _record_failure(self, stage: str, locator: Optional[str], error: Exception) -> None:
        count = self.state.failures.increment()
        logger.warning(
            f"[PLAYOUT] {stage} failed for {locator or '<no track>'}: {error} "
            f"(consecutive failures: {count}/{self.state.failures.ceiling})"
        )
        self.publisher.publish_status(
            "track_failed",
            stage=stage,
            locator=locator,
            error=str(error),
            consecutive_failures=count,
        )

    def _check_ceiling(self) -> None:
        failures = self.state.failures
        if failures.exhausted:
            raise FailureCeilingReached(
                f"{failures.count} consecutive playout failures (ceiling {failures.ceiling})"
            )

    def _check_health(self) -> None:
        if self.supervisor is not None:
            self.supervisor.check_services()

    def _fill_silence(self, seconds: float) -> None:
        if self.encoder is None:
            self._sleep(seconds)
            return
        remaining = seconds
        while remaining > 0 and not self.state.stopping:
            chunk = min(SILENCE_CHUNK_SEC, remaining)
            self.encoder.insert_silence(chunk)
            remaining -= chunk

    def _sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.state.stop_event.wait(seconds)
