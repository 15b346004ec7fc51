"""
Station: wires configuration, services and the playout engine together and
owns the process lifecycle (startup order, shutdown, cleanup).
"""

import logging
import os
import random
import shutil
import stat
import threading
from contextlib import ExitStack
from typing import List, Optional

from dynsnap.broadcast_core.ffmpeg_decoder import FFmpegDecoder
from dynsnap.broadcast_core.format_sniffer import CodecKind, FormatSniffer
from dynsnap.broadcast_core.playout_engine import PlayoutEngine
from dynsnap.config import DynsnapConfig
from dynsnap.encoder.encoder_publisher import EncoderPublisher
from dynsnap.encoder.pcm_channel import PcmChannel
from dynsnap.encoder.transports import FifoTransport, StdinTransport, Transport
from dynsnap.errors import ConfigError, DynsnapError, MissingDependency, ServiceStartupFailure
from dynsnap.fetch.rclone_fetcher import RcloneFetcher
from dynsnap.music_logic.track_catalog import TrackCatalog, download_catalog
from dynsnap.outputs.event_publisher import EventPublisher, create_publisher
from dynsnap.outputs.log_relay import attach_log_relay, detach_log_relay
from dynsnap.supervisor import services
from dynsnap.supervisor.process_group import ProcessGroup
from dynsnap.supervisor.process_supervisor import ProcessSupervisor, ServiceKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

EXTERNAL_SINK_RECONNECT_SEC = 0.5


def check_dependencies(binaries: List[str]) -> None:
    """
    Raises:
        MissingDependency: If any executable is not on PATH
    """
    missing = [b for b in binaries if shutil.which(b) is None]
    if missing:
        raise MissingDependency(f"Required executables not found on PATH: {', '.join(missing)}")


class Station:
    """
    One running dynsnap daemon.

    Collaborators default to the real implementations built from the config
    and can be replaced for testing.
    """

    def __init__(
        self,
        config: DynsnapConfig,
        process_group: Optional[ProcessGroup] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        publisher: Optional[EventPublisher] = None,
        catalog=None,
        fetcher=None,
        sniffer=None,
        decoder_factory=None,
        transport: Optional[Transport] = None,
        channel: Optional[PcmChannel] = None,
        rng: Optional[random.Random] = None,
        verify_dependencies: bool = True,
    ):
        self.config = config
        self.process_group = process_group or ProcessGroup()
        self.publisher = publisher or create_publisher(config.events_url, config.log_fifo)
        self.supervisor = supervisor or ProcessSupervisor(
            process_group=self.process_group,
            publisher=self.publisher,
            backoff_schedule_ms=config.service_backoff_ms,
            max_restarts=config.service_max_restarts,
            shutdown_grace_sec=config.shutdown_grace_sec,
        )
        self.catalog = catalog
        self.fetcher = fetcher or RcloneFetcher(
            self.process_group,
            rclone_bin=config.rclone_bin,
            config_path=config.rclone_config,
            timeout_sec=config.fetch_timeout_sec,
        )
        self.sniffer = sniffer or FormatSniffer(self.process_group, ffprobe_bin=config.ffprobe_bin)
        self.decoder_factory = decoder_factory or self._make_decoder
        self.transport = transport
        self.channel = channel or PcmChannel()
        self.rng = rng
        self.verify_dependencies = verify_dependencies
        self.engine: Optional[PlayoutEngine] = None
        self.encoder: Optional[EncoderPublisher] = None
        self._created_paths: List[str] = []
        self._stop_requested = threading.Event()
        self._stop_reason: Optional[str] = None
        self._finished = threading.Event()

    def run(self) -> int:
        """
        Start everything, run playout until stopped, clean up.

        Returns:
            Process exit status: 0 after a requested stop, non-zero after a fatal error
        """
        status = EXIT_OK
        with ExitStack() as stack:
            stack.callback(self._cleanup_filesystem)
            try:
                if self.verify_dependencies:
                    check_dependencies(self.config.required_binaries)
                self._prepare_filesystem()

                stack.callback(self.publisher.close)
                relay = attach_log_relay(self.publisher)
                stack.callback(detach_log_relay, relay)

                stack.enter_context(self.supervisor)
                self._start_auxiliary_services()
                catalog = self._open_catalog()
                self._start_sink()

                self.encoder = self._build_encoder()
                self.supervisor.add_restart_listener(self.encoder.on_service_restarted)
                self.encoder.start()
                stack.callback(self.encoder.stop)

                self.engine = self._build_engine(catalog)
                watcher = threading.Thread(target=self._watch_stop_requests, name="StopWatcher", daemon=True)
                watcher.start()
                stack.callback(self._release_watcher, watcher)
                if not self._stop_requested.is_set():
                    self.publisher.publish_status("started")
                    self.engine.run()
                logger.info("[STATION] Playout stopped, shutting down")
            except ConfigError as e:
                logger.critical(f"[STATION] FATAL configuration error: {e}")
                status = EXIT_CONFIG
            except DynsnapError as e:
                logger.critical(f"[STATION] FATAL: {e}")
                self.publisher.publish_status("fatal", error=str(e), error_type=type(e).__name__)
                status = EXIT_FATAL
            except OSError as e:
                logger.critical(f"[STATION] FATAL filesystem error: {e}")
                status = EXIT_FATAL
        logger.info(f"[STATION] Exiting with status {status}")
        return status

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self, reason: Optional[str] = None) -> None:
        """
        Flag shutdown without doing any work. Safe to call from a signal handler.

        Logging and stopping the engine happen on the stop watcher thread; a
        signal handler must not log because the log relay takes publisher locks
        the interrupted code may already hold.
        """
        if self._stop_requested.is_set():
            return
        self._stop_reason = reason
        self._stop_requested.set()

    def stop(self) -> None:
        """Request shutdown and stop the engine from the calling thread. Idempotent."""
        self.request_stop()
        if self.engine is not None:
            self.engine.stop()

    def _watch_stop_requests(self) -> None:
        self._stop_requested.wait()
        if self._finished.is_set():
            return
        reason = f" ({self._stop_reason})" if self._stop_reason else ""
        logger.info(f"[STATION] Shutdown requested{reason}")
        if self.engine is not None:
            self.engine.stop()

    def _release_watcher(self, watcher: threading.Thread) -> None:
        self._finished.set()
        self._stop_requested.set()
        watcher.join(timeout=2.0)

    # Startup steps

    def _prepare_filesystem(self) -> None:
        scratch = self.config.scratch_dir
        os.makedirs(scratch, exist_ok=True)
        for entry in os.listdir(scratch):
            path = os.path.join(scratch, entry)
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path, ignore_errors=True)
            else:
                os.remove(path)
        logger.info(f"[STATION] Scratch directory ready: {scratch}")

        fifos = []
        if self.config.log_fifo:
            fifos.append(self.config.log_fifo)
        if self.config.sink_mode == "fifo":
            fifos.append(self.config.pcm_fifo)
        for path in fifos:
            self._make_fifo(path)

    def _make_fifo(self, path: str) -> None:
        if os.path.exists(path):
            if not stat.S_ISFIFO(os.stat(path).st_mode):
                raise ConfigError(f"{path} exists and is not a named pipe")
        else:
            os.mkfifo(path, 0o600)
            logger.info(f"[STATION] Created named pipe {path}")
        self._created_paths.append(path)

    def _cleanup_filesystem(self) -> None:
        for path in self._created_paths:
            try:
                os.remove(path)
                logger.info(f"[STATION] Removed named pipe {path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"[STATION] Could not remove {path}: {e}")
        self._created_paths = []
        scratch = self.config.scratch_dir
        if os.path.isdir(scratch):
            for entry in os.listdir(scratch):
                path = os.path.join(scratch, entry)
                if os.path.isfile(path):
                    try:
                        os.remove(path)
                    except OSError as e:
                        logger.warning(f"[STATION] Could not remove {path}: {e}")

    def _start_auxiliary_services(self) -> None:
        specs = []
        if self.config.control_channel_enabled:
            specs.append(services.control_channel_service(self.config))
        watchdog = services.watchdog_service(self.config)
        if watchdog is not None:
            specs.append(watchdog)
        for spec in specs:
            try:
                self.supervisor.start(spec)
            except ServiceStartupFailure as e:
                logger.warning(f"[STATION] Continuing without {spec.name}: {e}")

    def _open_catalog(self):
        if self.catalog is not None:
            return self.catalog
        if self.config.catalog_url:
            download_catalog(
                self.config.catalog_url,
                self.config.catalog_path,
                retries=self.config.catalog_download_retries,
                retry_delay_sec=self.config.catalog_retry_delay_sec,
            )
        catalog = TrackCatalog(self.config.catalog_path)
        logger.info(f"[STATION] Catalog {self.config.catalog_path} has {catalog.count()} entries")
        return catalog

    def _start_sink(self) -> None:
        spec = services.sink_service(self.config)
        if spec is None:
            logger.info(f"[STATION] Using external {self.config.sink_mode} sink")
            return
        self.supervisor.start(spec)

    def _sink_alive(self) -> bool:
        handle = self.supervisor.service(ServiceKind.SINK)
        return handle is None or self.supervisor.is_healthy(handle)

    def _build_encoder(self) -> EncoderPublisher:
        transport = self.transport
        reconnect_interval = None
        if self.config.sink_mode == "fifo" and services.sink_service(self.config) is None:
            # Nobody restarts an external reader; the pump reopens the pipe itself
            reconnect_interval = EXTERNAL_SINK_RECONNECT_SEC
        if transport is None:
            if self.config.sink_mode == "fifo":
                transport = FifoTransport(
                    self.config.pcm_fifo,
                    reader_alive=self._sink_alive,
                    retries=self.config.fifo_open_retries,
                    retry_delay_sec=self.config.fifo_open_retry_delay_sec,
                )
            else:
                transport = StdinTransport(self.supervisor, services.encoder_service(self.config))
        return EncoderPublisher(self.channel, transport, reconnect_interval_sec=reconnect_interval)

    def _build_engine(self, catalog) -> PlayoutEngine:
        return PlayoutEngine(
            catalog=catalog,
            fetcher=self.fetcher,
            sniffer=self.sniffer,
            decoder_factory=self.decoder_factory,
            channel=self.channel,
            scratch_dir=self.config.scratch_dir,
            encoder=self.encoder,
            supervisor=self.supervisor,
            publisher=self.publisher,
            failure_ceiling=self.config.max_consecutive_failures,
            inter_cycle_delay_sec=self.config.inter_cycle_delay_sec,
            silence_windows_sec=self.config.silence_windows_sec,
            startup_fetch_attempts=self.config.startup_fetch_attempts,
            startup_retry_delay_sec=self.config.startup_retry_delay_sec,
            rng=self.rng,
        )

    def _make_decoder(self, path: str, codec: CodecKind) -> FFmpegDecoder:
        return FFmpegDecoder(
            path,
            codec,
            process_group=self.process_group,
            ffmpeg_bin=self.config.ffmpeg_bin,
            normalize=self.config.normalize,
            on_diagnostic=lambda line: self.publisher.publish_log(line, source="ffmpeg-decoder"),
        )
