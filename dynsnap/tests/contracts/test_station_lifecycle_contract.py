"""
Contract tests for Station startup, shutdown and exit status.

The station runs with a real ProcessSupervisor and EncoderPublisher, but
with fake catalog/fetcher/sniffer/decoder and an in-memory transport, so no
external programs are started.
"""

import logging
import os
import signal
import stat
import threading
import time

import pytest

from dynsnap.app.radio import install_signal_handlers
from dynsnap.app.station import EXIT_CONFIG, EXIT_FATAL, EXIT_OK, EXTERNAL_SINK_RECONNECT_SEC, Station
from dynsnap.config import DynsnapConfig
from dynsnap.encoder.encoder_publisher import EncoderState
from dynsnap.outputs.event_publisher import FifoEventPublisher
from dynsnap.outputs.log_relay import attach_log_relay, detach_log_relay
from dynsnap.supervisor import services
from dynsnap.tests.contracts.test_doubles import (
    FakeCatalog,
    FakeDecoderFactory,
    FakeFetcher,
    FakeSniffer,
    FakeTransport,
    RecordingPublisher,
    scratch_files,
)


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def station_config(tmp_path):
    return DynsnapConfig(
        catalog_path=str(tmp_path / "catalog.db"),
        scratch_dir=str(tmp_path / "scratch"),
        sink_mode="fifo",
        pcm_fifo=str(tmp_path / "snapfifo"),
        log_fifo=str(tmp_path / "log.fifo"),
        inter_cycle_delay_sec=0,
        silence_windows_sec=[0.02, 0.04],
        startup_retry_delay_sec=0,
        max_consecutive_failures=2,
        shutdown_grace_sec=1.0,
    )


@pytest.fixture
def make_station(station_config):
    def _make(config=None, **overrides):
        kwargs = dict(
            publisher=RecordingPublisher(),
            catalog=FakeCatalog(["remote:a.mp3", "remote:b.flac"]),
            fetcher=FakeFetcher(),
            sniffer=FakeSniffer(),
            decoder_factory=FakeDecoderFactory(),
            transport=FakeTransport(),
            verify_dependencies=False,
        )
        kwargs.update(overrides)
        return Station(config or station_config, **kwargs)

    return _make


class TestCleanStop:
    """A requested stop exits 0 and leaves nothing behind."""

    def test_stop_after_tracks_exits_ok(self, make_station, station_config):
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory)
        factory.on_decode = lambda count: station.stop() if count >= 2 else None

        status = station.run()

        assert status == EXIT_OK
        assert station.engine.state.tracks_streamed == 2
        assert station.publisher.statuses("started")
        assert station.publisher.statuses("fatal") == []
        assert station.publisher.closed

    def test_named_pipes_are_created_and_removed(self, make_station, station_config):
        seen = []
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory)

        def on_decode(count):
            for path in (station_config.pcm_fifo, station_config.log_fifo):
                seen.append(stat.S_ISFIFO(os.stat(path).st_mode))
            station.stop()

        factory.on_decode = on_decode

        assert station.run() == EXIT_OK
        assert seen and all(seen), "Both named pipes exist while playing"
        assert not os.path.exists(station_config.pcm_fifo)
        assert not os.path.exists(station_config.log_fifo)

    def test_stale_scratch_files_are_cleared(self, make_station, station_config):
        os.makedirs(station_config.scratch_dir)
        stale = os.path.join(station_config.scratch_dir, "leftover.mp3.partial")
        with open(stale, "wb") as f:
            f.write(b"old")
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory)
        factory.on_decode = lambda count: station.stop()

        assert station.run() == EXIT_OK
        assert scratch_files(station_config.scratch_dir) == []

    def test_encoder_is_started_and_stopped(self, make_station):
        transport = FakeTransport()
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory, transport=transport)
        factory.on_decode = lambda count: station.stop()

        station.run()

        assert transport.opens == 1
        assert transport.closes == 1
        assert station.encoder.state == EncoderState.STOPPED

    def test_stop_before_run(self, make_station):
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory)
        station.stop()
        station.stop()

        assert station.run() == EXIT_OK
        assert factory.decode_calls == 0
        assert station.publisher.statuses("started") == []


class TestFatalErrors:
    """Fatal conditions exit non-zero after cleaning up."""

    def test_startup_fetch_failure(self, make_station, station_config):
        station = make_station(fetcher=FakeFetcher(default="network"))

        status = station.run()

        assert status == EXIT_FATAL
        fatal = station.publisher.statuses("fatal")
        assert len(fatal) == 1
        assert fatal[0]["error_type"] == "StartupFetchFailed"
        assert station.publisher.closed
        assert not os.path.exists(station_config.pcm_fifo)
        assert not os.path.exists(station_config.log_fifo)

    def test_failure_ceiling(self, make_station, station_config):
        station = make_station(fetcher=FakeFetcher(script=["ok"], default="network"))

        status = station.run()

        assert status == EXIT_FATAL
        assert station.publisher.statuses("fatal")[0]["error_type"] == "FailureCeilingReached"
        assert station.engine.state.tracks_streamed == 1
        assert scratch_files(station_config.scratch_dir) == []

    def test_existing_non_fifo_path_is_a_config_error(self, make_station, station_config):
        with open(station_config.log_fifo, "w") as f:
            f.write("not a pipe")
        station = make_station()

        assert station.run() == EXIT_CONFIG
        assert os.path.isfile(station_config.log_fifo), "Files dynsnap did not create are left alone"

    def test_missing_dependencies(self, make_station, station_config):
        station_config.ffmpeg_bin = "dynsnap-no-such-ffmpeg"
        station = make_station(verify_dependencies=True)

        assert station.run() == EXIT_CONFIG
        assert not os.path.exists(station_config.scratch_dir), "Nothing is prepared before the dependency check"


class TestSignalShutdown:
    """SIGINT/SIGTERM only flag the shutdown; the stop watcher does the work."""

    @pytest.fixture
    def saved_signal_handlers(self):
        saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        yield
        for sig, handler in saved.items():
            signal.signal(sig, handler)

    def test_signal_while_event_publisher_is_writing(self, make_station, tmp_path, saved_signal_handlers):
        path = str(tmp_path / "events.fifo")
        os.mkfifo(path)
        reader = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
        publisher = FifoEventPublisher(path)
        station = make_station(publisher=publisher)
        relay = attach_log_relay(publisher)
        dynsnap_logger = logging.getLogger("dynsnap")
        previous_level = dynsnap_logger.level
        dynsnap_logger.setLevel(logging.INFO)
        install_signal_handlers(station)
        try:
            # The handler runs on this thread while it holds the publisher lock
            with publisher._lock:
                os.kill(os.getpid(), signal.SIGTERM)
                time.sleep(0.05)
            assert station.stop_requested
        finally:
            dynsnap_logger.setLevel(previous_level)
            detach_log_relay(relay)
            publisher.close()
            os.close(reader)

    def test_requested_stop_ends_playout(self, make_station, caplog):
        caplog.set_level(logging.INFO, logger="dynsnap")
        factory = FakeDecoderFactory(block=True)
        station = make_station(decoder_factory=factory)
        result = []
        thread = threading.Thread(target=lambda: result.append(station.run()), daemon=True)
        thread.start()
        assert wait_for(lambda: factory.decoders and factory.decoders[0].started.is_set())

        station.request_stop("received SIGTERM")
        thread.join(timeout=5.0)

        assert not thread.is_alive()
        assert result == [EXIT_OK]
        assert factory.decoders[0].killed.is_set()
        assert "Shutdown requested (received SIGTERM)" in caplog.text
        assert station.publisher.statuses("track_failed") == []


class TestExternalSink:
    """Encoder wiring for sinks dynsnap does not supervise."""

    def test_external_fifo_reader_gets_self_reconnect(self, make_station):
        factory = FakeDecoderFactory()
        station = make_station(decoder_factory=factory)
        factory.on_decode = lambda count: station.stop()

        assert station.run() == EXIT_OK
        assert station.encoder.reconnect_interval_sec == EXTERNAL_SINK_RECONNECT_SEC

    def test_local_fifo_reader_is_left_to_the_supervisor(self, make_station, monkeypatch):
        monkeypatch.setattr(services, "sink_service", lambda config: object())
        station = make_station()
        assert station._build_encoder().reconnect_interval_sec is None
