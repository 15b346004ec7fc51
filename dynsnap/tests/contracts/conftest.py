"""
Shared pytest fixtures for dynsnap contract tests.

Engine and queue tests use the test doubles from test_doubles.py. Tests of
the subprocess-facing helpers run tiny shell scripts standing in for rclone,
ffprobe and ffmpeg so no real media tools are needed.
"""

import os
import sqlite3
import stat
import threading

import pytest

from dynsnap.broadcast_core.playout_engine import PlayoutEngine
from dynsnap.supervisor.process_group import ProcessGroup
from dynsnap.tests.contracts.test_doubles import (
    FakeCatalog,
    FakeDecoderFactory,
    FakeEncoder,
    FakeFetcher,
    FakeSniffer,
    RecordingChannel,
    RecordingPublisher,
    create_canonical_pcm_frame,
)


@pytest.fixture
def canonical_pcm_frame():
    """Create a canonical PCM frame (1024 samples, 2 channels, 4096 bytes)."""
    return create_canonical_pcm_frame()


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return str(path)


@pytest.fixture
def make_catalog_db(tmp_path):
    """Factory writing a catalog database with the given locators (ids 1..N)."""

    def _make(locators, name="catalog.db", with_table=True):
        path = tmp_path / name
        conn = sqlite3.connect(str(path))
        try:
            if with_table:
                conn.execute("CREATE TABLE files (id INTEGER PRIMARY KEY, path TEXT NOT NULL, size INTEGER)")
                conn.executemany(
                    "INSERT INTO files (id, path, size) VALUES (?, ?, ?)",
                    [(i, locator, 1000 * i) for i, locator in enumerate(locators, start=1)],
                )
            conn.commit()
        finally:
            conn.close()
        return str(path)

    return _make


@pytest.fixture
def make_script(tmp_path):
    """Factory writing an executable /bin/sh script and returning its path."""

    def _make(name, body):
        path = tmp_path / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def process_group():
    group = ProcessGroup()
    yield group
    group.terminate_all(grace_sec=1.0)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_engine(scratch_dir, publisher):
    """
    Factory building a PlayoutEngine around fakes.

    Delays default to zero and silence windows are tiny so scenarios run fast.
    Any constructor argument can be overridden.
    """

    def _make(**overrides):
        kwargs = dict(
            catalog=FakeCatalog(["remote:a.mp3", "remote:b.ogg", "remote:c.flac"]),
            fetcher=FakeFetcher(),
            sniffer=FakeSniffer(),
            decoder_factory=FakeDecoderFactory(),
            channel=RecordingChannel(),
            scratch_dir=scratch_dir,
            encoder=FakeEncoder(),
            publisher=publisher,
            failure_ceiling=5,
            inter_cycle_delay_sec=0,
            silence_windows_sec=(0.01, 0.02, 0.03),
            startup_fetch_attempts=2,
            startup_retry_delay_sec=0,
        )
        kwargs.update(overrides)
        return PlayoutEngine(**kwargs)

    return _make


@pytest.fixture
def fifo_path(tmp_path):
    path = str(tmp_path / "pcm.fifo")
    os.mkfifo(path)
    return path


@pytest.fixture(autouse=False)  # Request explicitly in tests that start threads
def thread_leak_guard():
    """
    Detect non-daemon threads left running by a test.

    This ensures shutdown paths actually join what they start.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate() if not t.daemon)
    leaked = after - before
    if leaked:
        leaked_threads = [t for t in threading.enumerate() if t.ident in leaked]
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked_threads)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
