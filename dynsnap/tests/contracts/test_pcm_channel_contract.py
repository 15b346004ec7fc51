"""
Contract tests for PcmChannel.

Covers the single-writer lease, frame validation, FIFO order, backpressure
and close semantics.
"""

import threading
import time

import pytest

from dynsnap.encoder.pcm_channel import ChannelBusy, ChannelClosed, PcmChannel
from dynsnap.tests.contracts.test_doubles import CANONICAL_FRAME_BYTES


def frame(marker: int) -> bytes:
    return bytes([marker]) * CANONICAL_FRAME_BYTES


class TestWriterLease:
    """At most one writer may hold the channel."""

    def test_second_writer_is_refused(self):
        channel = PcmChannel(capacity=4)
        with channel.open_writer("track-a"):
            with pytest.raises(ChannelBusy) as exc_info:
                channel.open_writer("track-b")
        assert "track-a" in str(exc_info.value)

    def test_lease_is_released_on_exit(self):
        channel = PcmChannel(capacity=4)
        with channel.open_writer("track-a") as writer:
            writer.write(frame(1))
        with channel.open_writer("track-b") as writer:
            writer.write(frame(2))
        assert len(channel) == 2

    def test_released_writer_cannot_write(self):
        channel = PcmChannel(capacity=4)
        writer = channel.open_writer("track-a")
        writer.release()
        with pytest.raises(RuntimeError):
            writer.write(frame(1))

    def test_stats_report_current_writer(self):
        channel = PcmChannel(capacity=4)
        with channel.open_writer("silence") as writer:
            writer.write(frame(0))
            stats = channel.get_stats()
            assert stats.writer == "silence"
            assert stats.count == 1
            assert stats.total_written == 1
        assert channel.get_stats().writer is None


class TestFrames:
    """Frame validation and ordering."""

    def test_rejects_non_canonical_frame(self):
        channel = PcmChannel(capacity=4)
        with channel.open_writer("track") as writer:
            with pytest.raises(ValueError):
                writer.write(b"\x00" * 4608)
        assert len(channel) == 0

    def test_frames_are_read_in_write_order(self):
        channel = PcmChannel(capacity=8)
        with channel.open_writer("track") as writer:
            for marker in range(5):
                writer.write(frame(marker))
        assert [channel.read_frame()[0] for _ in range(5)] == [0, 1, 2, 3, 4]
        assert channel.read_frame() is None

    def test_read_waits_for_frame_with_timeout(self):
        channel = PcmChannel(capacity=4)

        def delayed_write():
            time.sleep(0.1)
            with channel.open_writer("late") as writer:
                writer.write(frame(9))

        threading.Thread(target=delayed_write, daemon=True).start()
        assert channel.read_frame(timeout=2.0) == frame(9)

    def test_read_timeout_returns_none(self):
        channel = PcmChannel(capacity=4)
        start = time.monotonic()
        assert channel.read_frame(timeout=0.1) is None
        assert time.monotonic() - start >= 0.09

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            PcmChannel(capacity=0)


class TestBackpressure:
    """A full channel blocks the writer instead of dropping audio."""

    def test_write_times_out_when_full(self):
        channel = PcmChannel(capacity=2)
        with channel.open_writer("track") as writer:
            writer.write(frame(1))
            writer.write(frame(2))
            with pytest.raises(TimeoutError):
                writer.write(frame(3), timeout=0.1)
        assert len(channel) == 2, "Existing frames must never be dropped"

    def test_blocked_writer_resumes_when_reader_drains(self):
        channel = PcmChannel(capacity=1)
        done = threading.Event()

        def writer_thread():
            with channel.open_writer("track") as writer:
                writer.write(frame(1))
                writer.write(frame(2))  # blocks until frame 1 is read
            done.set()

        threading.Thread(target=writer_thread, daemon=True).start()
        time.sleep(0.1)
        assert not done.is_set()
        assert channel.read_frame()[0] == 1
        assert done.wait(2.0)
        assert channel.read_frame()[0] == 2

    def test_close_wakes_blocked_writer(self):
        channel = PcmChannel(capacity=1)
        errors = []

        def writer_thread():
            with channel.open_writer("track") as writer:
                writer.write(frame(1))
                try:
                    writer.write(frame(2))
                except ChannelClosed as e:
                    errors.append(e)

        thread = threading.Thread(target=writer_thread, daemon=True)
        thread.start()
        time.sleep(0.1)
        channel.close()
        thread.join(timeout=2.0)
        assert not thread.is_alive()
        assert len(errors) == 1

    def test_closed_channel_refuses_writers(self):
        channel = PcmChannel(capacity=1)
        channel.close()
        with pytest.raises(ChannelClosed):
            channel.open_writer("track")

    def test_clear_unblocks_writer(self):
        channel = PcmChannel(capacity=1)
        with channel.open_writer("track") as writer:
            writer.write(frame(1))
            assert channel.clear() == 1
            writer.write(frame(2), timeout=0.5)
        assert len(channel) == 1
