"""
Contract tests for the two-slot PlayoutQueue and Track bookkeeping.
"""

import os

import pytest

from dynsnap.broadcast_core.playout_queue import PlayoutQueue
from dynsnap.broadcast_core.track import Track, TrackStatus
from dynsnap.errors import NetworkFailure
from dynsnap.tests.contracts.test_doubles import FakeFetcher


@pytest.fixture
def fetcher():
    return FakeFetcher()


def prefetch(queue, fetcher, scratch_dir, locator="remote:next.mp3"):
    track = Track.for_locator(locator, scratch_dir)
    handle = fetcher.fetch_async(track.locator, track.local_path)
    queue.begin_prefetch(track, handle)
    return track, handle


class TestTrack:
    """Tests for Track."""

    def test_local_paths_are_unique_per_track(self, scratch_dir):
        a = Track.for_locator("remote:dir/song.mp3", scratch_dir)
        b = Track.for_locator("remote:dir/song.mp3", scratch_dir)
        assert a.local_path != b.local_path
        assert os.path.dirname(a.local_path) == scratch_dir
        assert a.local_path.endswith(".mp3")

    def test_odd_extensions_are_dropped(self, scratch_dir):
        track = Track.for_locator("remote:folder.with.dots/track", scratch_dir)
        assert "/" not in os.path.basename(track.local_path)
        assert os.path.splitext(track.local_path)[1] == ""

    def test_discard_removes_file_and_is_idempotent(self, scratch_dir):
        track = Track.for_locator("remote:a.mp3", scratch_dir)
        with open(track.local_path, "wb") as f:
            f.write(b"x")
        track.discard()
        track.discard()
        assert os.listdir(scratch_dir) == []


class TestPrefetch:
    """At most one background fetch is in flight."""

    def test_second_prefetch_is_refused(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        prefetch(queue, fetcher, scratch_dir)
        with pytest.raises(RuntimeError):
            prefetch(queue, fetcher, scratch_dir, locator="remote:other.mp3")

    def test_prefetch_marks_track_fetching(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        track, handle = prefetch(queue, fetcher, scratch_dir)
        assert track.status == TrackStatus.FETCHING
        assert queue.has_pending_fetch
        assert queue.pending is handle


class TestSettleAndPromote:
    """next is only promoted after its fetch was confirmed."""

    def test_promote_before_settle_is_refused(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        prefetch(queue, fetcher, scratch_dir)
        with pytest.raises(RuntimeError):
            queue.promote()

    def test_settle_then_promote(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        track, _ = prefetch(queue, fetcher, scratch_dir)
        assert queue.settle() is track
        assert track.status == TrackStatus.FETCHED
        assert queue.promote() is track
        assert queue.current is track
        assert queue.next is None
        assert not queue.has_pending_fetch

    def test_failed_fetch_clears_next_and_removes_file(self, scratch_dir):
        queue = PlayoutQueue()
        track, _ = prefetch(queue, FakeFetcher(script=["network"]), scratch_dir)
        with pytest.raises(NetworkFailure):
            queue.settle()
        assert queue.next is None
        assert not queue.has_pending_fetch
        assert track.status == TrackStatus.FAILED
        assert os.listdir(scratch_dir) == []

    def test_promote_refused_while_current_is_occupied(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        queue.set_current(Track.for_locator("remote:current.mp3", scratch_dir))
        prefetch(queue, fetcher, scratch_dir)
        queue.settle()
        with pytest.raises(RuntimeError):
            queue.promote()

    def test_set_current_refused_while_occupied(self, scratch_dir):
        queue = PlayoutQueue()
        queue.set_current(Track.for_locator("remote:a.mp3", scratch_dir))
        with pytest.raises(RuntimeError):
            queue.set_current(Track.for_locator("remote:b.mp3", scratch_dir))


class TestAbandon:
    """Tests for abandon_next() and clear()."""

    def test_abandon_cancels_fetch_and_removes_file(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        track, handle = prefetch(queue, fetcher, scratch_dir)
        queue.abandon_next()
        assert handle.cancelled
        assert queue.next is None
        assert not queue.has_pending_fetch
        assert os.listdir(scratch_dir) == []
        assert fetcher.outstanding == 0

    def test_clear_removes_both_slots(self, scratch_dir, fetcher):
        queue = PlayoutQueue()
        current = Track.for_locator("remote:current.mp3", scratch_dir)
        with open(current.local_path, "wb") as f:
            f.write(b"x")
        queue.set_current(current)
        prefetch(queue, fetcher, scratch_dir)

        queue.clear()

        assert queue.current is None
        assert queue.next is None
        assert os.listdir(scratch_dir) == []
