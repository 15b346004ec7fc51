"""
Broadcast core: tracks, the two-slot queue, format detection, decoding and
the playout engine.
"""

from dynsnap.broadcast_core.ffmpeg_decoder import FFmpegDecoder
from dynsnap.broadcast_core.format_sniffer import CodecKind, FormatSniffer, ProbeResult
from dynsnap.broadcast_core.playout_queue import PlayoutQueue
from dynsnap.broadcast_core.track import Track, TrackStatus

__all__ = [
    "CodecKind",
    "FFmpegDecoder",
    "FormatSniffer",
    "PlayoutQueue",
    "ProbeResult",
    "Track",
    "TrackStatus",
]
