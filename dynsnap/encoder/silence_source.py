"""
Silence filler: zero-valued canonical PCM frames.
"""

import numpy as np

from dynsnap.constants import CHANNELS, FRAME_SIZE_SAMPLES, SAMPLE_RATE


class SilenceSource:
    """Returns the same precomputed silent frame on every call."""

    def __init__(self, frame_size: int = FRAME_SIZE_SAMPLES, channels: int = CHANNELS):
        self.frame_size = frame_size
        self.channels = channels
        self._frame = np.zeros(frame_size * channels, dtype=np.int16).tobytes()

    def next_frame(self) -> bytes:
        return self._frame

    def frames_for(self, seconds: float) -> int:
        """Number of whole frames covering at least `seconds` of audio."""
        if seconds <= 0:
            return 0
        frame_duration = self.frame_size / SAMPLE_RATE
        return max(1, int(np.ceil(seconds / frame_duration)))
