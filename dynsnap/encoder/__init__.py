"""
Encoder side of the pipeline: PCM channel, silence filler, transports and
the real-time publisher pump.
"""

from dynsnap.encoder.encoder_publisher import EncoderPublisher, EncoderState
from dynsnap.encoder.pcm_channel import ChannelBusy, ChannelClosed, PcmChannel, PcmWriter
from dynsnap.encoder.silence_source import SilenceSource
from dynsnap.encoder.transports import FifoTransport, StdinTransport, Transport

__all__ = [
    "ChannelBusy",
    "ChannelClosed",
    "EncoderPublisher",
    "EncoderState",
    "FifoTransport",
    "PcmChannel",
    "PcmWriter",
    "SilenceSource",
    "StdinTransport",
    "Transport",
]
