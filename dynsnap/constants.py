"""
Canonical PCM format shared by decoders, the PCM channel and the encoder.

These values are fixed for the whole pipeline and are not configurable.
"""

SAMPLE_RATE = 48000
CHANNELS = 2
BYTES_PER_SAMPLE = 2  # s16le
FRAME_SIZE_SAMPLES = 1024
FRAME_SIZE_BYTES = FRAME_SIZE_SAMPLES * CHANNELS * BYTES_PER_SAMPLE  # 4096 bytes
FRAME_DURATION_SEC = FRAME_SIZE_SAMPLES / SAMPLE_RATE  # ~21.333ms

PCM_FORMAT = "s16le"

# Loudness normalization (ffmpeg dynaudnorm) engine constants
DYNAUDNORM_FILTER = "dynaudnorm=f=500:g=31:p=0.95:m=8:r=0.22:s=25.0"
