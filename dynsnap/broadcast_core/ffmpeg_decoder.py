import collections
import logging
import subprocess
import threading
from typing import Callable, Iterator, List, Optional

import numpy as np

from dynsnap.broadcast_core.format_sniffer import CodecKind
from dynsnap.constants import (
    CHANNELS,
    DYNAUDNORM_FILTER,
    FRAME_SIZE_SAMPLES,
    PCM_FORMAT,
    SAMPLE_RATE,
    BYTES_PER_SAMPLE,
)
from dynsnap.errors import DecodeError
from dynsnap.supervisor.process_group import ProcessGroup

logger = logging.getLogger(__name__)

# Decoder forced per detected codec; UNKNOWN lets ffmpeg pick one
DECODER_BY_CODEC = {
    CodecKind.MP3: "mp3float",
    CodecKind.AAC: "aac",
    CodecKind.OPUS: "opus",
    CodecKind.VORBIS: "vorbis",
    CodecKind.FLAC: "flac",
}

STDERR_TAIL_LINES = 20


class FFmpegDecoder:
    """
    Decodes any supported audio file to canonical PCM using ffmpeg.
    - Outputs 16-bit signed little-endian stereo at 48 kHz
    - Yields numpy int16 frames of shape (1024, 2)
    - Optionally applies dynaudnorm loudness normalization

    The decoder has no timing responsibility. It produces frames as fast as
    its consumer accepts them; the bounded PCM channel supplies backpressure.
    """

    def __init__(
        self,
        path: str,
        codec: CodecKind = CodecKind.UNKNOWN,
        process_group: Optional[ProcessGroup] = None,
        ffmpeg_bin: str = "ffmpeg",
        normalize: bool = True,
        on_diagnostic: Optional[Callable[[str], None]] = None,
        frame_size: int = FRAME_SIZE_SAMPLES,
    ):
        """
        Initialize FFmpeg decoder.

        Args:
            path: Path to audio file
            codec: Codec detected by the format sniffer
            process_group: Process table the ffmpeg child is registered in
            ffmpeg_bin: ffmpeg executable
            normalize: Apply loudness normalization
            on_diagnostic: Called with every ffmpeg stderr line
            frame_size: Number of samples per frame (default: 1024)
        """
        self.path = path
        self.codec = codec
        self.process_group = process_group or ProcessGroup()
        self.ffmpeg_bin = ffmpeg_bin
        self.normalize = normalize
        self.on_diagnostic = on_diagnostic
        self.frame_size = frame_size
        self.proc: Optional[subprocess.Popen] = None
        self._stderr_tail = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None
        self._killed = False
        self._lock = threading.RLock()

    @property
    def bytes_per_frame(self) -> int:
        return self.frame_size * CHANNELS * BYTES_PER_SAMPLE

    def build_command(self, normalize: bool) -> List[str]:
        cmd = [self.ffmpeg_bin, "-hide_banner", "-nostats", "-loglevel", "warning", "-nostdin"]
        decoder = DECODER_BY_CODEC.get(self.codec)
        if decoder:
            cmd += ["-c:a", decoder]
        cmd += ["-i", self.path, "-map", "0:a:0", "-vn"]
        if normalize:
            cmd += ["-af", DYNAUDNORM_FILTER]
        cmd += [
            "-f", PCM_FORMAT,
            "-acodec", f"pcm_{PCM_FORMAT}",
            "-ac", str(CHANNELS),
            "-ar", str(SAMPLE_RATE),
            "-",
        ]
        return cmd

    def _start(self, normalize: bool) -> subprocess.Popen:
        with self._lock:
            if self._killed:
                raise DecodeError(f"Decoder for {self.path} was killed")
            self._stderr_tail.clear()
            self.proc = self.process_group.spawn(
                self.build_command(normalize),
                label="ffmpeg-decoder",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=self.bytes_per_frame * 4,  # hint
            )
            proc = self.proc
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            args=(proc,),
            name="DecoderStderrDrain",
            daemon=True,
        )
        self._stderr_thread.start()
        logger.info(f"[DECODER] Decoding {self.path} (codec={self.codec.value}, normalize={normalize})")
        return proc

    def _drain_stderr(self, proc: subprocess.Popen) -> None:
        try:
            for raw in iter(proc.stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                self._stderr_tail.append(line)
                logger.debug(f"[DECODER] ffmpeg: {line}")
                if self.on_diagnostic is not None:
                    try:
                        self.on_diagnostic(line)
                    except Exception as e:
                        logger.debug(f"[DECODER] Diagnostic callback failed: {e}")
        except (OSError, ValueError):
            # stderr closed underneath us during close()
            pass

    def read_frames(self, normalize: Optional[bool] = None) -> Iterator[np.ndarray]:
        """
        Generator yielding canonical PCM frames as numpy int16 arrays shaped (N, 2).

        Every frame is exactly frame_size samples; a trailing partial frame is
        zero-padded.

        Raises:
            DecodeError: If ffmpeg cannot be started or exits non-zero
        """
        normalize = self.normalize if normalize is None else normalize
        try:
            proc = self._start(normalize)
        except OSError as e:
            raise DecodeError(f"Cannot start {self.ffmpeg_bin}: {e}") from e

        bytes_per_frame = self.bytes_per_frame
        buffer = bytearray()

        try:
            while True:
                data = proc.stdout.read(bytes_per_frame * 2)
                if not data:
                    break
                buffer.extend(data)
                while len(buffer) >= bytes_per_frame:
                    frame_data = bytes(buffer[:bytes_per_frame])
                    del buffer[:bytes_per_frame]
                    yield np.frombuffer(frame_data, dtype=np.int16).reshape(-1, CHANNELS)

            if buffer:
                # Whole samples only, then pad to a full frame with silence
                usable = len(buffer) - (len(buffer) % (CHANNELS * BYTES_PER_SAMPLE))
                frame_data = bytes(buffer[:usable]).ljust(bytes_per_frame, b"\x00")
                yield np.frombuffer(frame_data, dtype=np.int16).reshape(-1, CHANNELS)

            returncode = proc.wait()
            if self._stderr_thread is not None:
                self._stderr_thread.join(timeout=1.0)
            if self._killed:
                raise DecodeError(f"Decoder for {self.path} was killed", returncode)
            if returncode != 0:
                detail = " | ".join(self._stderr_tail) or "no diagnostics"
                raise DecodeError(
                    f"ffmpeg exited with status {returncode} decoding {self.path}: {detail}",
                    returncode,
                )
        finally:
            # Always cleanup, even if generator is stopped early
            self.close()

    def decode(self, sink) -> int:
        """
        Decode the whole file into sink.write(frame_bytes).

        If normalization is enabled and ffmpeg fails before producing any
        audio, the file is decoded once more without the filter.

        Returns:
            Number of frames written

        Raises:
            DecodeError: If decoding fails
        """
        normalize = self.normalize
        while True:
            written = 0
            try:
                for frame in self.read_frames(normalize=normalize):
                    sink.write(frame.tobytes())
                    written += 1
            except DecodeError as e:
                e.frames_written = written
                if normalize and written == 0 and not self._killed:
                    logger.warning(f"[DECODER] Normalized decode failed, retrying without normalization: {e}")
                    normalize = False
                    continue
                raise
            logger.info(f"[DECODER] Finished {self.path} ({written} frames)")
            return written

    def kill(self, grace_period_seconds: float = 2.0) -> None:
        """
        Kill the ffmpeg process group (shutdown / stop path).

        Idempotent. Any read_frames() in progress ends with DecodeError.
        """
        with self._lock:
            self._killed = True
            proc = self.proc
        if proc is None or proc.poll() is not None:
            return
        logger.info(f"[DECODER] Killing ffmpeg (pid={proc.pid})")
        self.process_group.terminate(proc, grace_sec=grace_period_seconds)

    def close(self) -> None:
        """
        Clean up the ffmpeg process.

        Closes the pipes and terminates the process if still running.
        Safe to call multiple times.
        """
        with self._lock:
            proc = self.proc
            self.proc = None
        if proc is None:
            return

        if proc.poll() is None:
            self.process_group.terminate(proc, grace_sec=2.0)
        for stream in (proc.stdout, proc.stderr):
            if stream:
                try:
                    stream.close()
                except OSError:
                    pass
        self.process_group.release(proc)
