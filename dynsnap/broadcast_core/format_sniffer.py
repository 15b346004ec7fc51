"""
Audio format detection with ffprobe.

The codec is read from the first audio stream's metadata, never from the file
extension, so a mislabelled file still gets the right decoder.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from dynsnap.errors import DetectError
from dynsnap.supervisor.process_group import ProcessGroup

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SEC = 15.0
METADATA_TAGS = ("title", "artist", "album")


class CodecKind(Enum):
    MP3 = "mp3"
    AAC = "aac"
    OPUS = "opus"
    VORBIS = "vorbis"
    FLAC = "flac"
    UNKNOWN = "unknown"

    @classmethod
    def from_codec_name(cls, codec_name: Optional[str]) -> "CodecKind":
        if not codec_name:
            return cls.UNKNOWN
        name = codec_name.lower()
        if name in ("mp3", "mp3float"):
            return cls.MP3
        for kind in cls:
            if kind.value == name:
                return kind
        return cls.UNKNOWN


@dataclass
class ProbeResult:
    codec: CodecKind
    codec_name: str
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    duration: Optional[float] = None
    tags: Dict[str, str] = field(default_factory=dict)


def parse_probe_output(path: str, output: str) -> ProbeResult:
    """
    Build a ProbeResult from ffprobe's JSON output.

    Raises:
        DetectError: If the output is not JSON or has no audio stream
    """
    try:
        data = json.loads(output)
    except ValueError as e:
        raise DetectError(f"Unreadable ffprobe output for {path}: {e}") from e

    streams = [s for s in data.get("streams", []) if s.get("codec_type", "audio") == "audio"]
    if not streams:
        raise DetectError(f"No audio stream found in {path}")
    stream = streams[0]
    format_info = data.get("format", {})

    # Container tags first, stream tags (Ogg/Opus comments) win
    tags: Dict[str, str] = {}
    for source in (format_info.get("tags", {}), stream.get("tags", {})):
        for key, value in source.items():
            if key.lower() in METADATA_TAGS:
                tags[key.lower()] = value

    duration = stream.get("duration") or format_info.get("duration")
    codec_name = stream.get("codec_name", "")
    return ProbeResult(
        codec=CodecKind.from_codec_name(codec_name),
        codec_name=codec_name,
        sample_rate=_to_int(stream.get("sample_rate")),
        channels=_to_int(stream.get("channels")),
        duration=_to_float(duration),
        tags=tags,
    )


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class FormatSniffer:
    """Classifies local audio files by codec using ffprobe."""

    def __init__(self, process_group: ProcessGroup, ffprobe_bin: str = "ffprobe",
                 timeout_sec: float = PROBE_TIMEOUT_SEC):
        self.process_group = process_group
        self.ffprobe_bin = ffprobe_bin
        self.timeout_sec = timeout_sec

    def build_command(self, path: str):
        return [
            self.ffprobe_bin,
            "-v", "error",
            "-select_streams", "a:0",
            "-show_entries",
            "stream=codec_type,codec_name,sample_rate,channels,duration:stream_tags:"
            "format=duration:format_tags",
            "-of", "json",
            path,
        ]

    def probe(self, path: str) -> ProbeResult:
        """
        Probe the first audio stream of path.

        Raises:
            DetectError: If the file cannot be read or has no audio stream
        """
        try:
            proc = self.process_group.spawn(
                self.build_command(path),
                label="ffprobe",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise DetectError(f"Cannot start {self.ffprobe_bin}: {e}") from e

        try:
            try:
                stdout, stderr = proc.communicate(timeout=self.timeout_sec)
            except subprocess.TimeoutExpired:
                self.process_group.terminate(proc, grace_sec=1.0)
                proc.communicate()
                raise DetectError(f"ffprobe timed out after {self.timeout_sec}s on {path}")
        finally:
            self.process_group.release(proc)

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise DetectError(f"ffprobe failed on {path} (exit={proc.returncode}): {detail}")

        result = parse_probe_output(path, stdout.decode("utf-8", errors="replace"))
        logger.info(
            f"[SNIFFER] {path}: codec={result.codec_name} ({result.codec.value}), "
            f"rate={result.sample_rate}, channels={result.channels}, duration={result.duration}"
        )
        return result

    def detect(self, path: str) -> CodecKind:
        return self.probe(path).codec
