"""
Contract tests for ffprobe-based format detection.
"""

import json

import pytest

from dynsnap.broadcast_core.format_sniffer import CodecKind, FormatSniffer, parse_probe_output
from dynsnap.errors import DetectError


def probe_json(codec_name="mp3", stream_tags=None, format_tags=None, duration="201.5"):
    return json.dumps({
        "streams": [{
            "codec_type": "audio",
            "codec_name": codec_name,
            "sample_rate": "44100",
            "channels": 2,
            "tags": stream_tags or {},
        }],
        "format": {"duration": duration, "tags": format_tags or {}},
    })


class TestCodecKind:
    """Tests for CodecKind.from_codec_name()."""

    @pytest.mark.parametrize("name,kind", [
        ("mp3", CodecKind.MP3),
        ("mp3float", CodecKind.MP3),
        ("aac", CodecKind.AAC),
        ("opus", CodecKind.OPUS),
        ("vorbis", CodecKind.VORBIS),
        ("flac", CodecKind.FLAC),
        ("FLAC", CodecKind.FLAC),
        ("alac", CodecKind.UNKNOWN),
        ("", CodecKind.UNKNOWN),
        (None, CodecKind.UNKNOWN),
    ])
    def test_codec_mapping(self, name, kind):
        assert CodecKind.from_codec_name(name) == kind


class TestParseProbeOutput:
    """Tests for parse_probe_output()."""

    def test_reads_codec_and_stream_properties(self):
        result = parse_probe_output("/x.bin", probe_json("opus"))
        assert result.codec == CodecKind.OPUS
        assert result.codec_name == "opus"
        assert result.sample_rate == 44100
        assert result.channels == 2
        assert result.duration == pytest.approx(201.5)

    def test_codec_comes_from_stream_not_extension(self):
        # An Ogg/Vorbis file saved with a .mp3 name is still Vorbis
        result = parse_probe_output("/music/mislabelled.mp3", probe_json("vorbis"))
        assert result.codec == CodecKind.VORBIS

    def test_stream_tags_override_container_tags(self):
        result = parse_probe_output(
            "/x.opus",
            probe_json("opus", stream_tags={"TITLE": "Stream Title"},
                       format_tags={"title": "Container Title", "artist": "Someone", "encoder": "x"}),
        )
        assert result.tags == {"title": "Stream Title", "artist": "Someone"}

    def test_missing_duration_is_none(self):
        result = parse_probe_output("/x.mp3", probe_json(duration=None))
        assert result.duration is None

    def test_no_audio_stream(self):
        output = json.dumps({"streams": [{"codec_type": "video", "codec_name": "mjpeg"}], "format": {}})
        with pytest.raises(DetectError):
            parse_probe_output("/cover.jpg", output)

    def test_empty_streams(self):
        with pytest.raises(DetectError):
            parse_probe_output("/x", json.dumps({"streams": []}))

    def test_garbage_output(self):
        with pytest.raises(DetectError):
            parse_probe_output("/x", "Invalid data found when processing input")


class TestFormatSniffer:
    """Tests for FormatSniffer.probe() against a stand-in ffprobe."""

    def test_probe_parses_tool_output(self, make_script, process_group, tmp_path):
        (tmp_path / "probe.json").write_text(probe_json("flac", format_tags={"artist": "A"}))
        ffprobe = make_script("ffprobe", f'cat "{tmp_path / "probe.json"}"\n')
        sniffer = FormatSniffer(process_group, ffprobe_bin=ffprobe)

        result = sniffer.probe("/music/track.flac")

        assert result.codec == CodecKind.FLAC
        assert result.tags == {"artist": "A"}
        assert sniffer.detect("/music/track.flac") == CodecKind.FLAC
        assert len(process_group) == 0

    def test_probe_failure_raises_detect_error(self, make_script, process_group):
        ffprobe = make_script("ffprobe", 'echo "Invalid data found when processing input" >&2\nexit 1\n')
        sniffer = FormatSniffer(process_group, ffprobe_bin=ffprobe)
        with pytest.raises(DetectError) as exc_info:
            sniffer.probe("/music/broken.mp3")
        assert "Invalid data" in str(exc_info.value)

    def test_missing_binary_raises_detect_error(self, process_group):
        sniffer = FormatSniffer(process_group, ffprobe_bin="/nonexistent/ffprobe")
        with pytest.raises(DetectError):
            sniffer.probe("/music/track.mp3")

    def test_command_selects_first_audio_stream_as_json(self, process_group):
        cmd = FormatSniffer(process_group).build_command("/music/t.mp3")
        assert cmd[0] == "ffprobe"
        assert "a:0" in cmd
        assert cmd[-3:] == ["-of", "json", "/music/t.mp3"]
