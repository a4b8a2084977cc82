"""Tests for transcoder command generation and content type checks."""

from dataclasses import dataclass
from pathlib import Path

import pytest

from config import TranscodeConfig
from transcode_command import (
    MIME_TYPES,
    PLAYLIST_NAME,
    SEG_PREFIX,
    IngestType,
    build_transcode_cmd,
    is_mime_type_valid,
    session_output_dir,
)


@dataclass
class FakeSession:
    """Just the fields the command builder reads."""

    uid: int = 42
    ingest_type: IngestType | None = IngestType.TS


@pytest.fixture
def config(tmp_path: Path) -> TranscodeConfig:
    return TranscodeConfig(
        command="/usr/bin/ffmpeg",
        log_dir=tmp_path / "logs",
        output_dir=tmp_path / "videos",
        hls_segment_secs=4,
    )


# =============================================================================
# Content Type Tests
# =============================================================================


class TestIsMimeTypeValid:
    """Tests for is_mime_type_valid."""

    @pytest.mark.parametrize(
        "ingest_type,content_type",
        [
            (IngestType.TS, "video/mp2t"),
            (IngestType.TS, "VIDEO/MP2T"),
            (IngestType.AVC, "video/h264"),
            (IngestType.MP4, "video/mp4; codecs=avc1"),
            (IngestType.JPEG, "image/jpeg"),
            (IngestType.JPEG, " image/jpeg ;q=1"),
        ],
    )
    def test_accepted(self, ingest_type, content_type):
        assert is_mime_type_valid(ingest_type, content_type) is True

    @pytest.mark.parametrize(
        "ingest_type,content_type",
        [
            (IngestType.TS, "video/mp4"),
            (IngestType.JPEG, "video/mp2t"),
            (IngestType.AVC, "application/octet-stream"),
            (IngestType.MP4, ""),
            (IngestType.MP4, None),
        ],
    )
    def test_rejected(self, ingest_type, content_type):
        assert is_mime_type_valid(ingest_type, content_type) is False

    def test_no_ingest_type(self):
        assert is_mime_type_valid(None, "video/mp2t") is False

    def test_every_type_has_mime_types(self):
        assert set(MIME_TYPES) == set(IngestType)


# =============================================================================
# Command Tests
# =============================================================================


class TestBuildTranscodeCmd:
    """Tests for build_transcode_cmd."""

    def test_reads_stdin_writes_hls(self, config):
        cmd = build_transcode_cmd(FakeSession(), config)
        out = config.output_dir / "42"

        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert cmd[cmd.index("-hls_time") + 1] == "4"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == f"{out}/{SEG_PREFIX}%05d.ts"
        assert cmd[-1] == f"{out}/{PLAYLIST_NAME}"

    @pytest.mark.parametrize(
        "ingest_type,demuxer",
        [
            (IngestType.TS, "mpegts"),
            (IngestType.AVC, "h264"),
            (IngestType.MP4, "mp4"),
            (IngestType.JPEG, "image2pipe"),
        ],
    )
    def test_input_demuxer(self, config, ingest_type, demuxer):
        cmd = build_transcode_cmd(FakeSession(ingest_type=ingest_type), config)
        i_idx = cmd.index("-i")
        # Demuxer is the first -f, before the input
        assert cmd[cmd.index("-f") + 1] == demuxer
        assert cmd.index("-f") < i_idx

    @pytest.mark.parametrize("ingest_type", [IngestType.TS, IngestType.MP4])
    def test_container_streams_copied(self, config, ingest_type):
        cmd = build_transcode_cmd(FakeSession(ingest_type=ingest_type), config)
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert "libx264" not in cmd

    def test_avc_copies_video_without_audio(self, config):
        cmd = build_transcode_cmd(FakeSession(ingest_type=IngestType.AVC), config)
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-an" in cmd

    def test_jpeg_is_encoded(self, config):
        cmd = build_transcode_cmd(FakeSession(ingest_type=IngestType.JPEG), config)
        # First -c:v selects the mjpeg decoder, the second the encoder
        codecs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-c:v"]
        assert codecs == ["mjpeg", "libx264"]
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"

    def test_appends_to_existing_playlist(self, config):
        cmd = build_transcode_cmd(FakeSession(), config)
        assert "append_list" in cmd[cmd.index("-hls_flags") + 1]

    def test_pure(self, config):
        session = FakeSession()
        assert build_transcode_cmd(session, config) == build_transcode_cmd(session, config)
        assert session == FakeSession()

    def test_missing_ingest_type(self, config):
        with pytest.raises(ValueError):
            build_transcode_cmd(FakeSession(ingest_type=None), config)


class TestSessionOutputDir:
    """Tests for session_output_dir."""

    def test_keyed_by_uid(self, config):
        assert session_output_dir(7, config) == config.output_dir / "7"


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
