"""Transcoder command building and ingest content types."""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

import pathlib

from config import TranscodeConfig


# Session imports this module for the default builder; avoid the cycle at runtime
if TYPE_CHECKING:
    from transcode_session import TranscodeSession


class IngestType(StrEnum):
    """Wire format a producer streams into a session."""

    TS = "ts"  # MPEG transport stream
    AVC = "avc"  # raw H.264 Annex B elementary stream
    MP4 = "mp4"  # fragmented MP4
    JPEG = "jpeg"  # concatenated JPEG frames (MJPEG)


# Segment files are named seg00000.ts, seg00001.ts, etc.
SEG_PREFIX = "seg"
PLAYLIST_NAME = "index.m3u8"

# JPEG frames carry no timestamps, so the input rate is fixed
_JPEG_INPUT_FPS = 10
_KEYFRAME_INTERVAL_SEC = 2

MIME_TYPES: dict[IngestType, frozenset[str]] = {
    IngestType.TS: frozenset({"video/mp2t", "video/mpegts", "video/mpeg-ts"}),
    IngestType.AVC: frozenset({"video/h264", "video/avc"}),
    IngestType.MP4: frozenset({"video/mp4"}),
    IngestType.JPEG: frozenset({"image/jpeg", "image/jpg", "video/x-motion-jpeg"}),
}


def _media_type(content_type: str | None) -> str:
    """Strip parameters and normalize case: 'Video/MP2T; x=1' -> 'video/mp2t'."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_mime_type_valid(ingest_type: IngestType | None, content_type: str | None) -> bool:
    """Check that a request's content type is accepted for the ingest type."""
    if ingest_type is None:
        return False
    return _media_type(content_type) in MIME_TYPES.get(ingest_type, frozenset())


def session_output_dir(uid: int, config: TranscodeConfig) -> pathlib.Path:
    """HLS output directory for a session."""
    return config.output_dir / str(uid)


def _build_input_args(ingest_type: IngestType) -> list[str]:
    match ingest_type:
        case IngestType.TS:
            return ["-f", "mpegts", "-i", "pipe:0"]
        case IngestType.AVC:
            return ["-use_wallclock_as_timestamps", "1", "-f", "h264", "-i", "pipe:0"]
        case IngestType.MP4:
            return ["-f", "mp4", "-i", "pipe:0"]
        case IngestType.JPEG:
            return [
                "-f",
                "image2pipe",
                "-c:v",
                "mjpeg",
                "-framerate",
                str(_JPEG_INPUT_FPS),
                "-i",
                "pipe:0",
            ]
    raise ValueError(f"Unknown ingest type: {ingest_type!r}")


def _build_codec_args(ingest_type: IngestType) -> list[str]:
    # Compressed video streams pass through untouched; only MJPEG needs encoding
    if ingest_type is IngestType.JPEG:
        return [
            "-an",
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-tune",
            "zerolatency",
            "-pix_fmt",
            "yuv420p",
            "-g",
            str(_JPEG_INPUT_FPS * _KEYFRAME_INTERVAL_SEC),
        ]
    if ingest_type is IngestType.AVC:
        return ["-an", "-c:v", "copy"]
    return ["-map", "0:v:0", "-map", "0:a:0?", "-c", "copy"]


def build_transcode_cmd(session: TranscodeSession, config: TranscodeConfig) -> list[str]:
    """Build the transcoder argv for a session.

    Pure with respect to session state: only the session's uid and ingest
    type and the configuration are read. Input is the session pipe on stdin,
    output is a live HLS playlist in the session's output directory.
    """
    if session.ingest_type is None:
        raise ValueError(f"Session {session.uid} has no ingest type")
    output_dir = session_output_dir(session.uid, config)

    cmd = [
        config.command,
        "-hide_banner",
        "-loglevel",
        "warning",
        "-fflags",
        "+genpts+discardcorrupt",
    ]
    cmd.extend(_build_input_args(session.ingest_type))
    cmd.extend(_build_codec_args(session.ingest_type))
    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            f"{config.hls_segment_secs:g}",
            "-hls_list_size",
            "0",
            # Producers may restart a stream under the same uid
            "-hls_flags",
            "append_list+independent_segments",
            "-hls_segment_filename",
            f"{output_dir}/{SEG_PREFIX}%05d.ts",
            f"{output_dir}/{PLAYLIST_NAME}",
        ]
    )
    return cmd
