"""Tests for configuration loading."""

from pathlib import Path

import json

import pytest

from config import CONFIG_ENV_VAR, TranscodeConfig, load_config


def _write(path: Path, settings: object) -> Path:
    path.write_text(json.dumps(settings))
    return path


class TestTranscodeConfig:
    """Tests for TranscodeConfig validation."""

    def test_defaults(self):
        config = TranscodeConfig()
        assert config.command == "ffmpeg"
        assert config.session_timeout == 30.0
        assert config.hls_segment_secs == 2.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"session_timeout": 0},
            {"session_timeout": -5},
            {"hls_segment_secs": 0},
            {"status_retention": -1},
            {"command": ""},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            TranscodeConfig(**kwargs)

    def test_frozen(self):
        config = TranscodeConfig()
        with pytest.raises(AttributeError):
            config.session_timeout = 5  # type: ignore[misc]


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(tmp_path / "missing.json") == TranscodeConfig()

    def test_reads_sections(self, tmp_path):
        path = _write(
            tmp_path / "videoserver.json",
            {
                "server": {"session_timeout": 12, "status_retention": 60},
                "transcode": {
                    "command": "/opt/ffmpeg/bin/ffmpeg",
                    "log_file_path": "/var/log/transcode",
                    "output_path": "/srv/videos",
                    "hls_segment_secs": 6,
                },
            },
        )

        config = load_config(path)

        assert config.command == "/opt/ffmpeg/bin/ffmpeg"
        assert config.session_timeout == 12.0
        assert config.status_retention == 60.0
        assert config.log_dir == Path("/var/log/transcode")
        assert config.output_dir == Path("/srv/videos")
        assert config.hls_segment_secs == 6.0

    def test_relative_paths_resolved_against_file(self, tmp_path):
        path = _write(tmp_path / "conf.json", {"transcode": {"log_file_path": "logs"}})

        assert load_config(path).log_dir == tmp_path / "logs"

    def test_partial_file_keeps_defaults(self, tmp_path):
        path = _write(tmp_path / "conf.json", {"server": {"session_timeout": 5}})

        config = load_config(path)

        assert config.session_timeout == 5.0
        assert config.command == "ffmpeg"

    def test_env_override(self, tmp_path, monkeypatch):
        path = _write(tmp_path / "env.json", {"transcode": {"command": "avconv"}})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        assert load_config().command == "avconv"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        with pytest.raises(ValueError, match="Invalid config"):
            load_config(path)

    def test_invalid_timeout(self, tmp_path):
        path = _write(tmp_path / "conf.json", {"server": {"session_timeout": 0}})

        with pytest.raises(ValueError):
            load_config(path)

    def test_section_must_be_object(self, tmp_path):
        path = _write(tmp_path / "conf.json", {"server": [1, 2]})

        with pytest.raises(ValueError):
            load_config(path)

    def test_top_level_must_be_object(self, tmp_path):
        path = _write(tmp_path / "conf.json", [1, 2])

        with pytest.raises(ValueError):
            load_config(path)


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
