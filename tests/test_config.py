"""
Tests for session configuration loading.
"""

import json

import pytest

from smash_tracker.config import SessionConfig, load_config
from smash_tracker.errors import ConfigError


def write_config(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return str(path)


class TestLoadConfig:

    def test_defaults(self):
        config = load_config()
        assert config == SessionConfig()
        assert config.capture.mode == "video_device"
        assert config.machine.debounce_frames == 3
        assert config.csv_path == "battles.csv"
        assert config.remote_url is None

    def test_partial_file_keeps_other_defaults(self, tmp_path):
        path = write_config(tmp_path, {
            "capture": {"mode": "window", "window_title": "OBS"},
            "machine": {"debounce_frames": 5},
            "csv_path": "out.csv",
        })
        config = load_config(path)

        assert config.capture.mode == "window"
        assert config.capture.window_title == "OBS"
        assert config.machine.debounce_frames == 5
        assert config.machine.vote_min_run == 3
        assert config.csv_path == "out.csv"
        assert config.diagnostics.enabled

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.json"))

    @pytest.mark.parametrize("data", [
        {"machine": {"debounce_frames": 0}},
        {"machine": {"vote_majority": 0.4}},
        {"capture": {"mode": "scanner"}},
        {"capture": {"region": [0, 0, 0, 100]}},
        "{not json",
    ])
    def test_invalid_values(self, tmp_path, data):
        with pytest.raises(ConfigError):
            load_config(write_config(tmp_path, data))

    def test_device_name_or_index(self, tmp_path):
        assert load_config(write_config(tmp_path, {"capture": {"device": 2}})).capture.device == 2
        named = load_config(write_config(tmp_path, {"capture": {"device": "USB Video"}}))
        assert named.capture.device == "USB Video"
