"""
Tests for the command line: option handling and a replay over saved frames.
"""

from datetime import datetime

import cv2
import pytest

from smash_tracker.cli import _apply_overrides, build_parser, main, print_record
from smash_tracker.config import SessionConfig
from smash_tracker.errors import ConfigError
from smash_tracker.record import BattleRecord, Rule
from smash_tracker.templates import SceneKind


def overrides(argv, config=None):
    return _apply_overrides(config or SessionConfig(), build_parser().parse_args(argv))


class TestOverrides:

    def test_window_implies_window_mode(self):
        config = overrides(["live", "--window", "OBS", "--window-class", "Qt5QWindowIcon"])
        assert config.capture.mode == "window"
        assert config.capture.window_title == "OBS"
        assert config.capture.window_class == "Qt5QWindowIcon"

    def test_explicit_mode_wins(self):
        config = overrides(["live", "--mode", "desktop", "--window", "OBS"])
        assert config.capture.mode == "desktop"

    def test_device_and_region(self):
        config = overrides(["live", "--device", "1"])
        assert config.capture.mode == "video_device"
        assert config.capture.device == "1"
        config = overrides(["live", "--region", "0", "0", "1280", "720"])
        assert config.capture.mode == "desktop"
        assert config.capture.region == (0, 0, 1280, 720)

    def test_replay_targets(self):
        config = overrides(["replay", "clip.mp4", "--csv", "out.csv", "--debounce", "5", "--no-diagnostics"])
        assert config.capture.mode == "video_file"
        assert config.capture.path == "clip.mp4"
        assert config.csv_path == "out.csv"
        assert config.machine.debounce_frames == 5
        assert not config.diagnostics.enabled

        assert overrides(["replay", "frames", "--frames"]).capture.mode == "image_folder"

    def test_remote_and_assets(self):
        config = overrides(["replay", "clip.mp4", "--remote", "http://stats.local", "-a", "bundle"])
        assert config.remote_url == "http://stats.local"
        assert config.assets_dir == "bundle"

    def test_untouched_config_is_kept(self):
        base = SessionConfig(csv_path="kept.csv")
        assert overrides(["live"], base).csv_path == "kept.csv"

    def test_invalid_override(self):
        with pytest.raises(ConfigError):
            overrides(["live", "--region", "0", "0", "0", "720"])

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:

    def test_missing_config_file(self, tmp_path, capsys):
        assert main(["-c", str(tmp_path / "absent.json"), "live"]) == 2
        assert "Config error" in capsys.readouterr().out

    def test_missing_assets(self, tmp_path, capsys):
        assert main(["replay", str(tmp_path), "--frames", "--assets", str(tmp_path / "none"),
                     "--no-diagnostics"]) == 1
        assert "Error" in capsys.readouterr().out

    def test_replay_frame_folder(self, tmp_path, bundle_dir, scene_frame, capsys):
        frames_dir = tmp_path / "frames"
        frames_dir.mkdir()
        scenes = [SceneKind.READY_TO_FIGHT] * 3 + [SceneKind.MATCHING] * 3
        for i, scene in enumerate(scenes):
            cv2.imwrite(str(frames_dir / f"frame_{i:03d}.png"), scene_frame(scene))
        csv_path = tmp_path / "battles.csv"

        code = main(["replay", str(frames_dir), "--frames", "--assets", str(bundle_dir),
                     "--csv", str(csv_path), "--no-diagnostics"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Frames processed: 6" in out
        # The match never got past matchmaking, so it is dropped at end of stream
        assert "Matches aborted: 1" in out
        assert not csv_path.exists()


class TestPrintRecord:

    def test_prints_players_and_unresolved(self, capsys):
        record = BattleRecord(datetime(2024, 5, 1, 20, 0))
        record.fix_player_count(2)
        record.rule_name = Rule.TIME
        record.max_time = 180
        record.set_slot('chara_list', 0, "MARIO")
        record.mark_unresolved('chara_list[1]')
        record.finalize()

        print_record(record, match_num=3)
        out = capsys.readouterr().out
        assert "Match 3 Results" in out
        assert "Rule: Time, Time limit: 180s, Players: 2" in out
        assert "P1: MARIO" in out
        assert "P2: N/A" in out
        assert "Unresolved: chara_list[1]" in out
