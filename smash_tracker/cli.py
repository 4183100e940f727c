"""
smash-tracker command line.

    smash-tracker live --window "OBS" --assets assets
    smash-tracker replay recording.mp4 --csv battles.csv
"""

import argparse
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from smash_tracker.capture import ImageFolderSource, VideoFileSource, open_source
from smash_tracker.config import SessionConfig, load_config
from smash_tracker.diagnostics import DirectoryDiagnosticSink, NoSceneWatchdog
from smash_tracker.errors import CaptureError, ConfigError, SmashTrackerError
from smash_tracker.extract import FieldExtractor
from smash_tracker.live import LiveAnalyzer, replay
from smash_tracker.record import BattleRecord
from smash_tracker.scenes import SceneMatcher
from smash_tracker.sink import CsvRecordSink, FinalizeWorker, HttpRecordSink, MemorySink, record_to_row
from smash_tracker.state_machine import BattleStateMachine
from smash_tracker.templates import load_asset_bundle


def print_record(record: BattleRecord, match_num: Optional[int] = None):
    """Print a finished match to the console."""
    if match_num:
        print(f"\nMatch {match_num} Results:")
    else:
        print("\nMatch Results:")

    row = record_to_row(record)
    print(f"  Rule: {row['rule']}, Time limit: {row['max_time']}s, Players: {row['player_count']}")
    for slot in range(record.player_count or 0):
        p = f"p{slot + 1}"
        print(f"  {p.upper()}: {row[f'{p}_character']} ({row[f'{p}_group']}) - "
              f"Rank: {row[f'{p}_order']}, Stock: {row[f'{p}_stock']}, Power: {row[f'{p}_power']}")
    if record.unresolved_fields:
        print(f"  Unresolved: {', '.join(record.unresolved_fields)}")


class Session:
    """Wire the pipeline for one run from a SessionConfig."""

    def __init__(self, config: SessionConfig, debug: bool = False):
        self.config = config
        bundle = load_asset_bundle(config.assets_dir)
        print(f"Loaded asset bundle {bundle.version}: {len(bundle.scenes)} scene templates, "
              f"{len(bundle.glyphs)} glyphs")

        if config.remote_url:
            self.sink = HttpRecordSink(config.remote_url)
        elif config.csv_path:
            self.sink = CsvRecordSink(config.csv_path)
        else:
            self.sink = MemorySink(config.result_limit)
        self.results: List[BattleRecord] = []
        self.finalizer = FinalizeWorker(self.sink, on_committed=self._on_committed,
                                        on_failed=self._on_failed)

        matcher = SceneMatcher.from_bundle(bundle, debug=debug)
        extractor = FieldExtractor(bundle,
                                   similarity_floor=config.machine.similarity_floor,
                                   min_power=config.machine.min_power)
        self.machine = BattleStateMachine(matcher, extractor, config.machine)

        self.watchdog = None
        if config.diagnostics.enabled:
            self.watchdog = NoSceneWatchdog(DirectoryDiagnosticSink(config.diagnostics.directory),
                                            timeout=config.diagnostics.no_scene_timeout,
                                            clip_length=config.diagnostics.clip_length)

    def _on_committed(self, record: BattleRecord, record_id: str):
        self.results.append(record)
        del self.results[:-self.config.result_limit]
        print_record(record, match_num=self.machine.matches_finalized)
        print(f"Result saved ({record_id})")

    def _on_failed(self, record: BattleRecord, error: Exception):
        print(f"Warning: could not save match result ({error}); kept in memory for retry")

    def print_summary(self):
        print()
        print("=" * 60)
        print("SESSION COMPLETE")
        print("=" * 60)
        print(f"Matches recorded: {len(self.results)}")
        print(f"Matches aborted: {self.machine.matches_aborted}")
        if self.finalizer.unsaved:
            print(f"Unsaved matches: {len(self.finalizer.unsaved)}")
        if self.watchdog is not None and self.watchdog.episodes:
            print(f"Diagnostic clips saved: {self.watchdog.episodes} (in {self.config.diagnostics.directory})")
        if self.config.csv_path and not self.config.remote_url and self.results:
            print(f"Results saved to: {self.config.csv_path}")


def run_live(config: SessionConfig, debug: bool = False) -> int:
    print("=" * 60)
    print("SMASH TRACKER LIVE")
    print("=" * 60)

    session = Session(config, debug=debug)
    session.machine.on_finalized = session.finalizer.submit
    source = open_source(config.capture)

    analyzer = LiveAnalyzer(source, session.machine, session.finalizer, session.watchdog)
    print(f"Capturing from {source}. Press Ctrl+C to stop.\n")
    analyzer.run()
    session.print_summary()
    return 0


def run_replay(config: SessionConfig, path: str, frame_step: int = 1, debug: bool = False) -> int:
    print("=" * 60)
    print("SMASH TRACKER - Replay")
    print("=" * 60)

    session = Session(config, debug=debug)
    # Commit inline so results print in the order the matches were played
    session.machine.on_finalized = session.finalizer.commit_now

    if config.capture.mode == "image_folder":
        source = ImageFolderSource(path)
    else:
        source = VideoFileSource(path, frame_step=frame_step)

    print(f"Replaying {path}...")
    print("-" * 60)
    frames = replay(source, session.machine, session.watchdog)
    print(f"Frames processed: {frames}")
    session.print_summary()
    return 0


def _apply_overrides(config: SessionConfig, args) -> SessionConfig:
    """Command-line flags take precedence over the config file."""
    capture = {}
    if getattr(args, "mode", None):
        capture["mode"] = args.mode
    if getattr(args, "window", None):
        capture["window_title"] = args.window
        capture.setdefault("mode", "window")
    if getattr(args, "window_class", None):
        capture["window_class"] = args.window_class
    if getattr(args, "device", None) is not None:
        capture["device"] = args.device
        capture.setdefault("mode", "video_device")
    if getattr(args, "region", None):
        capture["region"] = tuple(args.region)
        capture.setdefault("mode", "desktop")
    if getattr(args, "path", None):
        capture["path"] = args.path
        capture["mode"] = "image_folder" if args.frames else "video_file"

    update = {}
    if capture:
        update["capture"] = config.capture.model_copy(update=capture)
    if args.assets:
        update["assets_dir"] = args.assets
    if args.csv:
        update["csv_path"] = args.csv
    if args.remote:
        update["remote_url"] = args.remote
    if args.no_diagnostics:
        update["diagnostics"] = config.diagnostics.model_copy(update={"enabled": False})
    if args.debounce:
        update["machine"] = config.machine.model_copy(update={"debounce_frames": args.debounce})

    # Round-trip through validation so overridden values are checked too
    try:
        return SessionConfig.model_validate(config.model_copy(update=update).model_dump())
    except ValidationError as e:
        raise ConfigError(f"Invalid command-line option: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smash-tracker",
        description="Record Super Smash Bros. Ultimate online battles from a video feed"
    )
    parser.add_argument("-c", "--config", help="JSON session config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log per-frame scores and transitions")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-a", "--assets", help="Template bundle directory (default: from config, assets)")
    common.add_argument("--csv", help="CSV file for finished matches (default: from config, battles.csv)")
    common.add_argument("--remote", help="Results server URL to upload finished matches to instead of the CSV")
    common.add_argument("--debounce", type=int, help="Frames a scene must persist before a transition")
    common.add_argument("--no-diagnostics", action="store_true", help="Don't save clips when no scene is recognized")

    subparsers = parser.add_subparsers(dest="command", required=True)

    live = subparsers.add_parser("live", parents=[common], help="Analyze a live capture")
    live.add_argument("--mode", choices=["window", "desktop", "video_device"], help="Capture source type")
    live.add_argument("--window", help="Capture the window with this title")
    live.add_argument("--window-class", help="Window class, to disambiguate windows with the same title")
    live.add_argument("--device", help="Capture device index or name (e.g. 0 for the first capture card)")
    live.add_argument("--region", type=int, nargs=4, metavar=("LEFT", "TOP", "WIDTH", "HEIGHT"),
                      help="Capture a fixed desktop region")

    rep = subparsers.add_parser("replay", parents=[common], help="Analyze a recording")
    rep.add_argument("path", help="Video file, or a folder of frames with --frames")
    rep.add_argument("--frames", action="store_true", help="PATH is a folder of saved frames")
    rep.add_argument("--frame-step", type=int, default=1, help="Process every Nth video frame (default: 1)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        config = _apply_overrides(load_config(args.config), args)
        if args.command == "live":
            return run_live(config, debug=args.verbose)
        return run_replay(config, args.path, frame_step=args.frame_step, debug=args.verbose)
    except ConfigError as e:
        print(f"Config error: {e}")
        return 2
    except CaptureError as e:
        print(f"Capture error: {e}")
        return 1
    except SmashTrackerError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
