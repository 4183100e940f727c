"""
Tests for the no-scene watchdog.
"""

import os

from smash_tracker.diagnostics import DirectoryDiagnosticSink, NoSceneWatchdog
from smash_tracker.scenes import NO_MATCH, SceneClassification
from smash_tracker.templates import SceneKind

from conftest import make_frame


MATCHED = SceneClassification("dialog", SceneKind.DIALOG, 0.99)


class RecordingSink:

    def __init__(self):
        self.published = []

    def publish(self, frame, clip, reason):
        self.published.append((frame, clip, reason))
        return len(self.published)


def feed(watchdog, script):
    """script: (timestamp, classification) pairs; returns publish results."""
    return [watchdog.observe(make_frame(index=i, timestamp=t), c) for i, (t, c) in enumerate(script)]


class TestNoSceneWatchdog:

    def test_publishes_once_per_episode(self):
        sink = RecordingSink()
        watchdog = NoSceneWatchdog(sink, timeout=10, clip_length=3)

        results = feed(watchdog, [
            (0, MATCHED), (1, NO_MATCH), (5, NO_MATCH), (11, NO_MATCH), (15, NO_MATCH),
            (16, MATCHED), (20, NO_MATCH), (30, NO_MATCH),
        ])

        assert results == [None, None, None, 1, None, None, None, 2]
        assert watchdog.episodes == 2
        frame, clip, reason = sink.published[0]
        assert frame.index == 3
        assert [f.index for f in clip] == [1, 2, 3]
        assert "10s" in reason

    def test_skipped_frames_do_not_count(self):
        sink = RecordingSink()
        watchdog = NoSceneWatchdog(sink, timeout=10)

        feed(watchdog, [(0, None), (5, None), (20, None), (25, NO_MATCH), (30, None)])
        assert sink.published == []

    def test_recognition_rearms(self):
        sink = RecordingSink()
        watchdog = NoSceneWatchdog(sink, timeout=5)

        feed(watchdog, [(0, NO_MATCH), (4, MATCHED), (6, NO_MATCH), (10, NO_MATCH)])
        assert sink.published == []


class TestDirectoryDiagnosticSink:

    def test_writes_clip(self, tmp_path):
        sink = DirectoryDiagnosticSink(str(tmp_path))
        clip = [make_frame(index=i, timestamp=1_700_000_000.0 + i) for i in range(3)]

        clip_dir = sink.publish(clip[-1], clip, "No scene recognized for 30s")

        assert os.path.dirname(clip_dir) == str(tmp_path)
        files = sorted(os.listdir(clip_dir))
        assert files == ["frame_0000_000000.png", "frame_0001_000001.png", "frame_0002_000002.png",
                         "last.png", "reason.txt"]
        with open(os.path.join(clip_dir, "reason.txt")) as f:
            assert f.read().strip() == "No scene recognized for 30s"
