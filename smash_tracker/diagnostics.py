"""
No-scene watchdog.

When nothing is recognized for a while, the templates probably no longer
fit the feed (new overlay, different capture scaling). The watchdog keeps
the most recent frames and publishes them once per silent stretch so the
templates can be re-tuned against real footage.
"""

import logging
import os
from collections import deque
from datetime import datetime
from typing import Optional, Sequence

import cv2

from smash_tracker.frames import Frame
from smash_tracker.scenes import SceneClassification


logger = logging.getLogger(__name__)


class DiagnosticSink:
    """Destination for diagnostic clips."""

    def publish(self, frame: Frame, clip: Sequence[Frame], reason: str):
        raise NotImplementedError


class DirectoryDiagnosticSink(DiagnosticSink):
    """Write the last frame and the clip as PNG files under a timestamped directory."""

    def __init__(self, directory: str):
        self.directory = directory

    def publish(self, frame: Frame, clip: Sequence[Frame], reason: str) -> str:
        timestamp = datetime.fromtimestamp(frame.timestamp).strftime("%Y%m%d_%H%M%S")
        clip_dir = os.path.join(self.directory, f"no_scene_{timestamp}_{frame.index:06d}")
        os.makedirs(clip_dir, exist_ok=True)

        if not cv2.imwrite(os.path.join(clip_dir, "last.png"), frame.image):
            logger.warning(f"Could not write diagnostic frame to {clip_dir}")
        for i, clip_frame in enumerate(clip):
            cv2.imwrite(os.path.join(clip_dir, f"frame_{i:04d}_{clip_frame.index:06d}.png"), clip_frame.image)

        with open(os.path.join(clip_dir, "reason.txt"), 'w') as f:
            f.write(reason + "\n")

        logger.info(f"Diagnostic clip saved: {clip_dir} ({len(clip)} frames)")
        return clip_dir


class NoSceneWatchdog:
    """
    Publish a diagnostic clip when no scene is recognized for `timeout` seconds.

    Publishes at most once per silent episode; any recognized scene re-arms it.
    """

    def __init__(self, sink: DiagnosticSink, timeout: float = 30.0, clip_length: int = 30):
        self.sink = sink
        self.timeout = timeout
        self.episodes = 0
        self._clip = deque(maxlen=clip_length)
        self._silent_since = None
        self._published = False

    def observe(self, frame: Frame, classification: Optional[SceneClassification]):
        """Record one processed frame. Returns the sink's result when a clip is published."""
        self._clip.append(frame)

        # Frames the machine skipped say nothing about recognition
        if classification is None:
            return None

        if classification.matched:
            self._silent_since = None
            self._published = False
            return None

        if self._silent_since is None:
            self._silent_since = frame.timestamp
        silent_for = frame.timestamp - self._silent_since

        if self._published or silent_for < self.timeout:
            return None

        self._published = True
        self.episodes += 1
        reason = f"No scene recognized for {silent_for:.0f}s"
        logger.warning(reason)
        return self.sink.publish(frame, tuple(self._clip), reason)
