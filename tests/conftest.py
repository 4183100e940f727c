"""
Test Configuration
==================

Shared fixtures and test doubles for smash_tracker.

Scene and glyph templates are random-noise patches: they correlate
perfectly with themselves and barely with anything else, so template
matching is deterministic without real game assets. OCR, scene matching
and field extraction can be replaced by scripted doubles so the state
machine is tested without tesseract.
"""

import json

import cv2
import numpy as np
import pytest

from smash_tracker.capture import FrameSource
from smash_tracker.errors import EndOfStream, ExtractionError
from smash_tracker.extract import OcrReading
from smash_tracker.frames import CANONICAL_HEIGHT, CANONICAL_WIDTH, Frame
from smash_tracker.record import FieldObservation
from smash_tracker.scenes import NO_MATCH, SceneClassification
from smash_tracker.templates import SceneKind


# Where each scene's template is embedded in synthetic frames (x, y)
SCENE_POSITIONS = {
    SceneKind.RESULT: (20, 20),
    SceneKind.GAME_END: (120, 20),
    SceneKind.VERSUS: (220, 20),
    SceneKind.MATCHING: (320, 20),
    SceneKind.READY_TO_FIGHT: (420, 20),
    SceneKind.GAME_START: (20, 200),
    SceneKind.GAME_PLAYING: (120, 200),
    SceneKind.DIALOG: (220, 200),
    SceneKind.LOADING: (320, 200),
}
TEMPLATE_SIZE = (40, 60)  # height, width


def noise_patch(seed, height=TEMPLATE_SIZE[0], width=TEMPLATE_SIZE[1]):
    """Deterministic uniform-noise grayscale patch."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width), dtype=np.uint8)


def blank_image():
    return np.zeros((CANONICAL_HEIGHT, CANONICAL_WIDTH, 3), dtype=np.uint8)


def embed(image, patch, x, y):
    """Paste a grayscale patch into a BGR image in place."""
    h, w = patch.shape[:2]
    image[y:y + h, x:x + w] = cv2.cvtColor(patch, cv2.COLOR_GRAY2BGR) if patch.ndim == 2 else patch
    return image


def make_frame(index=0, timestamp=None, image=None, source="test"):
    return Frame(image=blank_image() if image is None else image,
                 timestamp=float(index) if timestamp is None else timestamp,
                 source=source, index=index)


@pytest.fixture
def scene_patches():
    """One distinct noise template per scene."""
    return {scene: noise_patch(seed) for seed, scene in enumerate(SceneKind, start=1)}


@pytest.fixture
def scene_frame(scene_patches):
    """Build a canonical image showing the given scene's template."""
    def build(scene, image=None):
        image = blank_image() if image is None else image
        x, y = SCENE_POSITIONS[scene]
        return embed(image, scene_patches[scene], x, y)
    return build


@pytest.fixture
def bundle_dir(tmp_path, scene_patches):
    """An on-disk asset bundle with one template per scene."""
    directory = tmp_path / "assets"
    directory.mkdir()
    scenes = []
    for scene, patch in scene_patches.items():
        filename = f"{scene.value}.png"
        cv2.imwrite(str(directory / filename), patch)
        entry = {"name": scene.value, "scene": scene.value, "image": filename, "threshold": 0.9}
        if scene == SceneKind.MATCHING:
            entry["tags"] = {"player_count": 2}
        scenes.append(entry)

    manifest = {"version": "test-1", "scenes": scenes}
    (directory / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    return directory


class FakeOcr:
    """OCR double returning scripted texts in call order."""

    def __init__(self, texts=(), confidence=0.9):
        self.texts = list(texts)
        self.confidence = confidence
        self.calls = []

    def __call__(self, image, whitelist=None, psm=7):
        self.calls.append({"shape": image.shape, "whitelist": whitelist, "psm": psm})
        text = self.texts.pop(0) if self.texts else ""
        return OcrReading(text, tuple([self.confidence] * len(text)))


class ScriptedMatcher:
    """Classifies frame N as script[N], honoring the candidate restriction."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def classify(self, frame, candidates=None):
        self.calls.append(frame.index)
        scene = self.script[frame.index] if frame.index < len(self.script) else None
        if scene is None or (candidates is not None and scene not in candidates):
            return NO_MATCH
        return SceneClassification(scene.value, scene, 0.99)


class ScriptedExtractor:
    """Returns the observations scripted for each frame index."""

    def __init__(self, observations=None, failing=()):
        self.observations = observations or {}
        self.failing = set(failing)
        self.contexts = []

    def extract(self, frame, scene, context=None):
        self.contexts.append((frame.index, context))
        if frame.index in self.failing:
            raise ExtractionError(f"scripted failure on frame {frame.index}")
        return {
            FieldObservation(kind, value, 0.9, frame.timestamp, slot=slot)
            for kind, value, slot in self.observations.get(frame.index, ())
        }


class ListSource(FrameSource):
    """Frame source over a list of images; raises `end` when exhausted."""

    def __init__(self, images, end=EndOfStream, start_time=1000.0, interval=0.1):
        super().__init__()
        self.name = "list"
        self.images = list(images)
        self.end = end
        self.start_time = start_time
        self.interval = interval
        self.opened = False
        self.closed = False
        self._position = 0

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def _grab(self):
        if self._position >= len(self.images):
            raise self.end("list exhausted")
        image = self.images[self._position]
        timestamp = self.start_time + self._position * self.interval
        self._position += 1
        return image, timestamp


@pytest.fixture
def fake_ocr():
    return FakeOcr()
