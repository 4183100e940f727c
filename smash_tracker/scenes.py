"""
Scene classification by template matching.

Every SceneTemplate is scored inside its region of the normalized frame;
the highest score at or above that template's own threshold wins, and an
exact tie goes to the template with the higher priority (declared earlier).
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from smash_tracker.frames import Frame
from smash_tracker.templates import AssetBundle, GlyphTemplate, Region, SceneKind, SceneTemplate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneClassification:
    """Result of matching one frame against the scene templates."""
    template: Optional[str]
    scene: Optional[SceneKind]
    confidence: float
    tags: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    scores: Mapping[str, float] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def matched(self) -> bool:
        return self.scene is not None

    def __repr__(self):
        if not self.matched:
            return "SceneClassification(no match)"
        return f"SceneClassification({self.template!r}, {self.scene.value}, conf={self.confidence:.4f})"


NO_MATCH = SceneClassification(None, None, 0.0)


def match_template(image, template, mask=None) -> Tuple[float, Tuple[int, int]]:
    """
    Perform template matching and return the best score and its location.

    Masked templates use TM_CCORR_NORMED (the only mode with a mask that stays
    normalized), unmasked ones TM_CCOEFF_NORMED. A template that does not fit
    inside the image scores 0.

    Returns:
        tuple: (confidence, location)
    """
    ih, iw = image.shape[:2]
    th, tw = template.shape[:2]
    if th > ih or tw > iw:
        return 0.0, (0, 0)

    if mask is not None:
        result = cv2.matchTemplate(image, template, cv2.TM_CCORR_NORMED, mask=mask)
    else:
        result = cv2.matchTemplate(image, template, cv2.TM_CCOEFF_NORMED)

    # Flat regions divide by zero in the normalization
    result = np.nan_to_num(result, nan=0.0, posinf=0.0, neginf=0.0)
    _, max_val, _, max_loc = cv2.minMaxLoc(result)
    return float(max_val), max_loc


def _clip(region: Region, width: int, height: int) -> Region:
    x = min(max(region.x, 0), width)
    y = min(max(region.y, 0), height)
    return Region(x, y, max(0, min(region.x + region.width, width) - x),
                  max(0, min(region.y + region.height, height) - y))


def match_glyph(region_image: np.ndarray, glyphs: Iterable[GlyphTemplate]):
    """
    Find the glyph that best matches an already-cropped region.

    Returns:
        tuple: (glyph, confidence) for the best glyph at or above its threshold,
        or (None, best_seen_confidence)
    """
    gray = None
    best, best_score, best_seen = None, -1.0, 0.0
    for glyph in glyphs:
        if glyph.color:
            image = region_image
        else:
            if gray is None:
                gray = region_image if region_image.ndim == 2 else cv2.cvtColor(region_image, cv2.COLOR_BGR2GRAY)
            image = gray
        score, _ = match_template(image, glyph.image, glyph.mask)
        best_seen = max(best_seen, score)
        if score >= glyph.threshold and score > best_score:
            best, best_score = glyph, score
    if best is None:
        return None, best_seen
    return best, best_score


class SceneMatcher:
    """
    Classify frames against a fixed, priority-ordered set of scene templates.

    The template set is read-only after construction, so one matcher can be
    shared across threads.
    """

    def __init__(self, templates: Sequence[SceneTemplate], debug: bool = False):
        self.templates = tuple(sorted(templates, key=lambda t: t.priority))
        self.debug = debug
        # Best score per template, for threshold tuning
        self.best_scores = {t.name: 0.0 for t in self.templates}

    @classmethod
    def from_bundle(cls, bundle: AssetBundle, debug: bool = False) -> "SceneMatcher":
        return cls(bundle.scenes, debug=debug)

    def score(self, image: np.ndarray, template: SceneTemplate, gray: Optional[np.ndarray] = None) -> float:
        """Similarity of one template within its region of a normalized BGR image."""
        if template.color:
            source = image
        else:
            source = gray if gray is not None else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

        region = _clip(template.region, source.shape[1], source.shape[0])
        if region.width == 0 or region.height == 0:
            return 0.0
        crop = source[region.y:region.y + region.height, region.x:region.x + region.width]
        confidence, _ = match_template(crop, template.image, template.mask)
        return confidence

    def classify(self, frame, candidates: Optional[Iterable[SceneKind]] = None) -> SceneClassification:
        """
        Classify a normalized frame.

        Args:
            frame: Frame or BGR image at canonical resolution
            candidates: Restrict matching to these scenes (None = all)

        Returns:
            SceneClassification: best template at or above its threshold, or NO_MATCH
        """
        image = frame.image if isinstance(frame, Frame) else frame
        allowed = None if candidates is None else frozenset(candidates)

        gray = None
        scores = {}
        best, best_score = None, -1.0
        for template in self.templates:
            if allowed is not None and template.scene not in allowed:
                continue
            if not template.color and gray is None:
                gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

            confidence = self.score(image, template, gray)
            scores[template.name] = confidence
            if self.debug and confidence > self.best_scores[template.name]:
                self.best_scores[template.name] = confidence

            # Strict comparison keeps the earlier template on a tie
            if confidence >= template.threshold and confidence > best_score:
                best, best_score = template, confidence

        if best is None:
            if self.debug:
                logger.debug(f"No match: {_format_scores(scores)}")
            return SceneClassification(None, None, 0.0, scores=MappingProxyType(scores))

        if self.debug:
            logger.debug(f"Matched {best.name} ({best_score:.4f}): {_format_scores(scores)}")
        return SceneClassification(
            template=best.name,
            scene=best.scene,
            confidence=best_score,
            tags=best.tags,
            scores=MappingProxyType(scores),
        )


def _format_scores(scores: Mapping[str, float]) -> str:
    return " ".join(f"{name}={score:.3f}" for name, score in scores.items())
