"""
Extract battle fields from classified frames.

Each SceneKind maps to one extraction routine and the layout regions it
samples (SCENE_EXTRACTION). Free text goes through tesseract and the fuzzy
resolver; fixed glyphs (rule badges, rank numerals) are template matched;
icon strips are counted by per-icon contrast.

Illegible regions produce low-confidence observations with value None.
ExtractionError is raised only when a region lies outside the frame.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

import cv2
import numpy as np
import pytesseract

from smash_tracker.errors import ExtractionError
from smash_tracker.frames import CANONICAL_HEIGHT, CANONICAL_WIDTH, Frame
from smash_tracker.fuzzy import FuzzyResolver
from smash_tracker.record import FieldKind, FieldObservation, Rule
from smash_tracker.scenes import SceneClassification, match_glyph
from smash_tracker.templates import AssetBundle, Region, SceneKind


logger = logging.getLogger(__name__)

DIGITS = "0123456789"
NAME_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ.&-"

# Target ~100px text height for good Tesseract accuracy
TARGET_OCR_HEIGHT = 100
OCR_PADDING = 20

# Icon segments with a grayscale standard deviation above this hold an icon
ICON_STD_THRESHOLD = 20

# Rule-implied caps the versus screen can legitimately show
TIME_RULE_SECONDS = (120, 150, 180)
STOCK_RULE_MINUTES = range(3, 8)
STOCK_RANGE = range(1, 4)
HP_RANGE = range(1, 1000)


# Layout regions at 640x360. Keys ending in ".{n}" hold one region per slot
# for an n-player match. Bundles can override any key.
DEFAULT_LAYOUT: Dict[str, Tuple[Region, ...]] = {
    "versus.rule": (Region(200, 318, 240, 42),),
    "versus.time.minutes": (Region(313, 332, 10, 20),),
    "versus.time.seconds": (Region(325, 332, 18, 20),),
    "versus.stock.minutes": (Region(274, 332, 11, 20),),
    "versus.stock.count": (Region(358, 332, 11, 20),),
    "versus.stamina.minutes": (Region(241, 332, 11, 20),),
    "versus.stamina.count": (Region(324, 332, 11, 20),),
    "versus.stamina.hp": (Region(380, 332, 18, 20),),
    "result.order.2": (Region(205, 4, 80, 80), Region(470, 4, 80, 80)),
    "result.order.4": (Region(90, 0, 80, 80), Region(250, 0, 80, 80),
                       Region(420, 0, 80, 80), Region(560, 0, 80, 80)),
    "result.falls.2": (Region(40, 232, 112, 16), Region(360, 232, 112, 16)),
}


def _slot_strips(player_count: int, y: int, height: int, inset_left: int = 0, inset_right: int = 0):
    """Split the frame width into one vertical strip per player."""
    strip = CANONICAL_WIDTH // player_count
    return tuple(
        Region(strip * slot + inset_left, y, strip - inset_left - inset_right, height)
        for slot in range(player_count)
    )


# Regions derived from the player count when the bundle does not pin them
DERIVED_LAYOUT: Dict[str, Callable[[int], Tuple[Region, ...]]] = {
    "versus.names": lambda n: _slot_strips(n, 0, CANONICAL_HEIGHT // 7, 30, 20),
    "result.order": lambda n: _slot_strips(n, 0, 80),
    "playing.stock": lambda n: _slot_strips(n, CANONICAL_HEIGHT // 4, CANONICAL_HEIGHT // 2),
    "result.power": lambda n: _slot_strips(n, CANONICAL_HEIGHT // 4, CANONICAL_HEIGHT // 2),
}


@dataclass(frozen=True)
class OcrReading:
    """Raw OCR text plus one confidence (0-1) per character."""
    text: str
    char_confidences: Tuple[float, ...] = ()

    @property
    def confidence(self) -> float:
        if not self.char_confidences:
            return 0.0
        return float(sum(self.char_confidences) / len(self.char_confidences))


EMPTY_READING = OcrReading("")


class TesseractOcr:
    """OCR engine backed by pytesseract.image_to_data."""

    def __init__(self, oem: int = 3):
        self.oem = oem

    def __call__(self, image: np.ndarray, whitelist: Optional[str] = None, psm: int = 7) -> OcrReading:
        config = f"--oem {self.oem} --psm {psm}"
        if whitelist:
            config += f" -c tessedit_char_whitelist={whitelist}"

        try:
            data = pytesseract.image_to_data(image, config=config, output_type=pytesseract.Output.DICT)
        except pytesseract.TesseractError as e:
            logger.warning(f"Tesseract failed ({e.status}): {e.message}")
            return EMPTY_READING

        words = []
        confidences = []
        for text, conf in zip(data.get('text', []), data.get('conf', [])):
            text = (text or '').strip()
            conf = float(conf)
            if not text or conf < 0:
                continue
            if words:
                confidences.append(min(conf / 100.0, confidences[-1]))
            words.append(text)
            confidences.extend([conf / 100.0] * len(text))

        return OcrReading(" ".join(words), tuple(confidences))


def prepare_for_ocr(region: np.ndarray, threshold: Optional[int] = None) -> np.ndarray:
    """
    Turn a small text region into black-on-white text Tesseract reads well.

    Args:
        region: BGR or grayscale crop
        threshold: Fixed binarization level; Otsu when None

    Returns:
        Padded binary image, text black on white
    """
    gray = region if region.ndim == 2 else cv2.cvtColor(region, cv2.COLOR_BGR2GRAY)

    upscale_factor = max(1.0, TARGET_OCR_HEIGHT / gray.shape[0])
    gray_upscaled = cv2.resize(gray, None, fx=upscale_factor, fy=upscale_factor,
                               interpolation=cv2.INTER_CUBIC)

    # Reduce compression noise while keeping glyph edges sharp
    denoised = cv2.bilateralFilter(gray_upscaled, 9, 75, 75)

    if threshold is None:
        _, thresh = cv2.threshold(denoised, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    else:
        _, thresh = cv2.threshold(denoised, threshold, 255, cv2.THRESH_BINARY)

    # Text should be black on white for OCR
    if np.sum(thresh == 0) > np.sum(thresh == 255):
        thresh = cv2.bitwise_not(thresh)

    # Tesseract needs margin to recognize edge characters
    return cv2.copyMakeBorder(thresh, OCR_PADDING, OCR_PADDING, OCR_PADDING, OCR_PADDING,
                              cv2.BORDER_CONSTANT, value=255)


def count_icons(region: np.ndarray, icon_width: int, std_threshold: float = ICON_STD_THRESHOLD):
    """
    Count icons laid out left to right in a strip.

    Each icon-width segment with enough contrast holds an icon; counting
    stops at the first empty segment.

    Returns:
        tuple: (count, confidence) where confidence reflects how clearly the
        examined segments sat away from the threshold
    """
    if icon_width <= 0:
        raise ExtractionError(f"Invalid icon width: {icon_width}")
    gray = region if region.ndim == 2 else cv2.cvtColor(region, cv2.COLOR_BGR2GRAY)
    box_width = gray.shape[1]
    max_icons = box_width // icon_width

    count = 0
    margins = []
    for i in range(max_icons):
        segment = gray[:, i * icon_width:min((i + 1) * icon_width, box_width)]
        std_dev = float(np.std(segment))
        margins.append(min(1.0, abs(std_dev - std_threshold) / std_threshold))
        if std_dev > std_threshold:
            count += 1
        else:
            break

    confidence = float(np.mean(margins)) if margins else 0.0
    return count, confidence


@dataclass(frozen=True)
class ExtractionContext:
    """What the in-progress record already knows about the match."""
    player_count: Optional[int] = None
    rule: Rule = Rule.UNKNOWN
    max_stock: Optional[int] = None


@dataclass(frozen=True)
class SceneExtraction:
    """Extraction routine for one scene and the layout keys it samples."""
    routine: Callable
    regions: Tuple[str, ...] = ()


class FieldExtractor:
    """
    Run the scene-specific extraction routine over a normalized frame.

    Args:
        bundle: Asset bundle (glyph templates, character vocabulary, layout)
        resolver: Fuzzy resolver for character names
        ocr: Callable(image, whitelist=None, psm=7) -> OcrReading
        similarity_floor: Minimum fuzzy similarity to accept a name
        min_power: Skill ratings below this are treated as noise
    """

    def __init__(self, bundle: AssetBundle, resolver: Optional[FuzzyResolver] = None,
                 ocr: Optional[Callable[..., OcrReading]] = None,
                 similarity_floor: float = 0.8, min_power: int = 10):
        self.bundle = bundle
        self.resolver = resolver or FuzzyResolver(bundle.exceptions)
        self.ocr = ocr or TesseractOcr()
        self.similarity_floor = similarity_floor
        self.min_power = min_power
        self.characters = bundle.vocabulary("characters")
        self.layout = dict(DEFAULT_LAYOUT)
        self.layout.update(bundle.layout)

    def regions(self, key: str, player_count: Optional[int] = None) -> Tuple[Region, ...]:
        """Layout regions for a key, per slot when player_count is given."""
        lookup = key if player_count is None else f"{key}.{player_count}"
        if lookup in self.layout:
            return self.layout[lookup]
        if player_count is not None and key in DERIVED_LAYOUT:
            return DERIVED_LAYOUT[key](player_count)
        raise ExtractionError(f"No layout region for {lookup!r}")

    def extract(self, frame: Frame, scene, context: Optional[ExtractionContext] = None) -> Set[FieldObservation]:
        """
        Extract every field the scene carries.

        Args:
            frame: Normalized frame
            scene: SceneClassification (or a bare SceneKind)
            context: Known match facts (player count, rule, stock cap)

        Returns:
            set of FieldObservation
        """
        if isinstance(scene, SceneKind):
            scene = SceneClassification(None, scene, 1.0)
        if not scene.matched:
            return set()

        entry = SCENE_EXTRACTION[scene.scene]
        observations = entry.routine(self, frame, scene, context or ExtractionContext())
        if observations:
            logger.debug(f"Frame {frame.index} [{scene.scene.value}]: {sorted(map(repr, observations))}")
        return set(observations)

    # Shared readers

    def read_number(self, image: np.ndarray, region: Region, psm: int = 7):
        """OCR a digit-only region. Returns (number or None, confidence, raw text)."""
        reading = self.ocr(prepare_for_ocr(region.crop(image)), whitelist=DIGITS, psm=psm)
        digits = re.sub(r'[^0-9]', '', reading.text)
        if not digits:
            return None, reading.confidence, reading.text
        return int(digits), reading.confidence, reading.text

    def read_character(self, image: np.ndarray, region: Region, slot: int, timestamp: float) -> FieldObservation:
        reading = self.ocr(prepare_for_ocr(region.crop(image)), whitelist=NAME_CHARS, psm=7)
        text = re.sub(r'\s+', ' ', reading.text).strip()
        resolution = self.resolver.resolve(text, self.characters)

        confidence = resolution.similarity * reading.confidence
        if resolution.ambiguous:
            confidence *= 0.5
        value = resolution.match if resolution.similarity >= self.similarity_floor else None
        return FieldObservation(FieldKind.CHARACTER, value, confidence, timestamp, slot=slot, raw=text)


def _observation(kind, value, confidence, frame, slot=None, raw=None):
    return FieldObservation(kind, value, max(0.0, min(1.0, confidence)), frame.timestamp, slot=slot, raw=raw)


def _no_fields(extractor, frame, scene, context):
    return []


def _extract_matching(extractor, frame, scene, context):
    player_count = scene.tags.get("player_count")
    if player_count is None:
        return []
    return [_observation(FieldKind.PLAYER_COUNT, int(player_count), scene.confidence, frame)]


def _read_rule_clause(extractor, image, rule, frame):
    """Read the caps printed under the rule badge, validated against the rule."""
    observations = []

    def region(key):
        return extractor.regions(key)[0]

    if rule == Rule.TIME:
        minutes, conf_m, raw_m = extractor.read_number(image, region("versus.time.minutes"), psm=10)
        seconds, conf_s, raw_s = extractor.read_number(image, region("versus.time.seconds"))
        total = None
        if minutes is not None and seconds is not None and minutes * 60 + seconds in TIME_RULE_SECONDS:
            total = minutes * 60 + seconds
        observations.append(_observation(FieldKind.MAX_TIME, total, min(conf_m, conf_s), frame,
                                         raw=f"{raw_m}:{raw_s}"))
        return observations

    prefix = "versus.stock" if rule == Rule.STOCK else "versus.stamina"
    minutes, conf, raw = extractor.read_number(image, region(f"{prefix}.minutes"), psm=10)
    max_time = minutes * 60 if minutes in STOCK_RULE_MINUTES else None
    observations.append(_observation(FieldKind.MAX_TIME, max_time, conf, frame, raw=raw))

    stock, conf, raw = extractor.read_number(image, region(f"{prefix}.count"), psm=10)
    observations.append(_observation(FieldKind.MAX_STOCK, stock if stock in STOCK_RANGE else None,
                                     conf, frame, raw=raw))

    if rule == Rule.STAMINA:
        hp, conf, raw = extractor.read_number(image, region("versus.stamina.hp"))
        observations.append(_observation(FieldKind.MAX_HP, hp if hp in HP_RANGE else None,
                                         conf, frame, raw=raw))
    return observations


def _extract_versus(extractor, frame, scene, context):
    image = frame.image
    observations = []

    rule_region = extractor.regions("versus.rule")[0].crop(image)
    glyph, score = match_glyph(rule_region, extractor.bundle.glyphs_for(FieldKind.RULE))
    rule = None
    if glyph is not None:
        try:
            rule = Rule(glyph.value)
        except ValueError:
            logger.warning(f"Rule glyph {glyph.name} has unknown value {glyph.value!r}")
    observations.append(_observation(FieldKind.RULE, rule, score, frame))

    # Versus layouts differ per player count, so their templates can carry it
    if scene.tags.get("player_count"):
        observations.append(_observation(FieldKind.PLAYER_COUNT, int(scene.tags["player_count"]),
                                         scene.confidence, frame))

    effective_rule = rule if rule is not None else context.rule
    if effective_rule != Rule.UNKNOWN:
        observations.extend(_read_rule_clause(extractor, image, effective_rule, frame))

    player_count = context.player_count or scene.tags.get("player_count")
    if player_count:
        for slot, region in enumerate(extractor.regions("versus.names", int(player_count))):
            observations.append(extractor.read_character(image, region, slot, frame.timestamp))
    return observations


def _extract_game_playing(extractor, frame, scene, context):
    # Only the 1-on-1 stock display shows per-player stock digits
    if context.player_count != 2 or context.rule not in (Rule.STOCK, Rule.STAMINA):
        return []

    limit = context.max_stock if context.max_stock else 99
    observations = []
    for slot, region in enumerate(extractor.regions("playing.stock", 2)):
        stock, conf, raw = extractor.read_number(frame.image, region, psm=10)
        if stock is not None and not 0 <= stock <= limit:
            stock, conf = None, conf * 0.5
        observations.append(_observation(FieldKind.STOCK, stock, conf, frame, slot=slot, raw=raw))
    return observations


def _extract_result(extractor, frame, scene, context):
    player_count = context.player_count
    if not player_count:
        return []

    image = frame.image
    observations = []
    order_glyphs = extractor.bundle.glyphs_for(FieldKind.ORDER)
    for slot, region in enumerate(extractor.regions("result.order", player_count)):
        glyph, score = match_glyph(region.crop(image), order_glyphs)
        order = int(glyph.value) if glyph is not None else None
        observations.append(_observation(FieldKind.ORDER, order, score, frame, slot=slot))

    for slot, region in enumerate(extractor.regions("result.power", player_count)):
        power, conf, raw = extractor.read_number(image, region, psm=7)
        if power is not None and power < extractor.min_power:
            power, conf = None, conf * 0.5
        observations.append(_observation(FieldKind.POWER, power, conf, frame, slot=slot, raw=raw))

    falls_key = f"result.falls.{player_count}"
    if context.max_stock and falls_key in extractor.layout:
        for slot, region in enumerate(extractor.layout[falls_key]):
            falls, conf = count_icons(region.crop(image), icon_width=region.height)
            stock = max(0, context.max_stock - falls)
            observations.append(_observation(FieldKind.STOCK, stock, conf, frame, slot=slot))
    return observations


SCENE_EXTRACTION: Dict[SceneKind, SceneExtraction] = {
    SceneKind.RESULT: SceneExtraction(_extract_result, ("result.order.{n}", "result.power.{n}", "result.falls.{n}")),
    SceneKind.GAME_END: SceneExtraction(_no_fields),
    SceneKind.VERSUS: SceneExtraction(_extract_versus, (
        "versus.rule", "versus.time.minutes", "versus.time.seconds",
        "versus.stock.minutes", "versus.stock.count",
        "versus.stamina.minutes", "versus.stamina.count", "versus.stamina.hp",
        "versus.names.{n}",
    )),
    SceneKind.MATCHING: SceneExtraction(_extract_matching),
    SceneKind.READY_TO_FIGHT: SceneExtraction(_no_fields),
    SceneKind.GAME_START: SceneExtraction(_no_fields),
    SceneKind.GAME_PLAYING: SceneExtraction(_extract_game_playing, ("playing.stock.{n}",)),
    SceneKind.DIALOG: SceneExtraction(_no_fields),
    SceneKind.LOADING: SceneExtraction(_no_fields),
}
