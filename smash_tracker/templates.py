"""
Reference template and vocabulary bundle.

A bundle is a directory with a manifest.json describing the scene templates,
the glyph templates used by field extraction, the vocabularies and the
layout regions. Everything is expressed at the canonical 640x360 resolution;
bundles authored at another reference size are rescaled on load.

manifest.json:

    {
        "version": "1.0",
        "reference_size": [640, 360],
        "scenes": [
            {"name": "ready_to_fight", "scene": "ready_to_fight",
             "image": "ready_to_fight.png", "region": [0, 90, 640, 180],
             "threshold": 0.95},
            {"name": "matching_4", "scene": "matching", "image": "with_4.png",
             "threshold": 0.92, "tags": {"player_count": 4}}
        ],
        "glyphs": [
            {"name": "rule_stock", "field": "rule", "value": "Stock",
             "image": "rule_stock.png", "color": true, "threshold": 0.985}
        ],
        "vocabularies": {"characters": "characters.txt"},
        "exceptions": {"DRMARI0": "DR. MARIO"},
        "layout": {"order.2": [[205, 4, 80, 80], [470, 4, 80, 80]]}
    }

Template PNGs with an alpha channel get a mask from it. The loaded
AssetBundle is immutable and shared by every pipeline stage.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from pydantic import BaseModel, Field, ValidationError

from smash_tracker.errors import AssetError, ExtractionError
from smash_tracker.frames import CANONICAL_HEIGHT, CANONICAL_WIDTH
from smash_tracker.record import FieldKind


logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.93

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "data")
DEFAULT_CHARACTER_LIST = os.path.join(DATA_DIR, "characters.txt")


class SceneKind(Enum):
    """
    Recognizable match phases, in classification priority order.

    Earlier members win score ties, so screens that contain another screen's
    features (the result screen still shows "GAME SET" remnants, the versus
    screen shows the matchmaking banner) are declared first.
    """
    RESULT = "result"
    GAME_END = "game_end"
    VERSUS = "versus"
    MATCHING = "matching"
    READY_TO_FIGHT = "ready_to_fight"
    GAME_START = "game_start"
    GAME_PLAYING = "game_playing"
    DIALOG = "dialog"
    LOADING = "loading"

    @property
    def priority(self) -> int:
        return _SCENE_ORDER.index(self)


_SCENE_ORDER = list(SceneKind)


class Region(NamedTuple):
    """Axis-aligned rectangle at canonical resolution."""
    x: int
    y: int
    width: int
    height: int

    def crop(self, image: np.ndarray) -> np.ndarray:
        h, w = image.shape[:2]
        if (self.width <= 0 or self.height <= 0 or self.x < 0 or self.y < 0
                or self.x + self.width > w or self.y + self.height > h):
            raise ExtractionError(f"Region {tuple(self)} cannot be sampled from a {w}x{h} frame")
        return image[self.y:self.y + self.height, self.x:self.x + self.width]

    def scaled(self, factor: float) -> "Region":
        return Region(int(round(self.x * factor)), int(round(self.y * factor)),
                      max(1, int(round(self.width * factor))),
                      max(1, int(round(self.height * factor))))


FULL_FRAME = Region(0, 0, CANONICAL_WIDTH, CANONICAL_HEIGHT)


@dataclass(frozen=True, eq=False)
class SceneTemplate:
    """A named reference image for one recognizable phase."""
    name: str
    scene: SceneKind
    image: np.ndarray
    mask: Optional[np.ndarray] = None
    region: Region = FULL_FRAME
    threshold: float = DEFAULT_THRESHOLD
    color: bool = False
    tags: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    priority: int = 0

    def __repr__(self):
        h, w = self.image.shape[:2]
        return (f"SceneTemplate({self.name!r}, scene={self.scene.value}, {w}x{h}, "
                f"threshold={self.threshold}, mask={self.mask is not None})")


@dataclass(frozen=True, eq=False)
class GlyphTemplate:
    """A reference image for one value of one field (a rule badge, a rank numeral)."""
    name: str
    field_kind: FieldKind
    value: Any
    image: np.ndarray
    mask: Optional[np.ndarray] = None
    threshold: float = DEFAULT_THRESHOLD
    color: bool = False

    def __repr__(self):
        return f"GlyphTemplate({self.name!r}, {self.field_kind.value}={self.value!r})"


@dataclass(frozen=True, eq=False)
class AssetBundle:
    """
    Read-only handle to every template, vocabulary and layout region.

    Constructed once at start-up and shared by reference; there is no
    mutation path after load.
    """
    version: str
    scenes: Tuple[SceneTemplate, ...]
    glyphs: Tuple[GlyphTemplate, ...] = ()
    vocabularies: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    exceptions: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    layout: Mapping[str, Tuple[Region, ...]] = field(default_factory=lambda: MappingProxyType({}))

    def vocabulary(self, name: str) -> Tuple[str, ...]:
        try:
            return self.vocabularies[name]
        except KeyError:
            raise AssetError(f"Asset bundle {self.version} has no vocabulary {name!r}") from None

    def glyphs_for(self, field_kind: FieldKind) -> Tuple[GlyphTemplate, ...]:
        return tuple(g for g in self.glyphs if g.field_kind == field_kind)

    def scene_names(self) -> List[str]:
        return [t.name for t in self.scenes]


def build_bundle(scenes: Iterable[SceneTemplate], glyphs: Iterable[GlyphTemplate] = (),
                 vocabularies: Optional[Mapping[str, Sequence[str]]] = None,
                 exceptions: Optional[Mapping[str, str]] = None,
                 layout: Optional[Mapping[str, Sequence[Region]]] = None,
                 version: str = "dev") -> AssetBundle:
    """
    Assemble an AssetBundle, ordering scene templates by classification priority.

    Templates are sorted by SceneKind order, then by the order given, and
    their priority field is set to the resulting position.
    """
    indexed = list(enumerate(scenes))
    indexed.sort(key=lambda item: (item[1].scene.priority, item[0]))
    ordered = []
    for priority, (_, template) in enumerate(indexed):
        ordered.append(SceneTemplate(
            name=template.name, scene=template.scene, image=template.image, mask=template.mask,
            region=template.region, threshold=template.threshold, color=template.color,
            tags=MappingProxyType(dict(template.tags)), priority=priority,
        ))

    names = [t.name for t in ordered]
    duplicates = {n for n in names if names.count(n) > 1}
    if duplicates:
        raise AssetError(f"Duplicate scene template names: {sorted(duplicates)}")

    vocabularies = {name: tuple(words) for name, words in (vocabularies or {}).items()}
    layout = {name: tuple(Region(*r) for r in regions) for name, regions in (layout or {}).items()}
    return AssetBundle(
        version=version,
        scenes=tuple(ordered),
        glyphs=tuple(glyphs),
        vocabularies=MappingProxyType(vocabularies),
        exceptions=MappingProxyType(dict(exceptions or {})),
        layout=MappingProxyType(layout),
    )


def load_template_with_mask(template_path: str, use_color: bool = False):
    """
    Load template image and create mask from alpha channel if present.

    Args:
        template_path: Path to template image
        use_color: If True, keep BGR color channels; if False, convert to grayscale

    Returns:
        tuple: (template, mask) where template is BGR or grayscale, mask is None if no alpha
    """
    template = cv2.imread(str(template_path), cv2.IMREAD_UNCHANGED)
    if template is None:
        raise AssetError(f"Could not load template: {template_path}")

    mask = None
    if template.ndim == 3 and template.shape[2] == 4:
        alpha = template[:, :, 3]
        mask = (alpha > 127).astype(np.uint8) * 255
        template_bgr = template[:, :, :3]
    elif template.ndim == 2:
        template_bgr = cv2.cvtColor(template, cv2.COLOR_GRAY2BGR)
    else:
        template_bgr = template

    if use_color:
        return np.ascontiguousarray(template_bgr), mask
    return cv2.cvtColor(template_bgr, cv2.COLOR_BGR2GRAY), mask


def scale_template_and_mask(template, mask, scale_factor):
    """Scale template and mask by the given factor. Works with both color and grayscale."""
    h, w = template.shape[:2]
    new_w = max(1, int(w * scale_factor))
    new_h = max(1, int(h * scale_factor))

    template_scaled = cv2.resize(template, (new_w, new_h), interpolation=cv2.INTER_AREA)
    mask_scaled = None
    if mask is not None:
        mask_scaled = cv2.resize(mask, (new_w, new_h), interpolation=cv2.INTER_NEAREST)

    return template_scaled, mask_scaled


def load_word_list(path: Union[str, Path]) -> Tuple[str, ...]:
    """Load a vocabulary file, one entry per line."""
    if not os.path.exists(path):
        raise AssetError(f"Vocabulary file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        return tuple(line.strip() for line in f if line.strip() and not line.startswith('#'))


# Manifest schema

class _TemplateEntry(BaseModel):
    name: str
    image: str
    mask: Optional[str] = Field(default=None, description="Separate mask PNG (alpha is used otherwise)")
    region: Optional[Tuple[int, int, int, int]] = None
    threshold: float = Field(default=DEFAULT_THRESHOLD, gt=0, le=1)
    color: bool = False


class _SceneEntry(_TemplateEntry):
    scene: SceneKind
    tags: Dict[str, Any] = Field(default_factory=dict)


class _GlyphEntry(_TemplateEntry):
    field: FieldKind
    value: Union[int, str]


class _Manifest(BaseModel):
    version: str
    reference_size: Tuple[int, int] = (CANONICAL_WIDTH, CANONICAL_HEIGHT)
    scenes: List[_SceneEntry]
    glyphs: List[_GlyphEntry] = Field(default_factory=list)
    vocabularies: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    exceptions: Dict[str, str] = Field(default_factory=dict)
    layout: Dict[str, List[Tuple[int, int, int, int]]] = Field(default_factory=dict)


def _load_entry_image(bundle_dir: Path, entry: _TemplateEntry, scale: float):
    img, mask = load_template_with_mask(str(bundle_dir / entry.image), use_color=entry.color)
    if entry.mask:
        mask_img = cv2.imread(str(bundle_dir / entry.mask), cv2.IMREAD_GRAYSCALE)
        if mask_img is None:
            raise AssetError(f"Could not load mask: {bundle_dir / entry.mask}")
        if mask_img.shape[:2] != img.shape[:2]:
            raise AssetError(f"Mask {entry.mask} does not match template {entry.image} size")
        mask = (mask_img > 127).astype(np.uint8) * 255
    if scale != 1.0:
        img, mask = scale_template_and_mask(img, mask, scale)
    return img, mask


def load_asset_bundle(bundle_dir: Union[str, Path]) -> AssetBundle:
    """
    Load the template/vocabulary bundle described by bundle_dir/manifest.json.

    Args:
        bundle_dir: Directory containing manifest.json and the template images

    Returns:
        AssetBundle: immutable handle shared by matcher and extractor
    """
    bundle_dir = Path(bundle_dir)
    manifest_path = bundle_dir / "manifest.json"
    if not manifest_path.exists():
        raise AssetError(f"Asset manifest not found: {manifest_path}")

    try:
        manifest = _Manifest.model_validate(json.loads(manifest_path.read_text(encoding="utf-8")))
    except (ValueError, ValidationError) as e:
        raise AssetError(f"Invalid asset manifest {manifest_path}: {e}") from e

    ref_w, ref_h = manifest.reference_size
    scale = CANONICAL_WIDTH / ref_w
    if abs(ref_h * scale - CANONICAL_HEIGHT) > 1:
        raise AssetError(f"Reference size {ref_w}x{ref_h} is not 16:9")
    if scale != 1.0:
        logger.info(f"Scaling templates: {ref_w}x{ref_h} -> {CANONICAL_WIDTH}x{CANONICAL_HEIGHT} "
                    f"(scale={scale:.3f})")

    logger.info(f"Loading asset bundle {manifest.version} from: {bundle_dir}")
    scenes = []
    for entry in manifest.scenes:
        img, mask = _load_entry_image(bundle_dir, entry, scale)
        region = Region(*entry.region).scaled(scale) if entry.region else FULL_FRAME
        scenes.append(SceneTemplate(
            name=entry.name, scene=entry.scene, image=img, mask=mask, region=region,
            threshold=entry.threshold, color=entry.color, tags=entry.tags,
        ))
        h, w = img.shape[:2]
        logger.debug(f"  Loaded {entry.name}: {w}x{h} (mask={mask is not None}, "
                     f"{'COLOR' if entry.color else 'grayscale'})")

    glyphs = []
    for entry in manifest.glyphs:
        img, mask = _load_entry_image(bundle_dir, entry, scale)
        glyphs.append(GlyphTemplate(
            name=entry.name, field_kind=entry.field, value=entry.value, image=img, mask=mask,
            threshold=entry.threshold, color=entry.color,
        ))

    vocabularies = {}
    for name, source in manifest.vocabularies.items():
        vocabularies[name] = tuple(source) if isinstance(source, list) else load_word_list(bundle_dir / source)
    if "characters" not in vocabularies:
        vocabularies["characters"] = load_word_list(DEFAULT_CHARACTER_LIST)

    layout = {
        name: [Region(*r).scaled(scale) for r in regions]
        for name, regions in manifest.layout.items()
    }

    bundle = build_bundle(scenes, glyphs, vocabularies, manifest.exceptions, layout,
                          version=manifest.version)
    logger.info(f"Loaded {len(bundle.scenes)} scene templates, {len(bundle.glyphs)} glyphs, "
                f"{sum(len(v) for v in bundle.vocabularies.values())} vocabulary entries")
    return bundle
