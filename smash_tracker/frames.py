"""
Frame model and normalization to the canonical working resolution.

Every stage after capture works on 640x360 BGR frames. Templates, layout
regions and thresholds are all expressed at that resolution.
"""

import dataclasses
import time
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from smash_tracker.errors import InvalidFrame


CANONICAL_WIDTH = 640
CANONICAL_HEIGHT = 360

# Edge lines at or below this intensity count as capture border artifacts
BORDER_LEVEL = 16


@dataclass(frozen=True, eq=False)
class Frame:
    """
    A timestamped raster image plus its source identity.

    Attributes:
        image: BGR (or raw, before normalization) uint8 array
        timestamp: UNIX timestamp when the frame was captured
        source: Identity of the frame source (window title, device, file)
        index: Monotonically increasing frame counter from the source
    """

    image: np.ndarray
    timestamp: float
    source: str = ""
    index: int = 0

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def with_image(self, image: np.ndarray) -> "Frame":
        return dataclasses.replace(self, image=image)

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the full image."""
        shape = "x".join(str(d) for d in self.image.shape) if hasattr(self.image, "shape") else "?"
        return (
            f"Frame(index={self.index}, "
            f"timestamp={self.timestamp:.3f}, "
            f"source={self.source!r}, shape={shape})"
        )


def placeholder_frame(source: str = "", timestamp: Optional[float] = None) -> Frame:
    """Black canonical frame, used when a source has not produced anything yet."""
    image = np.zeros((CANONICAL_HEIGHT, CANONICAL_WIDTH, 3), dtype=np.uint8)
    return Frame(image=image, timestamp=time.time() if timestamp is None else timestamp,
                 source=source, index=-1)


def is_canonical(image: np.ndarray) -> bool:
    return (
        isinstance(image, np.ndarray)
        and image.dtype == np.uint8
        and image.shape == (CANONICAL_HEIGHT, CANONICAL_WIDTH, 3)
    )


def _to_bgr(image) -> np.ndarray:
    """Validate the raw layout and convert it to 3-channel BGR."""
    if not isinstance(image, np.ndarray):
        raise InvalidFrame(f"Frame image must be a numpy array, got {type(image).__name__}")
    if image.ndim not in (2, 3):
        raise InvalidFrame(f"Unsupported frame layout with {image.ndim} dimensions")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidFrame(f"Frame has zero area: {image.shape}")
    if image.dtype != np.uint8:
        raise InvalidFrame(f"Unsupported frame dtype: {image.dtype}")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)

    channels = image.shape[2]
    if channels == 3:
        return image
    if channels == 1:
        return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGR)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    raise InvalidFrame(f"Unsupported channel count: {channels}")


def _is_dark(line: np.ndarray) -> bool:
    return int(line.max()) <= BORDER_LEVEL


def _trim_border(image: np.ndarray) -> np.ndarray:
    """
    Drop 1px dark edge lines that some capture paths add around the content.

    Only applied when the frame is not 16:9 and trimming makes it exactly
    16:9, so genuinely dark content at the edge of a 16:9 frame is kept.
    """
    h, w = image.shape[:2]
    if w * 9 == h * 16:
        return image

    top = 1 if _is_dark(image[0]) else 0
    bottom = 1 if _is_dark(image[-1]) else 0
    left = 1 if _is_dark(image[:, 0]) else 0
    right = 1 if _is_dark(image[:, -1]) else 0

    trimmed_h = h - top - bottom
    trimmed_w = w - left - right
    if trimmed_h > 0 and trimmed_w > 0 and trimmed_w * 9 == trimmed_h * 16:
        return image[top:h - bottom, left:w - right]
    return image


def normalize_image(image) -> np.ndarray:
    """
    Scale an image to 640x360 BGR, preserving aspect ratio with black padding.

    Raises:
        InvalidFrame: zero area, unsupported dtype or channel layout
    """
    bgr = _to_bgr(image)
    if is_canonical(bgr):
        return bgr

    bgr = _trim_border(bgr)
    h, w = bgr.shape[:2]

    scale = min(CANONICAL_WIDTH / w, CANONICAL_HEIGHT / h)
    new_w = min(CANONICAL_WIDTH, max(1, int(round(w * scale))))
    new_h = min(CANONICAL_HEIGHT, max(1, int(round(h * scale))))

    # INTER_AREA for downscaling, linear when a small source is enlarged
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_LINEAR
    resized = cv2.resize(bgr, (new_w, new_h), interpolation=interpolation)

    pad_x = CANONICAL_WIDTH - new_w
    pad_y = CANONICAL_HEIGHT - new_h
    if pad_x == 0 and pad_y == 0:
        return resized

    left = pad_x // 2
    top = pad_y // 2
    return cv2.copyMakeBorder(resized, top, pad_y - top, left, pad_x - left,
                              cv2.BORDER_CONSTANT, value=(0, 0, 0))


def normalize(frame: Frame) -> Frame:
    """Return the frame at canonical resolution. Canonical frames pass through untouched."""
    if is_canonical(frame.image):
        return frame
    return frame.with_image(normalize_image(frame.image))
