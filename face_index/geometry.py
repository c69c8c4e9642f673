"""
Detection Geometry Module

Converts face bounding boxes reported by external detectors into pixel-space
rectangles clamped to the frame. Detector builds disagree on the coordinate
convention (normalized fractions, raw pixels, or a fixed-point integer scale),
so every rectangle is first classified and only then transformed.
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Tuple

from .errors import DegenerateRegion

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 0.15
FIXED_POINT_SCALE = 1_000_000
FIXED_POINT_THRESHOLD = 100_000


class CoordinateConvention(Enum):
    """Coordinate convention of a raw detector rectangle."""

    NORMALIZED = 'normalized'
    FIXED_POINT = 'fixed_point'
    DIRECT_PIXEL = 'direct_pixel'


@dataclass(frozen=True)
class RawRect:
    """Rectangle as reported by a detector, scale unknown."""

    origin_x: float
    origin_y: float
    width: float
    height: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RawRect':
        """Build from a detector payload using originX/originY keys."""
        return cls(
            origin_x=float(data.get('originX', data.get('origin_x', 0.0))),
            origin_y=float(data.get('originY', data.get('origin_y', 0.0))),
            width=float(data['width']),
            height=float(data['height']),
        )

    def values(self) -> Tuple[float, float, float, float]:
        return self.origin_x, self.origin_y, self.width, self.height


@dataclass(frozen=True)
class DetectionRect:
    """Pixel-space rectangle fully inside the frame."""

    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0
    convention: CoordinateConvention = CoordinateConvention.DIRECT_PIXEL

    def crop_box(self) -> Tuple[int, int, int, int]:
        """Integer (x1, y1, x2, y2) box suitable for array slicing."""
        # Rounding keeps x2/y2 on the frame edge despite float error in x + width
        x1 = int(round(self.x))
        y1 = int(round(self.y))
        x2 = int(round(self.x + self.width))
        y2 = int(round(self.y + self.height))
        return x1, y1, x2, y2

    def to_dict(self) -> Dict[str, Any]:
        return {
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
            'confidence': self.confidence,
            'convention': self.convention.value,
        }


def _check_frame(frame_width: int, frame_height: int):
    if frame_width <= 0 or frame_height <= 0:
        raise ValueError(f"Frame dimensions must be positive, got {frame_width}x{frame_height}")


def classify_rect(raw: RawRect, frame_width: int, frame_height: int) -> CoordinateConvention:
    """
    Decide which coordinate convention a raw rectangle uses.

    Rules are applied in order, first match wins:
      1. origin beyond twice the frame: fixed-point if either coordinate
         exceeds 100,000, otherwise direct pixels.
      2. all four values <= 1.0: normalized fractions.
      3. anything else: direct pixels.

    Args:
        raw: Rectangle as reported by the detector
        frame_width: Frame width in pixels
        frame_height: Frame height in pixels

    Returns:
        The classified convention
    """
    _check_frame(frame_width, frame_height)

    if raw.origin_x > 2 * frame_width or raw.origin_y > 2 * frame_height:
        if raw.origin_x > FIXED_POINT_THRESHOLD or raw.origin_y > FIXED_POINT_THRESHOLD:
            return CoordinateConvention.FIXED_POINT
        return CoordinateConvention.DIRECT_PIXEL

    if all(value <= 1.0 for value in raw.values()):
        return CoordinateConvention.NORMALIZED

    return CoordinateConvention.DIRECT_PIXEL


def to_pixel_space(raw: RawRect, convention: CoordinateConvention,
                   frame_width: int, frame_height: int) -> Tuple[float, float, float, float]:
    """Transform a raw rectangle into (x, y, width, height) pixels."""
    if convention is CoordinateConvention.NORMALIZED:
        return (raw.origin_x * frame_width,
                raw.origin_y * frame_height,
                raw.width * frame_width,
                raw.height * frame_height)

    if convention is CoordinateConvention.FIXED_POINT:
        return ((raw.origin_x / FIXED_POINT_SCALE) * frame_width,
                (raw.origin_y / FIXED_POINT_SCALE) * frame_height,
                (raw.width / FIXED_POINT_SCALE) * frame_width,
                (raw.height / FIXED_POINT_SCALE) * frame_height)

    return raw.origin_x, raw.origin_y, raw.width, raw.height


def pad_rect(x: float, y: float, width: float, height: float,
             padding_fraction: float) -> Tuple[float, float, float, float]:
    """Expand a rectangle symmetrically by padding_fraction on every side."""
    if padding_fraction < 0:
        raise ValueError(f"padding_fraction must be non-negative, got {padding_fraction}")

    pad_w = width * padding_fraction
    pad_h = height * padding_fraction
    return (x - pad_w,
            y - pad_h,
            width * (1 + 2 * padding_fraction),
            height * (1 + 2 * padding_fraction))


def clamp_rect(x: float, y: float, width: float, height: float,
               frame_width: int, frame_height: int) -> Tuple[float, float, float, float]:
    """Clamp a rectangle into the frame. May yield a non-positive size."""
    x = max(0.0, x)
    y = max(0.0, y)
    width = min(width, frame_width - x)
    height = min(height, frame_height - y)
    return x, y, width, height


def normalize_rect(raw: RawRect, frame_width: int, frame_height: int,
                   padding_fraction: float = DEFAULT_PADDING,
                   confidence: float = 1.0) -> DetectionRect:
    """
    Convert a detector rectangle into a padded, clamped pixel rectangle.

    Args:
        raw: Rectangle as reported by the detector
        frame_width: Frame width in pixels
        frame_height: Frame height in pixels
        padding_fraction: Symmetric padding added on each side
        confidence: Detector confidence, carried through unchanged

    Returns:
        DetectionRect inside [0, frame_width] x [0, frame_height]

    Raises:
        DegenerateRegion: If no usable rectangle remains
    """
    _check_frame(frame_width, frame_height)

    if not all(math.isfinite(value) for value in raw.values()):
        raise DegenerateRegion(f"Non-finite detector rectangle: {raw}")

    convention = classify_rect(raw, frame_width, frame_height)
    x, y, width, height = to_pixel_space(raw, convention, frame_width, frame_height)
    x, y, width, height = pad_rect(x, y, width, height, padding_fraction)
    x, y, width, height = clamp_rect(x, y, width, height, frame_width, frame_height)

    if width <= 0 or height <= 0:
        raise DegenerateRegion(
            f"Rectangle {raw} ({convention.value}) has no area inside "
            f"{frame_width}x{frame_height} frame"
        )

    logger.debug(f"Normalized {convention.value} rect to ({x:.1f}, {y:.1f}, {width:.1f}, {height:.1f})")

    return DetectionRect(
        x=x,
        y=y,
        width=width,
        height=height,
        confidence=confidence,
        convention=convention,
    )
