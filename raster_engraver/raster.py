"""Image decoding and grayscale-to-power mapping.

Images are decoded with Pillow, flattened to RGB (alpha is dropped) and
reduced to 8-bit luminance with Pillow's ITU-R 601-2 ``L`` conversion.
16-bit grayscale images are scaled down to 8 bits first.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from typing import List, Tuple

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

POWER_SCALE_MAX = 1000


class DecodeError(ValueError):
    """Raised when image bytes cannot be interpreted as a raster image."""


@dataclass(frozen=True)
class LuminanceGrid:
    """Row-major 0-255 gray values; row 0 is the topmost image row."""

    width: int
    height: int
    rows: Tuple[bytes, ...]

    def __post_init__(self) -> None:
        if len(self.rows) != self.height:
            raise ValueError(f"Expected {self.height} rows, got {len(self.rows)}")
        for index, row in enumerate(self.rows):
            if len(row) != self.width:
                raise ValueError(f"Row {index} has {len(row)} values, expected {self.width}")

    def gray_at(self, x: int, y: int) -> int:
        return self.rows[y][x]

    @classmethod
    def from_rows(cls, rows: List[List[int]]) -> "LuminanceGrid":
        packed = tuple(bytes(max(0, min(255, int(v))) for v in row) for row in rows)
        width = len(packed[0]) if packed else 0
        return cls(width=width, height=len(packed), rows=packed)


def _to_luminance(image: Image.Image) -> Image.Image:
    if image.mode == "I" or image.mode.startswith("I;16"):
        # 16-bit samples, rescaled to 8 bits before the L conversion clamps them.
        return image.convert("I").point(lambda v: v * (1 / 256)).convert("L")
    return image.convert("RGB").convert("L")


def sample_image(data: bytes) -> LuminanceGrid:
    if not data:
        raise DecodeError("Image data is empty")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            gray = _to_luminance(image)
    except (UnidentifiedImageError, OSError, EOFError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Failed to decode image: {exc}") from exc

    width, height = gray.size
    if width == 0 or height == 0:
        raise DecodeError("Decoded image has no pixels")

    raw = gray.tobytes()
    rows = tuple(raw[y * width:(y + 1) * width] for y in range(height))
    logger.debug("Sampled %dx%d luminance grid", width, height)
    return LuminanceGrid(width=width, height=height, rows=rows)


def power_for_gray(gray: int, max_power_percent: int, invert: bool = False) -> int:
    """Map a gray value to a power unit on the 0-1000 scale.

    Black maps to exactly ``max_power_percent * 10`` and white to 0; with
    ``invert`` the mapping is mirrored.
    """
    gray = max(0, min(255, int(gray)))
    max_percent = max(0, min(100, int(max_power_percent)))
    ceiling = max_percent * 10
    darkness = gray if invert else 255 - gray
    power = int(math.floor(darkness / 255.0 * ceiling + 0.5))
    return max(0, min(ceiling, power))


def power_row(grid: LuminanceGrid, row: int, max_power_percent: int, invert: bool = False) -> List[int]:
    return [power_for_gray(value, max_power_percent, invert) for value in grid.rows[row]]
