from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from shapely.geometry import MultiPoint

Point = Tuple[float, float]


@dataclass(frozen=True)
class MotionSegment:
    start_x: float
    start_y: float
    end_x: float
    end_y: float
    is_rapid: bool = False

    @property
    def start(self) -> Point:
        return (self.start_x, self.start_y)

    @property
    def end(self) -> Point:
        return (self.end_x, self.end_y)


@dataclass(frozen=True)
class ToolpathBounds:
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


# Returned for an empty segment list.
DEFAULT_BOUNDS = ToolpathBounds(min_x=0.0, max_x=100.0, min_y=0.0, max_y=100.0)


def compute_bounds(segments: Iterable[MotionSegment]) -> ToolpathBounds:
    points = []
    for segment in segments:
        points.append(segment.start)
        points.append(segment.end)
    if not points:
        return DEFAULT_BOUNDS
    min_x, min_y, max_x, max_y = MultiPoint(points).bounds
    return ToolpathBounds(min_x=min_x, max_x=max_x, min_y=min_y, max_y=max_y)
