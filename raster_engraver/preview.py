from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.collections import LineCollection
from matplotlib.figure import Figure
from shapely.affinity import affine_transform as shapely_affine_transform
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from .bounds import MotionSegment, ToolpathBounds, compute_bounds
from .config import PreviewConfig
from .parser import parse_gcode

Point = Tuple[float, float]

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 40.0


@dataclass(frozen=True)
class ViewAdjustment:
    """Zoom and pan supplied by the host view; applied after fitting."""

    zoom: float = 1.0
    pan_x: float = 0.0
    pan_y: float = 0.0


@dataclass(frozen=True)
class ViewTransform:
    """Maps machine millimetres onto surface pixels with the Y axis flipped."""

    bounds: ToolpathBounds
    width: float
    height: float
    padding: float
    scale: float
    view: ViewAdjustment = ViewAdjustment()

    @property
    def affine_params(self) -> List[float]:
        zoom = self.view.zoom
        a = self.scale * zoom
        e = -self.scale * zoom
        xoff = zoom * (self.padding - self.bounds.min_x * self.scale) + self.view.pan_x
        yoff = zoom * (self.height - self.padding + self.bounds.min_y * self.scale) + self.view.pan_y
        return [a, 0.0, 0.0, e, xoff, yoff]

    def apply(self, x: float, y: float) -> Point:
        surface_x = (x - self.bounds.min_x) * self.scale + self.padding
        surface_y = self.height - ((y - self.bounds.min_y) * self.scale + self.padding)
        return (
            surface_x * self.view.zoom + self.view.pan_x,
            surface_y * self.view.zoom + self.view.pan_y,
        )

    def transform_geometry(self, geometry: BaseGeometry) -> BaseGeometry:
        return shapely_affine_transform(geometry, self.affine_params)


def fit_transform(
    bounds: ToolpathBounds,
    width: float,
    height: float,
    padding: float = DEFAULT_PADDING,
    view: ViewAdjustment | None = None,
) -> ViewTransform:
    available_width = max(width - padding * 2, 1.0)
    available_height = max(height - padding * 2, 1.0)

    scale_x = available_width / bounds.width if bounds.width > 0 else 1.0
    scale_y = available_height / bounds.height if bounds.height > 0 else 1.0

    return ViewTransform(
        bounds=bounds,
        width=float(width),
        height=float(height),
        padding=float(padding),
        scale=min(scale_x, scale_y),
        view=view or ViewAdjustment(),
    )


def render_toolpath(
    segments: Sequence[MotionSegment],
    bounds: ToolpathBounds,
    width: int,
    height: int,
    style: PreviewConfig | None = None,
    view: ViewAdjustment | None = None,
    output_path: str | None = None,
) -> Figure:
    style = style or PreviewConfig(width_px=width, height_px=height)
    transform = fit_transform(bounds, width, height, style.padding_px, view)

    fig = Figure(figsize=(width / style.dpi, height / style.dpi), dpi=style.dpi)
    FigureCanvasAgg(fig)
    ax = fig.add_axes((0.0, 0.0, 1.0, 1.0))
    ax.set_xlim(0, width)
    # Surface +Y points down.
    ax.set_ylim(height, 0)
    ax.set_axis_off()
    ax.set_facecolor("white")

    outline = transform.transform_geometry(
        box(bounds.min_x, bounds.min_y, bounds.max_x, bounds.max_y)
    )
    outline_x, outline_y = outline.exterior.xy
    ax.plot(list(outline_x), list(outline_y), color=style.bounds_color, linewidth=1.0)

    rapid_lines = []
    feed_lines = []
    for segment in segments:
        line = [transform.apply(*segment.start), transform.apply(*segment.end)]
        if segment.is_rapid:
            rapid_lines.append(line)
        else:
            feed_lines.append(line)

    ax.add_collection(
        LineCollection(
            rapid_lines,
            colors=style.rapid_color,
            linewidths=style.rapid_line_width,
            label="rapid",
        )
    )
    ax.add_collection(
        LineCollection(
            feed_lines,
            colors=style.feed_color,
            linewidths=style.feed_line_width,
            capstyle="round",
            label="feed",
        )
    )

    origin_x, origin_y = transform.apply(0.0, 0.0)
    ax.plot([origin_x], [origin_y], marker="o", markersize=6, color=style.origin_color, linestyle="None")
    ax.annotate(
        "Origin (0,0)",
        (origin_x, origin_y),
        xytext=(8, 8),
        textcoords="offset pixels",
        fontsize=9,
        color="#555555",
    )

    if output_path:
        fig.savefig(output_path, dpi=style.dpi, facecolor="white")
        logger.info("Saved toolpath preview to %s", output_path)
    return fig


def preview_gcode(
    text: str | bytes,
    width: int,
    height: int,
    style: PreviewConfig | None = None,
    view: ViewAdjustment | None = None,
    output_path: str | None = None,
) -> Figure:
    result = parse_gcode(text)
    bounds = compute_bounds(result.segments)
    logger.info(
        "%d lines | %d movements | X(%.2f to %.2f) Y(%.2f to %.2f)",
        result.line_count,
        result.movement_count,
        bounds.min_x,
        bounds.max_x,
        bounds.min_y,
        bounds.max_y,
    )
    return render_toolpath(result.segments, bounds, width, height, style, view, output_path)
