from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Sequence

from .raster import LuminanceGrid, power_row, sample_image

logger = logging.getLogger(__name__)

PostPass = Callable[[List[str]], List[str]]

_POWER_MOVE_RE = re.compile(r"^G1 X(-?\d+\.\d+)S(\d+)$")


@dataclass(frozen=True)
class PowerSetting:
    max_power_percent: int
    feed_rate_mm_per_min: int
    step_size_mm: float
    line_step_mm: float | None = None
    invert: bool = False

    def __post_init__(self) -> None:
        if self.feed_rate_mm_per_min <= 0:
            raise ValueError(f"Feed rate must be positive, got {self.feed_rate_mm_per_min}")
        if self.step_size_mm <= 0:
            raise ValueError(f"Step size must be positive, got {self.step_size_mm}")
        if self.line_step_mm is not None and self.line_step_mm <= 0:
            raise ValueError(f"Line step must be positive, got {self.line_step_mm}")

    @property
    def row_pitch_mm(self) -> float:
        return self.line_step_mm if self.line_step_mm is not None else self.step_size_mm

    @classmethod
    def for_physical_size(
        cls,
        grid: LuminanceGrid,
        width_mm: float,
        height_mm: float,
        max_power_percent: int,
        feed_rate_mm_per_min: int,
        invert: bool = False,
    ) -> "PowerSetting":
        if grid.width == 0 or grid.height == 0:
            raise ValueError("Cannot derive step size from an empty grid")
        return cls(
            max_power_percent=max_power_percent,
            feed_rate_mm_per_min=feed_rate_mm_per_min,
            step_size_mm=width_mm / grid.width,
            line_step_mm=height_mm / grid.height,
            invert=invert,
        )


class RasterGcodeCompiler:
    """Emits a serpentine raster program for a luminance grid.

    The head is placed on the top image row with a ``G53`` machine move, then
    the scan body runs in relative mode with one ``G1`` move per pixel.
    """

    def __init__(self, setting: PowerSetting) -> None:
        self.setting = setting
        self._gcode: List[str] = []
        self._distance: float = 0.0
        self._elapsed_time: float = 0.0

    def _emit(self, line: str) -> None:
        self._gcode.append(line)

    def _accumulate_motion(self, distance: float) -> None:
        feedrate = self.setting.feed_rate_mm_per_min
        if distance <= 0 or feedrate <= 0:
            return
        self._distance += distance
        self._elapsed_time += distance / (feedrate / 60.0)

    def emit_comment(self, text: str) -> None:
        self._emit(f"; {text}")

    def emit_header(self, grid: LuminanceGrid) -> None:
        setting = self.setting
        width_mm = grid.width * setting.step_size_mm
        height_mm = grid.height * setting.row_pitch_mm
        self.emit_comment("Raster engraving program")
        self.emit_comment(f"Image size: {grid.width}x{grid.height} pixels")
        self.emit_comment(f"Physical size: {width_mm:.2f}mm x {height_mm:.2f}mm")
        self.emit_comment(
            f"Max power: {setting.max_power_percent}%, feed rate: {setting.feed_rate_mm_per_min}mm/min"
        )

    def emit_preamble(self, grid: LuminanceGrid, start_x: float, start_y: float) -> None:
        line_step = self.setting.row_pitch_mm
        # Image row 0 is the furthest +Y row in machine space.
        start_y_top = start_y + grid.height * line_step - line_step
        self._emit("G21 ; Set units to millimeters")
        self._emit("G90 ; Absolute positioning")
        self._emit(f"F{int(round(self.setting.feed_rate_mm_per_min))} ; Set feed rate")
        self._emit(f"G53 G0 X{start_x:.3f} Y{start_y_top:.3f} ; Move to start (machine coordinates)")
        self._emit("M4 ; Enable laser (dynamic power mode)")
        self._emit("G91 ; Relative positioning")

    def emit_row(self, powers: Sequence[int], left_to_right: bool) -> None:
        step = self.setting.step_size_mm
        delta = step if left_to_right else -step
        ordered = powers if left_to_right else list(reversed(powers))
        for power in ordered:
            self._emit(f"G1 X{delta:.3f}S{power}")
            self._accumulate_motion(step)

    def emit_row_advance(self) -> None:
        line_step = self.setting.row_pitch_mm
        self._emit(f"G1 Y{-line_step:.3f}")
        self._accumulate_motion(line_step)

    def emit_footer(self) -> None:
        self._emit("M5 ; Disable laser")
        self._emit("G90 ; Return to absolute positioning")

    def reset(self) -> None:
        self._gcode = []
        self._distance = 0.0
        self._elapsed_time = 0.0

    def compile(self, grid: LuminanceGrid, start_x: float = 0.0, start_y: float = 0.0) -> List[str]:
        setting = self.setting
        self.reset()
        self.emit_header(grid)
        self.emit_preamble(grid, start_x, start_y)

        left_to_right = True
        for y in range(grid.height):
            self.emit_comment(f"Row {y}")
            self.emit_row(power_row(grid, y, setting.max_power_percent, setting.invert), left_to_right)
            if y < grid.height - 1:
                self.emit_row_advance()
            left_to_right = not left_to_right

        self.emit_footer()
        return self.generate()

    def generate(self) -> List[str]:
        return list(self._gcode)

    @property
    def distance_mm(self) -> float:
        return self._distance

    @property
    def elapsed_time_seconds(self) -> float:
        return self._elapsed_time

    def formatted_elapsed_time(self) -> str:
        return format_duration(self._elapsed_time)


def identity_pass(lines: List[str]) -> List[str]:
    return list(lines)


def coalesce_power_runs(lines: List[str]) -> List[str]:
    """Merge consecutive same-direction ``G1 X..S..`` moves with equal power."""
    merged: List[str] = []
    run_total = 0.0
    run_power: str | None = None
    run_negative = False

    def flush() -> None:
        nonlocal run_power
        if run_power is not None:
            merged.append(f"G1 X{run_total:.3f}S{run_power}")
            run_power = None

    for line in lines:
        match = _POWER_MOVE_RE.match(line)
        if match is None:
            flush()
            merged.append(line)
            continue
        delta = float(match.group(1))
        power = match.group(2)
        negative = match.group(1).startswith("-")
        if run_power == power and run_negative == negative:
            run_total += delta
            continue
        flush()
        run_power = power
        run_negative = negative
        run_total = delta
    flush()
    return merged


def _finish(lines: List[str], post_pass: PostPass | None) -> str:
    processed = (post_pass or identity_pass)(lines)
    return "\n".join(processed) + "\n"


def compile_grid(
    grid: LuminanceGrid,
    setting: PowerSetting,
    start_x: float = 0.0,
    start_y: float = 0.0,
    post_pass: PostPass | None = None,
) -> str:
    compiler = RasterGcodeCompiler(setting)
    return _finish(compiler.compile(grid, start_x, start_y), post_pass)


def compile_image(
    data: bytes,
    *,
    width_mm: float,
    height_mm: float,
    max_power_percent: int,
    feed_rate: int,
    start_x: float = 0.0,
    start_y: float = 0.0,
    invert: bool = False,
    post_pass: PostPass | None = None,
) -> str:
    grid = sample_image(data)
    setting = PowerSetting.for_physical_size(
        grid,
        width_mm,
        height_mm,
        max_power_percent=max_power_percent,
        feed_rate_mm_per_min=feed_rate,
        invert=invert,
    )
    logger.info(
        "Converting %dx%d image, step X=%.4fmm Y=%.4fmm",
        grid.width,
        grid.height,
        setting.step_size_mm,
        setting.row_pitch_mm,
    )
    return compile_grid(grid, setting, start_x, start_y, post_pass)


def engraving_distance(pixel_width: int, pixel_height: int, width_mm: float, height_mm: float) -> float:
    """Total head travel of a serpentine scan: every row plus the row advances."""
    if pixel_width <= 0 or pixel_height <= 0:
        return 0.0
    step_y = height_mm / pixel_height
    return width_mm * pixel_height + (pixel_height - 1) * step_y


def estimate_engraving_time(distance_mm: float, feed_rate: float) -> float:
    if distance_mm <= 0 or feed_rate <= 0:
        return 0.0
    return distance_mm / (feed_rate / 60.0)


def format_duration(seconds: float) -> str:
    total_seconds = max(0.0, float(seconds))
    if total_seconds < 60.0:
        return f"{total_seconds:.1f}s"
    rounded = int(round(total_seconds))
    hours, remainder = divmod(rounded, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"
