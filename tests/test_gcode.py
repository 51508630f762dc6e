"""Tests for the raster G-code compiler.

Covers the emitted dialect (units, positioning, laser modes, power tokens),
the serpentine scan, start placement and the optional post-passes.
"""

from __future__ import annotations

import io
import re

import pytest
from PIL import Image

from raster_engraver.gcode import (
    PowerSetting,
    RasterGcodeCompiler,
    coalesce_power_runs,
    compile_grid,
    compile_image,
    engraving_distance,
    estimate_engraving_time,
    format_duration,
    identity_pass,
)
from raster_engraver.parser import parse_gcode
from raster_engraver.raster import DecodeError, LuminanceGrid

_S_TOKEN_RE = re.compile(r"S(\d+)")


def _compile(data: bytes, size_mm: float, **kwargs) -> str:
    options = dict(start_x=0.0, start_y=0.0, max_power_percent=100, feed_rate=1000)
    options.update(kwargs)
    return compile_image(data, width_mm=size_mm, height_mm=size_mm, **options)


def _lines(gcode: str):
    return gcode.splitlines()


# ---------------------------------------------------------------------------
# Program structure
# ---------------------------------------------------------------------------


class TestProgramStructure:
    def test_black_square_contains_expected_tokens(self, solid_png) -> None:
        gcode = _compile(solid_png(10, (0, 0, 0)), 10.0)
        for token in ("G21", "G90", "G91", "G53", "M4", "M5", "S1000", "F1000"):
            assert token in gcode
        assert re.search(r"G1 X[\d.-]+S1000", gcode)

    def test_power_token_has_no_separating_space(self, solid_png) -> None:
        gcode = _compile(solid_png(2, (0, 0, 0)), 2.0)
        assert "G1 X1.000S1000" in _lines(gcode)
        assert "G1 X-1.000S1000" in _lines(gcode)
        assert " S1000" not in gcode

    def test_single_m4_before_and_single_m5_after_all_feed_moves(self, solid_png) -> None:
        lines = _lines(_compile(solid_png(6, (40, 40, 40)), 6.0))
        assert sum("M4" in line for line in lines) == 1
        assert sum("M5" in line for line in lines) == 1
        m4_index = next(i for i, line in enumerate(lines) if "M4" in line)
        m5_index = next(i for i, line in enumerate(lines) if "M5" in line)
        g1_indices = [i for i, line in enumerate(lines) if line.startswith("G1")]
        assert g1_indices
        assert m4_index < min(g1_indices)
        assert m5_index > max(g1_indices)

    def test_preamble_order(self, solid_png) -> None:
        lines = [line.split(";")[0].strip() for line in _lines(_compile(solid_png(2, (0, 0, 0)), 2.0))]
        commands = [line for line in lines if line]
        assert commands[:6] == [
            "G21",
            "G90",
            "F1000",
            "G53 G0 X0.000 Y1.000",
            "M4",
            "G91",
        ]
        assert commands[-2:] == ["M5", "G90"]

    def test_program_ends_with_newline(self, solid_png) -> None:
        assert _compile(solid_png(2, (0, 0, 0)), 2.0).endswith("\n")

    def test_coordinates_have_three_decimals(self, solid_png) -> None:
        gcode = _compile(solid_png(3, (0, 0, 0)), 1.0)
        for match in re.finditer(r"[XY](-?\d+\.\d+)", gcode):
            assert len(match.group(1).split(".")[1]) == 3


# ---------------------------------------------------------------------------
# Power values
# ---------------------------------------------------------------------------


class TestPowerValues:
    @pytest.mark.parametrize("size", [1, 3, 8])
    def test_black_emits_max_power_only(self, solid_png, size: int) -> None:
        gcode = _compile(solid_png(size, (0, 0, 0)), float(size), max_power_percent=70)
        tokens = _S_TOKEN_RE.findall(gcode)
        assert tokens
        assert set(tokens) == {"700"}

    def test_white_emits_zero_power_only(self, solid_png) -> None:
        gcode = _compile(solid_png(5, (255, 255, 255)), 5.0)
        assert set(_S_TOKEN_RE.findall(gcode)) == {"0"}
        assert "M4" in gcode
        assert "M5" in gcode

    def test_half_power_never_reaches_full_scale(self, solid_png) -> None:
        gcode = _compile(solid_png(10, (0, 0, 0)), 10.0, max_power_percent=50)
        assert "S500" in gcode
        assert "S1000" not in gcode

    def test_lower_max_power_never_increases_power(self) -> None:
        image = Image.linear_gradient("L").resize((16, 4))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        data = buffer.getvalue()

        previous = None
        for max_power in (100, 80, 55, 20, 0):
            powers = [int(v) for v in _S_TOKEN_RE.findall(_compile(data, 4.0, max_power_percent=max_power))]
            if previous is not None:
                assert len(powers) == len(previous)
                assert all(now <= before for now, before in zip(powers, previous))
            previous = powers

    def test_mixed_gray_levels(self) -> None:
        grid = LuminanceGrid.from_rows([[0, 64, 255]])
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=1000, step_size_mm=1.0)
        gcode = compile_grid(grid, setting)
        assert "G1 X1.000S1000" in gcode
        assert "G1 X1.000S749" in gcode
        assert "G1 X1.000S0" in gcode

    def test_invert_burns_light_pixels(self, solid_png) -> None:
        gcode = _compile(solid_png(2, (255, 255, 255)), 2.0, invert=True)
        assert set(_S_TOKEN_RE.findall(gcode)) == {"1000"}


# ---------------------------------------------------------------------------
# Placement and scan pattern
# ---------------------------------------------------------------------------


class TestPlacement:
    def test_start_offset_moves_to_top_row(self, solid_png) -> None:
        gcode = _compile(solid_png(5, (0, 0, 0)), 5.0, start_x=10.0, start_y=20.0)
        g53_line = next(line for line in _lines(gcode) if "G53" in line)
        assert "X10.000" in g53_line
        assert "Y24.000" in g53_line

    def test_rows_alternate_direction(self) -> None:
        grid = LuminanceGrid.from_rows([[0, 0], [0, 0], [0, 0]])
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=600, step_size_mm=0.5)
        lines = _lines(compile_grid(grid, setting))
        moves = [line for line in lines if line.startswith("G1")]
        assert moves == [
            "G1 X0.500S1000",
            "G1 X0.500S1000",
            "G1 Y-0.500",
            "G1 X-0.500S1000",
            "G1 X-0.500S1000",
            "G1 Y-0.500",
            "G1 X0.500S1000",
            "G1 X0.500S1000",
        ]

    def test_reversed_row_reads_pixels_right_to_left(self) -> None:
        grid = LuminanceGrid.from_rows([[255, 255], [0, 255]])
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=600, step_size_mm=1.0)
        moves = [line for line in _lines(compile_grid(grid, setting)) if line.startswith("G1 X-")]
        assert moves == ["G1 X-1.000S0", "G1 X-1.000S1000"]

    def test_separate_line_step(self) -> None:
        grid = LuminanceGrid.from_rows([[0], [0]])
        setting = PowerSetting(
            max_power_percent=100,
            feed_rate_mm_per_min=600,
            step_size_mm=1.0,
            line_step_mm=0.25,
        )
        gcode = compile_grid(grid, setting, start_x=0.0, start_y=0.0)
        assert "G53 G0 X0.000 Y0.250" in gcode
        assert "G1 Y-0.250" in gcode

    def test_compiled_program_parses_back_to_raster_area(self) -> None:
        grid = LuminanceGrid.from_rows([[0, 0, 0], [0, 0, 0]])
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=600, step_size_mm=1.0)
        result = parse_gcode(compile_grid(grid, setting, start_x=10.0, start_y=20.0))

        assert result.movement_count == 8
        first = result.segments[0]
        assert first.is_rapid
        assert (first.end_x, first.end_y) == pytest.approx((10.0, 21.0))

        feed = [segment for segment in result.segments if not segment.is_rapid]
        xs = [value for segment in feed for value in (segment.start_x, segment.end_x)]
        ys = [value for segment in feed for value in (segment.start_y, segment.end_y)]
        assert min(xs) == pytest.approx(10.0)
        assert max(xs) == pytest.approx(13.0)
        assert min(ys) == pytest.approx(20.0)
        assert max(ys) == pytest.approx(21.0)


# ---------------------------------------------------------------------------
# Errors and settings
# ---------------------------------------------------------------------------


class TestErrorsAndSettings:
    def test_invalid_image_raises_decode_error(self) -> None:
        with pytest.raises(DecodeError):
            _compile(bytes([0, 1, 2, 3, 4]), 10.0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"feed_rate_mm_per_min": 0, "step_size_mm": 1.0},
            {"feed_rate_mm_per_min": 100, "step_size_mm": 0.0},
            {"feed_rate_mm_per_min": 100, "step_size_mm": 1.0, "line_step_mm": -1.0},
        ],
    )
    def test_power_setting_rejects_non_positive_values(self, kwargs) -> None:
        with pytest.raises(ValueError):
            PowerSetting(max_power_percent=100, **kwargs)

    def test_for_physical_size_derives_steps(self) -> None:
        grid = LuminanceGrid.from_rows([[0] * 4] * 2)
        setting = PowerSetting.for_physical_size(grid, 8.0, 3.0, 100, 1200)
        assert setting.step_size_mm == pytest.approx(2.0)
        assert setting.row_pitch_mm == pytest.approx(1.5)

    def test_out_of_range_max_power_is_clamped(self) -> None:
        grid = LuminanceGrid.from_rows([[0]])
        setting = PowerSetting(max_power_percent=250, feed_rate_mm_per_min=600, step_size_mm=1.0)
        assert set(_S_TOKEN_RE.findall(compile_grid(grid, setting))) == {"1000"}


# ---------------------------------------------------------------------------
# Post-passes
# ---------------------------------------------------------------------------


class TestPostPasses:
    def test_identity_pass_is_default(self, solid_png) -> None:
        data = solid_png(4, (30, 30, 30))
        assert _compile(data, 4.0) == _compile(data, 4.0, post_pass=identity_pass)

    def test_coalesce_merges_equal_power_runs(self) -> None:
        lines = ["G1 X1.000S1000", "G1 X1.000S1000", "G1 X1.000S0", "G1 Y-1.000", "G1 X-1.000S0"]
        assert coalesce_power_runs(lines) == [
            "G1 X2.000S1000",
            "G1 X1.000S0",
            "G1 Y-1.000",
            "G1 X-1.000S0",
        ]

    def test_coalesce_keeps_directions_apart(self) -> None:
        lines = ["G1 X1.000S500", "G1 X-1.000S500"]
        assert coalesce_power_runs(lines) == lines

    def test_coalesced_program_traces_same_path(self, solid_png) -> None:
        data = solid_png(10, (0, 0, 0))
        plain = parse_gcode(_compile(data, 10.0))
        merged_text = _compile(data, 10.0, post_pass=coalesce_power_runs)
        merged = parse_gcode(merged_text)

        assert "G1 X10.000S1000" in merged_text
        assert merged.movement_count < plain.movement_count
        assert merged.bounds == plain.bounds
        assert merged.segments[-1].end_x == pytest.approx(plain.segments[-1].end_x)
        assert merged.segments[-1].end_y == pytest.approx(plain.segments[-1].end_y)


# ---------------------------------------------------------------------------
# Distance and time estimates
# ---------------------------------------------------------------------------


class TestEstimates:
    def test_engraving_distance(self) -> None:
        assert engraving_distance(100, 100, 50.0, 50.0) == pytest.approx(5049.5)

    def test_engraving_distance_of_empty_image(self) -> None:
        assert engraving_distance(0, 10, 5.0, 5.0) == 0.0

    def test_estimate_engraving_time(self) -> None:
        assert estimate_engraving_time(6000.0, 1000) == pytest.approx(360.0)

    def test_compiler_tracks_travel(self) -> None:
        grid = LuminanceGrid.from_rows([[0] * 10] * 10)
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=1000, step_size_mm=1.0)
        compiler = RasterGcodeCompiler(setting)
        compiler.compile(grid)
        assert compiler.distance_mm == pytest.approx(109.0)
        assert compiler.elapsed_time_seconds == pytest.approx(109.0 / (1000 / 60.0))

    def test_compiler_starts_fresh_on_each_compile(self) -> None:
        grid = LuminanceGrid.from_rows([[0] * 10] * 10)
        setting = PowerSetting(max_power_percent=100, feed_rate_mm_per_min=1000, step_size_mm=1.0)
        compiler = RasterGcodeCompiler(setting)
        first = compiler.compile(grid)
        second = compiler.compile(grid)
        assert second == first
        assert [line.split(" ")[0] for line in second].count("M4") == 1
        assert compiler.distance_mm == pytest.approx(109.0)

    def test_generate_returns_a_copy(self) -> None:
        grid = LuminanceGrid.from_rows([[0, 255]])
        compiler = RasterGcodeCompiler(PowerSetting(max_power_percent=50, feed_rate_mm_per_min=600, step_size_mm=0.5))
        compiler.compile(grid)
        program = compiler.generate()
        program.clear()
        assert compiler.generate()

    @pytest.mark.parametrize(
        "seconds, expected",
        [(30.0, "30.0s"), (360.0, "6m 00s"), (3725.0, "1h 02m 05s"), (-4.0, "0.0s")],
    )
    def test_format_duration(self, seconds: float, expected: str) -> None:
        assert format_duration(seconds) == expected
