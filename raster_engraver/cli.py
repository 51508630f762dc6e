from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List

from .config import ConfigError, EngraverConfig, default_config, load_config
from .gcode import (
    PowerSetting,
    RasterGcodeCompiler,
    coalesce_power_runs,
    identity_pass,
)
from .parser import ParseError
from .preview import preview_gcode
from .raster import DecodeError, sample_image

logger = logging.getLogger(__name__)


def _resolve_config(args: argparse.Namespace) -> EngraverConfig:
    if args.config is not None:
        return load_config(args.config, profile=args.laser_profile)
    if args.laser_profile is not None:
        raise ConfigError("--laser-profile requires --config")
    return default_config()


def _apply_overrides(config: EngraverConfig, args: argparse.Namespace) -> None:
    engraving = config.engraving
    laser = config.laser
    if args.width_mm is not None:
        engraving.width_mm = args.width_mm
    if args.height_mm is not None:
        engraving.height_mm = args.height_mm
    if args.start_x is not None:
        engraving.start_x_mm = args.start_x
    if args.start_y is not None:
        engraving.start_y_mm = args.start_y
    if args.max_power is not None:
        laser.max_power_percent = args.max_power
    if args.feed_rate is not None:
        laser.feed_rate_mm_min = args.feed_rate
    if args.invert:
        engraving.invert = True
    if args.optimize:
        engraving.coalesce_power_runs = True


def compile_image_file(image_path: Path, output_path: Path, config: EngraverConfig) -> int:
    grid = sample_image(image_path.read_bytes())
    engraving = config.engraving
    setting = PowerSetting.for_physical_size(
        grid,
        engraving.width_mm,
        engraving.height_mm,
        max_power_percent=config.laser.max_power_percent,
        feed_rate_mm_per_min=config.laser.feed_rate_mm_min,
        invert=engraving.invert,
    )
    logger.info(
        "Converting %dx%d image with laser '%s', step X=%.4fmm Y=%.4fmm",
        grid.width,
        grid.height,
        config.laser.name,
        setting.step_size_mm,
        setting.row_pitch_mm,
    )

    compiler = RasterGcodeCompiler(setting)
    lines = compiler.compile(grid, engraving.start_x_mm, engraving.start_y_mm)
    post_pass = coalesce_power_runs if engraving.coalesce_power_runs else identity_pass
    gcode_lines = post_pass(lines)

    output_path.write_text("\n".join(gcode_lines) + "\n", encoding="utf-8")
    logger.info("Wrote %d G-code lines to %s", len(gcode_lines), output_path)
    logger.info(
        "Travel %.1f mm, estimated engraving time %s",
        compiler.distance_mm,
        compiler.formatted_elapsed_time(),
    )
    return len(gcode_lines)


def preview_gcode_file(gcode_path: Path, output_path: Path, config: EngraverConfig) -> None:
    preview = config.preview
    preview_gcode(
        gcode_path.read_bytes(),
        preview.width_px,
        preview.height_px,
        style=preview,
        output_path=str(output_path),
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Convert grayscale images to laser engraving G-code and preview G-code toolpaths."
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to engraver configuration YAML")
    parser.add_argument(
        "--laser-profile",
        type=str,
        default=None,
        help="Name of the laser profile to use from the configuration file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    compile_parser = subparsers.add_parser("compile", help="Convert an image into raster G-code")
    compile_parser.add_argument("image", type=Path, help="Path to the source image")
    compile_parser.add_argument("--output", type=Path, default=Path("output.gcode"), help="Destination G-code file")
    compile_parser.add_argument("--width-mm", type=float, default=None, help="Physical engraving width")
    compile_parser.add_argument("--height-mm", type=float, default=None, help="Physical engraving height")
    compile_parser.add_argument("--start-x", type=float, default=None, help="Machine X of the left edge")
    compile_parser.add_argument("--start-y", type=float, default=None, help="Machine Y of the bottom edge")
    compile_parser.add_argument("--max-power", type=int, default=None, help="Maximum laser power percent (0-100)")
    compile_parser.add_argument("--feed-rate", type=int, default=None, help="Feed rate in mm/min")
    compile_parser.add_argument(
        "--invert",
        action="store_true",
        help="Burn light pixels instead of dark ones",
    )
    compile_parser.add_argument(
        "--optimize",
        action="store_true",
        help="Merge consecutive moves that share the same power",
    )

    preview_parser = subparsers.add_parser("preview", help="Render a G-code toolpath to an image")
    preview_parser.add_argument("gcode", type=Path, help="Path to the G-code file")
    preview_parser.add_argument("--output", type=Path, default=Path("gcode_preview.png"), help="Destination image")
    preview_parser.add_argument("--width", type=int, default=None, help="Preview width in pixels")
    preview_parser.add_argument("--height", type=int, default=None, help="Preview height in pixels")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper()), format="[%(levelname)s] %(message)s")

    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    try:
        if args.command == "compile":
            _apply_overrides(config, args)
            compile_image_file(args.image, args.output, config)
        else:
            if args.width is not None:
                config.preview.width_px = args.width
            if args.height is not None:
                config.preview.height_px = args.height
            preview_gcode_file(args.gcode, args.output, config)
    except (DecodeError, ParseError, ValueError, OSError) as exc:
        source = args.image if args.command == "compile" else args.gcode
        logger.error("Failed to %s %s: %s", args.command, source, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
