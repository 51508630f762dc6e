"""Grayscale image to laser engraving G-code, and G-code toolpath previews."""

__version__ = "0.1.0"

__all__ = [
    "bounds",
    "config",
    "gcode",
    "parser",
    "preview",
    "raster",
    "cli",
]
