from __future__ import annotations

import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Dict

import yaml


@dataclass
class LaserProfile:
    name: str
    max_power_percent: int
    feed_rate_mm_min: int

    @property
    def max_power_units(self) -> int:
        return self.max_power_percent * 10

    @property
    def feed_rate_mm_s(self) -> float:
        return self.feed_rate_mm_min / 60.0


@dataclass
class EngravingConfig:
    width_mm: float = 30.0
    height_mm: float = 30.0
    start_x_mm: float = 0.0
    start_y_mm: float = 0.0
    invert: bool = False
    coalesce_power_runs: bool = False


@dataclass
class PreviewConfig:
    width_px: int = 800
    height_px: int = 600
    padding_px: float = 40.0
    dpi: int = 100
    rapid_line_width: float = 0.5
    feed_line_width: float = 1.5
    rapid_color: str = "#9E9E9E"
    feed_color: str = "#1E88E5"
    bounds_color: str = "#BDBDBD"
    origin_color: str = "#E53935"


@dataclass
class EngraverConfig:
    laser: LaserProfile
    engraving: EngravingConfig = field(default_factory=EngravingConfig)
    preview: PreviewConfig = field(default_factory=PreviewConfig)


class ConfigError(Exception):
    """Raised when configuration values are missing or invalid."""


_HEX_COLOR_RE = re.compile(r"^[0-9A-Fa-f]{6}$")


def _normalize_hex_color(value: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(
            f"Color must be a string containing a hex color, got {type(value).__name__}"
        )
    stripped = value.strip()
    if stripped.startswith("#"):
        stripped = stripped[1:]
    if len(stripped) != 6 or not _HEX_COLOR_RE.match(stripped):
        raise ConfigError(f"Invalid hex color '{value}'. Expected format '#RRGGBB'.")
    return f"#{stripped.upper()}"


def _require(mapping: Dict[str, Any], key: str) -> Any:
    if key not in mapping:
        raise ConfigError(f"Missing required configuration key: {key}")
    return mapping[key]


def _parse_laser_profile(laser_raw: Dict[str, Any], fallback_name: str | None = None) -> LaserProfile:
    if not isinstance(laser_raw, dict):
        raise ConfigError("Laser profile must be a mapping of settings.")

    max_power = int(_require(laser_raw, "max_power_percent"))
    if not 0 <= max_power <= 100:
        raise ConfigError(f"'max_power_percent' must be between 0 and 100, got {max_power}")

    feed_rate = int(_require(laser_raw, "feed_rate_mm_min"))
    if feed_rate <= 0:
        raise ConfigError(f"'feed_rate_mm_min' must be positive, got {feed_rate}")

    return LaserProfile(
        name=str(laser_raw.get("name", fallback_name or "Laser")),
        max_power_percent=max_power,
        feed_rate_mm_min=feed_rate,
    )


def _parse_engraving(engraving_raw: Dict[str, Any]) -> EngravingConfig:
    defaults = EngravingConfig()
    engraving = EngravingConfig(
        width_mm=float(engraving_raw.get("width_mm", defaults.width_mm)),
        height_mm=float(engraving_raw.get("height_mm", defaults.height_mm)),
        start_x_mm=float(engraving_raw.get("start_x_mm", defaults.start_x_mm)),
        start_y_mm=float(engraving_raw.get("start_y_mm", defaults.start_y_mm)),
        invert=bool(engraving_raw.get("invert", defaults.invert)),
        coalesce_power_runs=bool(
            engraving_raw.get("coalesce_power_runs", defaults.coalesce_power_runs)
        ),
    )
    if engraving.width_mm <= 0 or engraving.height_mm <= 0:
        raise ConfigError("Engraving 'width_mm' and 'height_mm' must be positive.")
    return engraving


def _parse_preview(preview_raw: Dict[str, Any]) -> PreviewConfig:
    defaults = PreviewConfig()
    preview = PreviewConfig(
        width_px=int(preview_raw.get("width_px", defaults.width_px)),
        height_px=int(preview_raw.get("height_px", defaults.height_px)),
        padding_px=float(preview_raw.get("padding_px", defaults.padding_px)),
        dpi=int(preview_raw.get("dpi", defaults.dpi)),
        rapid_line_width=float(preview_raw.get("rapid_line_width", defaults.rapid_line_width)),
        feed_line_width=float(preview_raw.get("feed_line_width", defaults.feed_line_width)),
        rapid_color=_normalize_hex_color(preview_raw.get("rapid_color", defaults.rapid_color)),
        feed_color=_normalize_hex_color(preview_raw.get("feed_color", defaults.feed_color)),
        bounds_color=_normalize_hex_color(preview_raw.get("bounds_color", defaults.bounds_color)),
        origin_color=_normalize_hex_color(preview_raw.get("origin_color", defaults.origin_color)),
    )
    if preview.width_px <= 0 or preview.height_px <= 0:
        raise ConfigError("Preview 'width_px' and 'height_px' must be positive.")
    if preview.dpi <= 0:
        raise ConfigError("Preview 'dpi' must be positive.")
    return preview


def default_config() -> EngraverConfig:
    return EngraverConfig(
        laser=LaserProfile(name="Laser", max_power_percent=100, feed_rate_mm_min=1000),
    )


def load_config(path: str | pathlib.Path, profile: str | None = None) -> EngraverConfig:
    config_path = pathlib.Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping.")

    laser_raw: Dict[str, Any]
    laser_profile_name: str | None = None

    if "lasers" in raw:
        lasers_section = raw.get("lasers")
        if not isinstance(lasers_section, dict) or not lasers_section:
            raise ConfigError("'lasers' must be a non-empty mapping of profiles.")

        if profile is None:
            default_profile = raw.get("default_laser")
            if default_profile:
                if default_profile not in lasers_section:
                    available = ", ".join(sorted(lasers_section))
                    raise ConfigError(
                        f"Default laser profile '{default_profile}' not found. Available profiles: {available}"
                    )
                laser_profile_name = str(default_profile)
            else:
                laser_profile_name = next(iter(lasers_section))
        else:
            if profile not in lasers_section:
                available = ", ".join(sorted(lasers_section))
                raise ConfigError(
                    f"Laser profile '{profile}' not found. Available profiles: {available}"
                )
            laser_profile_name = str(profile)

        laser_raw = lasers_section[laser_profile_name]
    else:
        if profile is not None:
            raise ConfigError(
                "Laser profile specified but configuration does not define any profiles."
            )
        laser_raw = _require(raw, "laser")

    laser = _parse_laser_profile(laser_raw, fallback_name=laser_profile_name)
    engraving = _parse_engraving(raw.get("engraving") or {})
    preview = _parse_preview(raw.get("preview") or {})

    return EngraverConfig(laser=laser, engraving=engraving, preview=preview)
