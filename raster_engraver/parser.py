"""Best-effort G-code parsing into motion segments.

Every line is read against persistent state: the positioning mode
(``G90``/``G91``) and the current X/Y/Z position. Malformed coordinate
values leave the axis unchanged instead of aborting the line, so hand-edited
or partially corrupt programs still produce a preview. Pass ``strict=True`` to
reject them instead.

Arc moves (``G2``/``G3``) are drawn as a straight chord from the start to the
end point; arc centres and radii are not interpolated.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple

from .bounds import MotionSegment, ToolpathBounds, compute_bounds

logger = logging.getLogger(__name__)

_PAREN_COMMENT_RE = re.compile(r"\([^)]*\)?")
# An E inside a number is an exponent, not the start of a new word.
_WORD_RE = re.compile(r"[A-Z][-+]?[0-9.]*(?:E[-+]?[0-9]+)?[^A-Z]*")

_RAPID_CODES = {"G0"}
_LINEAR_CODES = {"G1"}
_ARC_CODES = {"G2", "G3"}
_MOTION_CODES = _RAPID_CODES | _LINEAR_CODES | _ARC_CODES
_AXES = ("X", "Y", "Z")


class ParseError(ValueError):
    """Raised when G-code text cannot be tokenized at all."""


class MotionMode(Enum):
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


@dataclass
class ParseResult:
    segments: List[MotionSegment] = field(default_factory=list)
    line_count: int = 0
    arc_count: int = 0

    @property
    def movement_count(self) -> int:
        return len(self.segments)

    @property
    def bounds(self) -> ToolpathBounds:
        return compute_bounds(self.segments)


def _decode(text: str | bytes) -> str:
    if isinstance(text, str):
        return text
    if isinstance(text, (bytes, bytearray)):
        try:
            return bytes(text).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"G-code is not valid UTF-8 text: {exc}") from exc
    raise ParseError(f"Expected G-code text, got {type(text).__name__}")


def _strip_comments(line: str) -> str:
    line = line.split(";", 1)[0]
    return _PAREN_COMMENT_RE.sub(" ", line)


def _split_words(line: str) -> List[Tuple[str, str]]:
    words: List[Tuple[str, str]] = []
    for token in line.split():
        for word in _WORD_RE.findall(token):
            words.append((word[0], word[1:]))
    return words


def _parse_axis_value(raw: str) -> float | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _normalize_g_code(value: str) -> str | None:
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number) or number != int(number):
        return None
    # G00 and G0 name the same command.
    return f"G{int(number)}"


def parse_gcode(text: str | bytes, strict: bool = False) -> ParseResult:
    """Parse G-code into ordered motion segments.

    The result is a pure function of ``text``: no state survives between
    calls. Only text that cannot be decoded raises :class:`ParseError`, unless
    ``strict`` asks for bad coordinate values to be rejected as well.
    """
    source = _decode(text)
    lines = source.splitlines()
    result = ParseResult(line_count=len(lines))

    mode = MotionMode.ABSOLUTE
    position: Dict[str, float] = {"X": 0.0, "Y": 0.0, "Z": 0.0}

    for line_number, raw_line in enumerate(lines, start=1):
        trimmed = raw_line.strip()
        if not trimmed or trimmed.startswith(";") or trimmed.startswith("("):
            continue

        words = _split_words(_strip_comments(trimmed).upper())
        if not words:
            continue

        motion: str | None = None
        machine_coords = False
        for letter, value in words:
            if letter != "G":
                continue
            code = _normalize_g_code(value)
            if code == "G90":
                mode = MotionMode.ABSOLUTE
            elif code == "G91":
                mode = MotionMode.RELATIVE
            elif code == "G53":
                machine_coords = True
            elif code in _MOTION_CODES and motion is None:
                motion = code

        if motion is None:
            logger.debug("Line %d has no motion command: %s", line_number, trimmed)
            continue

        absolute = machine_coords or mode is MotionMode.ABSOLUTE
        target = dict(position)
        for letter, value in words:
            if letter not in _AXES:
                continue
            parsed = _parse_axis_value(value)
            if parsed is None:
                if strict:
                    raise ParseError(f"Line {line_number}: invalid {letter} value '{value}'")
                continue
            target[letter] = parsed if absolute else target[letter] + parsed

        if motion in _ARC_CODES:
            result.arc_count += 1

        result.segments.append(
            MotionSegment(
                start_x=position["X"],
                start_y=position["Y"],
                end_x=target["X"],
                end_y=target["Y"],
                is_rapid=motion in _RAPID_CODES,
            )
        )
        position = target

    if result.arc_count:
        logger.debug("Approximated %d arc moves as straight chords", result.arc_count)
    return result
