from __future__ import annotations

import io
from typing import Callable, Tuple

import pytest
from PIL import Image


@pytest.fixture()
def solid_png() -> Callable[..., bytes]:
    """Build an in-memory PNG filled with one RGB color."""

    def _build(size: int, color: Tuple[int, int, int]) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (size, size), color).save(buffer, format="PNG")
        return buffer.getvalue()

    return _build
