"""Shared test fixtures and helpers.

Provides the synthetic design/implementation pairs used across test
modules: a white 400x200 canvas with a single 100x40 rectangle.
"""

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from fidelity.loader import from_array
from fidelity.models import ImageData

CANVAS = (400, 200)
RECT = (150, 80, 100, 40)
WHITE = (255, 255, 255)
BLACK = (0, 0, 0)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def create_test_image(
    path: Path,
    size: tuple[int, int] = (64, 64),
    mode: str = "RGB",
    color: tuple[int, ...] = (128, 128, 128),
) -> Path:
    """Create a small test image and return its path."""
    img = Image.new(mode, size, color=color)
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path)
    return path


def rectangle_pixels(
    size: tuple[int, int] = CANVAS,
    rect: tuple[int, int, int, int] | None = RECT,
    color: tuple[int, int, int] = BLACK,
    background: tuple[int, int, int] = WHITE,
) -> np.ndarray:
    """Build an ``(H, W, 3)`` canvas with one filled rectangle."""
    width, height = size
    pixels = np.empty((height, width, 3), dtype=np.uint8)
    pixels[:, :] = background
    if rect is not None:
        x, y, w, h = rect
        pixels[y : y + h, x : x + w] = color
    return pixels


def rectangle_image(
    size: tuple[int, int] = CANVAS,
    rect: tuple[int, int, int, int] | None = RECT,
    color: tuple[int, int, int] = BLACK,
    background: tuple[int, int, int] = WHITE,
    source: str = "<memory>",
) -> ImageData:
    """Build an :class:`ImageData` canvas with one filled rectangle."""
    return from_array(rectangle_pixels(size, rect, color, background), source)


def save_rectangle_image(path: Path, **kwargs) -> Path:
    """Write a rectangle canvas as PNG and return its path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.fromarray(rectangle_pixels(**kwargs)).save(path)
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def design_image() -> ImageData:
    """400x200 white canvas with a black 100x40 rectangle at (150, 80)."""
    return rectangle_image(source="design.png")


@pytest.fixture
def shifted_image() -> ImageData:
    """The design rectangle moved 20 px to the right."""
    x, y, w, h = RECT
    return rectangle_image(rect=(x + 20, y, w, h), source="shifted.png")


@pytest.fixture
def recolored_image() -> ImageData:
    """The design rectangle filled with #1A1A1A instead of black."""
    return rectangle_image(color=(0x1A, 0x1A, 0x1A), source="recolored.png")


@pytest.fixture
def design_png(tmp_path: Path) -> Path:
    return save_rectangle_image(tmp_path / "design.png")


@pytest.fixture
def extra_block_image() -> ImageData:
    """The design with an extra black 110x180 block left of the rectangle."""
    pixels = rectangle_pixels()
    pixels[10:190, 10:120] = BLACK
    return from_array(pixels, "extra-block.png")


@pytest.fixture
def tinted_background_image() -> ImageData:
    """The design rectangle on a light gray instead of a white canvas."""
    return rectangle_image(background=(240, 240, 240), source="tinted.png")
