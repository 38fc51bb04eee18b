"""Pytest configuration and fixtures."""

import io
from typing import List, Tuple

import numpy as np
import pytest
from PIL import Image

from dpipng.raster import RasterImage

SIXTEEN_COLORS: List[Tuple[int, int, int]] = [
    (0, 0, 0),
    (255, 255, 255),
    (255, 0, 0),
    (0, 255, 0),
    (0, 0, 255),
    (255, 255, 0),
    (0, 255, 255),
    (255, 0, 255),
    (128, 0, 0),
    (0, 128, 0),
    (0, 0, 128),
    (128, 128, 0),
    (0, 128, 128),
    (128, 0, 128),
    (192, 192, 192),
    (128, 128, 128),
]


def png_bytes(image: Image.Image, **kwargs) -> bytes:
    with io.BytesIO() as output:
        image.save(output, format="PNG", **kwargs)
        return output.getvalue()


@pytest.fixture
def gradient_rgb() -> np.ndarray:
    """100x100 RGB image covering a wide range of colors"""
    y, x = np.mgrid[0:100, 0:100]
    return np.stack(
        [
            (x * 255 // 99).astype(np.uint8),
            (y * 255 // 99).astype(np.uint8),
            ((x + y) * 255 // 198).astype(np.uint8),
        ],
        axis=2,
    )


@pytest.fixture
def gradient_image(gradient_rgb: np.ndarray) -> RasterImage:
    return RasterImage.from_array(gradient_rgb)


@pytest.fixture
def gradient_png(gradient_rgb: np.ndarray) -> bytes:
    return png_bytes(Image.fromarray(gradient_rgb))


@pytest.fixture
def sixteen_color_image() -> RasterImage:
    """4x4 grid of 8x8 blocks, one color per block"""
    pixels = np.zeros((32, 32, 3), dtype=np.uint8)
    for i, color in enumerate(SIXTEEN_COLORS):
        row, col = divmod(i, 4)
        pixels[row * 8 : (row + 1) * 8, col * 8 : (col + 1) * 8] = color
    return RasterImage.from_array(pixels)
