# File: palette.py
"""
Palette reduction: maps a true-color RasterImage onto an indexed palette.

Binary and FixedSmall reduce by nearest RGB distance against a declared
palette, lowest index winning ties. EightBit hands the conversion to Pillow's
standard "P" mode conversion and never picks entries itself.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import ClassVar, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from .errors import InvalidPaletteError, UnsupportedSourceError
from .raster import IndexedImage, RasterImage

logger = logging.getLogger("dpipng.palette")

RGB = Tuple[int, int, int]
Color = Union[int, str, Sequence[int]]

WHITE: RGB = (255, 255, 255)
BLACK: RGB = (0, 0, 0)

# red, green, dark green, blue, white, black
FIXED_SMALL_COLORS: Tuple[RGB, ...] = (
    (156, 0, 0),
    (0, 156, 0),
    (0, 60, 0),
    (0, 0, 156),
    (255, 255, 255),
    (0, 0, 0),
)

EIGHT_BIT_METHODS = ("adaptive", "web")


def parse_color(value: Color) -> RGB:
    """Convert a packed int, #rrggbb hex string or (r, g, b) sequence to an RGB tuple"""
    if isinstance(value, bool):
        raise InvalidPaletteError(f"Not a color: {value!r}")

    if isinstance(value, str):
        hex_color = value.strip().lstrip("#")
        if len(hex_color) != 6:
            raise InvalidPaletteError(f"Expected #rrggbb, got {value!r}")
        try:
            r = int(hex_color[0:2], 16)
            g = int(hex_color[2:4], 16)
            b = int(hex_color[4:6], 16)
        except ValueError as e:
            raise InvalidPaletteError(f"Expected #rrggbb, got {value!r}") from e
        return r, g, b

    if isinstance(value, (int, np.integer)):
        # Accepts signed 32-bit ARGB as well; the alpha byte is dropped
        packed = int(value) & 0xFFFFFFFF
        return (packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF

    try:
        channels = [int(c) for c in value]
    except (TypeError, ValueError) as e:
        raise InvalidPaletteError(f"Not a color: {value!r}") from e
    if len(channels) not in (3, 4) or any(c < 0 or c > 255 for c in channels):
        raise InvalidPaletteError(f"Expected 3 channels in 0..255, got {value!r}")
    return channels[0], channels[1], channels[2]


@dataclass(frozen=True)
class Palette:
    """Ordered color table; bit_depth defaults to the smallest depth that fits"""

    colors: Tuple[RGB, ...]
    bit_depth: Optional[int] = None

    def __post_init__(self) -> None:
        colors = tuple(parse_color(c) for c in self.colors)
        if not colors:
            raise InvalidPaletteError("Palette needs at least one entry")

        bit_depth = self.bit_depth
        if bit_depth is None:
            bit_depth = max(1, math.ceil(math.log2(len(colors))))
        if not 1 <= bit_depth <= 8:
            raise InvalidPaletteError(f"Bit depth must be 1..8, got {bit_depth}")
        if len(colors) > 1 << bit_depth:
            raise InvalidPaletteError(
                f"{len(colors)} entries do not fit in {bit_depth} bits"
            )

        object.__setattr__(self, "colors", colors)
        object.__setattr__(self, "bit_depth", bit_depth)

    @property
    def size(self) -> int:
        return len(self.colors)

    def __len__(self) -> int:
        return len(self.colors)

    def __getitem__(self, index: int) -> RGB:
        return self.colors[index]

    def as_array(self) -> np.ndarray:
        return np.asarray(self.colors, dtype=np.uint8).reshape(-1, 3)

    def flat(self) -> List[int]:
        """r, g, b, r, g, b, ... as expected by Image.putpalette"""
        return [channel for color in self.colors for channel in color]

    def hex(self) -> List[str]:
        return [f"#{r:02x}{g:02x}{b:02x}" for r, g, b in self.colors]


@dataclass(frozen=True)
class Binary:
    """Two entries: background at index 0, foreground at index 1"""

    background: Color = 0xFFFFFF
    foreground: Color = 0x000000
    name: ClassVar[str] = "binary"

    def __post_init__(self) -> None:
        self.palette()

    def palette(self) -> Palette:
        return Palette((self.background, self.foreground), bit_depth=1)


@dataclass(frozen=True)
class FixedSmall:
    """Hard-coded 6-entry palette at 3 bits per pixel"""

    colors: Tuple[RGB, ...] = field(default=FIXED_SMALL_COLORS, init=False)
    name: ClassVar[str] = "fixed-small"

    def palette(self) -> Palette:
        return Palette(self.colors, bit_depth=3)


@dataclass(frozen=True)
class EightBit:
    """
    Standard 8-bit indexed conversion.

    method="adaptive" lets Pillow build a median-cut palette of at most
    `colors` entries; method="web" uses Pillow's fixed web palette and ignores
    `colors`.
    """

    method: str = "adaptive"
    colors: int = 256
    name: ClassVar[str] = "eight-bit"

    def __post_init__(self) -> None:
        if self.method not in EIGHT_BIT_METHODS:
            raise InvalidPaletteError(
                f"Unknown 8-bit method {self.method!r}, expected one of {EIGHT_BIT_METHODS}"
            )
        if isinstance(self.colors, bool) or not 1 <= int(self.colors) <= 256:
            raise InvalidPaletteError(f"8-bit palettes hold 1..256 entries, got {self.colors}")


PalettePolicy = Union[Binary, FixedSmall, EightBit]


def composite_over(pixels: np.ndarray, background: RGB) -> np.ndarray:
    """Flatten RGBA pixels onto a solid background color"""
    rgb = pixels[:, :, :3].astype(np.uint32)
    alpha = pixels[:, :, 3:4].astype(np.uint32)
    bg = np.asarray(background, dtype=np.uint32)
    blended = (rgb * alpha + bg * (255 - alpha) + 127) // 255
    return blended.astype(np.uint8)  # type: ignore[no-any-return]


def nearest_palette_indices(rgb: np.ndarray, palette: Palette) -> np.ndarray:
    """
    Index of the closest palette entry for every pixel.

    Distance is squared Euclidean distance in RGB. np.argmin returns the first
    minimum, so ties go to the lower index.
    """
    h, w = rgb.shape[:2]
    flat = rgb.reshape(-1, 3)

    # Match each distinct color once and scatter back
    unique_colors, inverse = np.unique(flat, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)

    candidates = unique_colors.astype(np.int32)[:, np.newaxis, :]
    entries = palette.as_array().astype(np.int32)[np.newaxis, :, :]
    distances = np.sum((candidates - entries) ** 2, axis=2)
    best = np.argmin(distances, axis=1).astype(np.uint8)

    return best[inverse].reshape(h, w)  # type: ignore[no-any-return]


def map_pixels_to_palette(image: RasterImage, palette: Palette) -> IndexedImage:
    """Nearest-match reduction against a declared palette"""
    # A fresh indexed canvas is all index 0, so transparency shows entry 0
    rgb = composite_over(image.pixels, palette[0])
    indices = nearest_palette_indices(rgb, palette)
    return IndexedImage(indices, palette)


def convert_eight_bit(image: RasterImage, policy: EightBit) -> IndexedImage:
    """Delegate to Pillow's standard RGB to "P" conversion"""
    rgb = composite_over(image.pixels, BLACK)
    pil_image = Image.fromarray(rgb)

    if policy.method == "adaptive":
        converted = pil_image.convert("P", palette=Image.Palette.ADAPTIVE, colors=policy.colors)
    else:
        converted = pil_image.convert("P", palette=Image.Palette.WEB, dither=Image.Dither.NONE)

    indices = np.array(converted, dtype=np.uint8)
    flat = converted.getpalette() or []
    entries = [tuple(flat[i : i + 3]) for i in range(0, len(flat) - len(flat) % 3, 3)]

    # Pillow may report a shorter table than the highest index used
    needed = int(indices.max()) + 1
    if len(entries) < needed:
        entries.extend([BLACK] * (needed - len(entries)))

    palette = Palette(tuple(entries[:256]), bit_depth=8)  # type: ignore[arg-type]
    return IndexedImage(indices, palette)


def reduce(image: RasterImage, policy: PalettePolicy) -> IndexedImage:
    """
    Reduce a true-color image to an indexed image under the given policy.

    Args:
        image: Source image, left untouched
        policy: Binary, FixedSmall or EightBit

    Returns:
        IndexedImage whose indices all fall inside the policy's palette

    Raises:
        UnsupportedSourceError: image is not a RasterImage
        InvalidPaletteError: policy parameters do not form a valid palette
    """
    if not isinstance(image, RasterImage):
        raise UnsupportedSourceError(
            f"Expected a RasterImage, got {type(image).__name__}"
        )

    start_time = time.time()

    if isinstance(policy, EightBit):
        result = convert_eight_bit(image, policy)
    elif isinstance(policy, (Binary, FixedSmall)):
        result = map_pixels_to_palette(image, policy.palette())
    else:
        raise InvalidPaletteError(f"Unknown palette policy: {policy!r}")

    elapsed = int((time.time() - start_time) * 1000)
    logger.info(
        f"Reduced {image.width}x{image.height} image with {policy.name} policy: "
        f"{result.palette.size}-entry palette, {len(result.used_indices())} used ({elapsed}ms)"
    )
    return result
