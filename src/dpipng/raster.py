# File: raster.py
"""
Immutable raster containers passed between the palette reducer and the
density writer, plus the PNG decode entry points that produce them.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from PIL import Image, UnidentifiedImageError

from .errors import InvalidPaletteError, UnsupportedSourceError

if TYPE_CHECKING:
    from .palette import Palette

logger = logging.getLogger("dpipng.raster")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

ImageSource = Union[bytes, str, Path, Image.Image, NDArray]

# 16-bit and 32-bit integer grayscale modes as Pillow decodes them
WIDE_GRAY_MODES = ("I", "I;16", "I;16L", "I;16B", "I;16N")


def _read_only(array: np.ndarray) -> np.ndarray:
    """Copy an array and lock it against writes"""
    result = np.ascontiguousarray(array, dtype=np.uint8).copy()
    result.setflags(write=False)
    return result


@dataclass(frozen=True, eq=False)
class RasterImage:
    """True-color image stored as an (h, w, 4) RGBA uint8 array"""

    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        pixels = self.pixels
        if not isinstance(pixels, np.ndarray) or pixels.ndim != 3 or pixels.shape[2] != 4:
            raise UnsupportedSourceError("RasterImage expects an (h, w, 4) RGBA array")
        if pixels.dtype != np.uint8:
            raise UnsupportedSourceError(f"RasterImage expects uint8 pixels, got {pixels.dtype}")
        if pixels.shape[0] == 0 or pixels.shape[1] == 0:
            raise UnsupportedSourceError("RasterImage cannot be empty")
        object.__setattr__(self, "pixels", _read_only(pixels))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def is_opaque(self) -> bool:
        return bool(np.all(self.pixels[:, :, 3] == 255))

    def _check(self, x: int, y: int) -> None:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} image")

    def pixel(self, x: int, y: int) -> int:
        """Packed 0xAARRGGBB value at (x, y)"""
        self._check(x, y)
        r, g, b, a = (int(v) for v in self.pixels[y, x])
        return (a << 24) | (r << 16) | (g << 8) | b

    def rgb(self, x: int, y: int) -> Tuple[int, int, int]:
        self._check(x, y)
        r, g, b = (int(v) for v in self.pixels[y, x, :3])
        return r, g, b

    def count_colors(self) -> int:
        """Count unique RGB colors, ignoring alpha"""
        unique_colors = np.unique(self.pixels[:, :, :3].reshape(-1, 3), axis=0)
        return len(unique_colors)

    def to_pil(self) -> Image.Image:
        """RGB Pillow image when fully opaque, RGBA otherwise"""
        if self.is_opaque:
            return Image.fromarray(np.array(self.pixels[:, :, :3]))
        return Image.fromarray(np.array(self.pixels))

    @classmethod
    def from_array(cls, array: NDArray) -> "RasterImage":
        """
        Build a raster from a numpy array.

        Accepts (h, w) gray, (h, w, 1) gray, (h, w, 3) RGB and (h, w, 4) RGBA
        arrays, optionally with a leading batch dimension of 1. Float arrays are
        taken to be in the 0..1 range.
        """
        if not isinstance(array, np.ndarray):
            raise UnsupportedSourceError(f"Expected a numpy array, got {type(array).__name__}")

        if array.ndim == 4:
            if array.shape[0] != 1:
                raise UnsupportedSourceError("Batch dimension is not supported")
            array = array[0]

        if array.dtype != np.uint8:
            if np.issubdtype(array.dtype, np.floating):
                array = (np.clip(array, 0.0, 1.0) * 255).round().astype(np.uint8)
            else:
                raise UnsupportedSourceError(f"Unsupported pixel dtype: {array.dtype}")

        if array.ndim == 2:
            array = array[:, :, np.newaxis]
        if array.ndim != 3:
            raise UnsupportedSourceError(f"Unsupported array shape: {array.shape}")

        h, w, c = array.shape
        opaque = np.full((h, w, 1), 255, dtype=np.uint8)
        if c == 4:
            rgba = array
        elif c == 3:
            rgba = np.concatenate([array, opaque], axis=2)
        elif c == 1:
            rgba = np.concatenate([array, array, array, opaque], axis=2)
        else:
            raise UnsupportedSourceError(f"Unsupported number of channels: {c}")
        return cls(rgba)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        if image.mode in WIDE_GRAY_MODES:
            # Pillow's own conversion clips these to 255 instead of scaling
            values = np.array(image).astype(np.int64)
            if values.size and (values.min() < 0 or values.max() > 0xFFFF):
                raise UnsupportedSourceError(f"{image.mode} image has values outside 0..65535")
            return cls.from_array((values >> 8).astype(np.uint8))
        if image.mode == "F":
            raise UnsupportedSourceError("Floating point images have no defined 8-bit scale")
        if image.mode != "RGBA":
            try:
                image = image.convert("RGBA")
            except ValueError as e:
                raise UnsupportedSourceError(f"Cannot read {image.mode} image as true color: {e}") from e
        return cls(np.array(image))


@dataclass(frozen=True, eq=False)
class IndexedImage:
    """Per-pixel palette indices plus the palette they refer to"""

    indices: NDArray[np.uint8]
    palette: "Palette"

    def __post_init__(self) -> None:
        indices = self.indices
        if not isinstance(indices, np.ndarray) or indices.ndim != 2:
            raise ValueError("IndexedImage expects an (h, w) index array")
        if indices.shape[0] == 0 or indices.shape[1] == 0:
            raise ValueError("IndexedImage cannot be empty")
        if indices.size and (indices.min() < 0 or indices.max() >= self.palette.size):
            raise InvalidPaletteError(
                f"Indices reference entries beyond the {self.palette.size}-entry palette"
            )
        object.__setattr__(self, "indices", _read_only(indices))

    @property
    def width(self) -> int:
        return int(self.indices.shape[1])

    @property
    def height(self) -> int:
        return int(self.indices.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def index(self, x: int, y: int) -> int:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} image")
        return int(self.indices[y, x])

    def color(self, x: int, y: int) -> Tuple[int, int, int]:
        return self.palette[self.index(x, y)]

    def used_indices(self) -> List[int]:
        return [int(i) for i in np.unique(self.indices)]

    def to_rgb_array(self) -> np.ndarray:
        """Expand indices back to an (h, w, 3) RGB array"""
        return self.palette.as_array()[self.indices]  # type: ignore[no-any-return]

    def to_pil(self) -> Image.Image:
        """Mode "P" Pillow image carrying exactly this palette"""
        image = Image.frombytes("P", (self.width, self.height), self.indices.tobytes())
        image.putpalette(self.palette.flat())
        return image


def decode_png(data: bytes) -> RasterImage:
    """Decode PNG bytes into a RasterImage"""
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise UnsupportedSourceError(f"Expected PNG bytes, got {type(data).__name__}")
    data = bytes(data)
    if not data.startswith(PNG_SIGNATURE):
        raise UnsupportedSourceError("Not a valid PNG byte stream")

    try:
        with Image.open(io.BytesIO(data)) as pil_image:
            pil_image.load()
            raster = RasterImage.from_pil(pil_image)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise UnsupportedSourceError(f"Cannot decode PNG: {e}") from e

    logger.debug(f"Decoded {raster.width}x{raster.height} PNG ({len(data)} bytes)")
    return raster


def load_image(source: ImageSource) -> RasterImage:
    """Read PNG bytes, a PNG file path, a Pillow image or a numpy array"""
    if isinstance(source, RasterImage):
        return source
    if isinstance(source, (bytes, bytearray, memoryview)):
        return decode_png(source)
    if isinstance(source, (str, Path)):
        with open(source, "rb") as f:
            return decode_png(f.read())
    if isinstance(source, Image.Image):
        return RasterImage.from_pil(source)
    if isinstance(source, np.ndarray):
        return RasterImage.from_array(source)
    raise UnsupportedSourceError(f"Unsupported image source: {type(source).__name__}")
