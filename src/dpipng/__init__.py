"""
dpipng: reduce images to a constrained palette and write PNGs that declare
their physical pixel density.
"""

from .codec import OpenCvPngBackend, PillowPngBackend, PngBackend, WriteParams, available_backends
from .density import (
    PhysicalDensity,
    PixelDimensions,
    encode_with_density,
    inject_density,
    pixel_size_mm,
    read_density,
    read_metadata,
)
from .errors import (
    AmbiguousMetadataError,
    DpiPngError,
    EncodeFailureError,
    InvalidPaletteError,
    MetadataUnsupportedError,
    NoCapableEncoderError,
    UnsupportedSourceError,
)
from .metadata import MetadataNode, PngMetadata, default_png_metadata
from .palette import Binary, EightBit, FixedSmall, Palette, reduce
from .pipeline import ProcessingManifest, process_image
from .raster import IndexedImage, RasterImage, decode_png, load_image

__version__ = "0.1.0"

__all__ = [
    "AmbiguousMetadataError",
    "Binary",
    "DpiPngError",
    "EightBit",
    "EncodeFailureError",
    "FixedSmall",
    "IndexedImage",
    "InvalidPaletteError",
    "MetadataNode",
    "MetadataUnsupportedError",
    "NoCapableEncoderError",
    "OpenCvPngBackend",
    "Palette",
    "PhysicalDensity",
    "PillowPngBackend",
    "PixelDimensions",
    "PngBackend",
    "PngMetadata",
    "ProcessingManifest",
    "RasterImage",
    "UnsupportedSourceError",
    "WriteParams",
    "available_backends",
    "decode_png",
    "default_png_metadata",
    "encode_with_density",
    "inject_density",
    "load_image",
    "pixel_size_mm",
    "process_image",
    "read_density",
    "read_metadata",
    "reduce",
]
