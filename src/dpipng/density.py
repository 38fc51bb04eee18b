# File: density.py
"""
Density Metadata Writer: encodes an image as PNG with a pHYs chunk declaring
its physical pixel density.

PNG stores density as integer pixels per meter, identical on both axes here.
The pHYs node is located (or created) in the backend's default metadata tree,
filled in, merged back by tag and handed to the backend's writer.
"""

import logging
import math
import numbers
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .codec import (
    TEXT_TAGS,
    AnyImage,
    PngBackend,
    WriteParams,
    available_backends,
    iter_chunks,
    parse_text,
)
from .errors import (
    EncodeFailureError,
    MetadataUnsupportedError,
    NoCapableEncoderError,
    UnsupportedSourceError,
)
from .metadata import (
    INCH_IN_METERS,
    MAX_PHYS_VALUE,
    NATIVE_FORMAT,
    STANDARD_FORMAT,
    MetadataNode,
    PngMetadata,
    branch_to,
    find_or_create,
    round_half_up,
)
from .raster import IndexedImage, RasterImage

logger = logging.getLogger("dpipng.density")

# Template pixel type; pHYs does not depend on the final pixel format
GENERIC_PIXEL_TYPE = "RGB"

COLOR_TYPE_NAMES = {0: "Gray", 2: "RGB", 3: "Palette", 4: "GrayAlpha", 6: "RGBAlpha"}


@dataclass(frozen=True)
class PhysicalDensity:
    """Isotropic density in dots per inch"""

    dots_per_inch: float

    def __post_init__(self) -> None:
        dpi = self.dots_per_inch
        if isinstance(dpi, bool) or not isinstance(dpi, numbers.Real):
            raise ValueError(f"DPI must be a number, got {dpi!r}")
        if not math.isfinite(dpi) or dpi <= 0:
            raise ValueError(f"DPI must be positive and finite, got {dpi}")
        per_meter = dpi / INCH_IN_METERS
        if not math.isfinite(per_meter) or not 1 <= round_half_up(per_meter) <= MAX_PHYS_VALUE:
            raise ValueError(
                f"DPI {dpi} does not fit a pHYs chunk (1 to {MAX_PHYS_VALUE} pixels per meter)"
            )

    @property
    def pixels_per_meter(self) -> int:
        return round_half_up(self.dots_per_inch / INCH_IN_METERS)


@dataclass(frozen=True)
class PixelDimensions:
    """Contents of a pHYs chunk as read back from PNG bytes"""

    pixels_per_unit_x: int
    pixels_per_unit_y: int
    unit: str

    @property
    def dots_per_inch(self) -> Optional[float]:
        """DPI for isotropic meter-based density, None otherwise"""
        if self.unit != "meter" or self.pixels_per_unit_x != self.pixels_per_unit_y:
            return None
        return self.pixels_per_unit_x * INCH_IN_METERS


def inject_density(metadata: PngMetadata, density: PhysicalDensity) -> MetadataNode:
    """
    Write `density` into the native tree of `metadata`.

    Exactly zero or one pHYs node may exist beforehand, at any depth. An
    existing node is updated where it sits. Two or more raise
    AmbiguousMetadataError and the metadata is left as it was.

    Returns:
        The pHYs node that was merged
    """
    tree = metadata.as_tree(NATIVE_FORMAT)
    phys = find_or_create(tree, "pHYs")

    pixels_per_meter = str(density.pixels_per_meter)
    phys.set_attribute("pixelsPerUnitXAxis", pixels_per_meter)
    phys.set_attribute("pixelsPerUnitYAxis", pixels_per_meter)
    phys.set_attribute("unitSpecifier", "meter")

    metadata.merge_tree(NATIVE_FORMAT, branch_to(tree, phys))
    return phys


def _prepare(
    backend: PngBackend, image: AnyImage, params: Optional[WriteParams]
) -> Tuple[WriteParams, PngMetadata]:
    """Capability check for one backend; raises MetadataUnsupportedError to skip it"""
    write_params = params if params is not None else backend.default_write_params()
    metadata = backend.default_image_metadata(GENERIC_PIXEL_TYPE, write_params)
    if metadata.read_only:
        raise MetadataUnsupportedError(f"{backend.name}: default metadata is read-only")
    if not metadata.standard_format_supported:
        raise MetadataUnsupportedError(f"{backend.name}: standard metadata format not supported")
    if not backend.can_encode(image):
        raise MetadataUnsupportedError(f"{backend.name}: cannot encode {type(image).__name__}")
    return write_params, metadata


def encode_with_density(
    image: AnyImage,
    dpi: Union[float, PhysicalDensity],
    backends: Optional[Sequence[PngBackend]] = None,
    params: Optional[WriteParams] = None,
) -> bytes:
    """
    Encode an image as PNG bytes declaring the given density.

    Backends are tried once each, in order. A backend is skipped when its
    metadata template is read-only, lacks the standard format, or it cannot
    encode this kind of image. The first successful write wins.

    Args:
        image: RasterImage or IndexedImage
        dpi: Dots per inch, or a PhysicalDensity
        backends: Encoder strategies to try (default: available_backends())
        params: Write params overriding each backend's defaults

    Returns:
        PNG file contents

    Raises:
        AmbiguousMetadataError: a template already held several pHYs nodes
        EncodeFailureError: every attempted write failed (last error chained)
        NoCapableEncoderError: no backend could be attempted
    """
    density = dpi if isinstance(dpi, PhysicalDensity) else PhysicalDensity(dpi)
    if not isinstance(image, (RasterImage, IndexedImage)):
        raise UnsupportedSourceError(f"Cannot encode {type(image).__name__}")

    candidates = list(available_backends() if backends is None else backends)
    skipped: List[MetadataUnsupportedError] = []
    failures: List[Tuple[str, Exception]] = []

    for backend in candidates:
        try:
            write_params, metadata = _prepare(backend, image, params)
        except MetadataUnsupportedError as e:
            logger.warning(f"Skipping PNG backend: {e}")
            skipped.append(e)
            continue

        inject_density(metadata, density)
        logger.debug(f"Writing with {backend.name} backend at {density.pixels_per_meter} px/m")

        try:
            data = backend.write(image, metadata, write_params)
        except Exception as e:  # codec errors differ per backend
            logger.warning(f"{backend.name} backend failed: {e}")
            failures.append((backend.name, e))
            continue

        logger.info(
            f"Encoded {image.width}x{image.height} PNG at {density.dots_per_inch:g} DPI "
            f"({density.pixels_per_meter} px/m) with {backend.name}: {len(data)} bytes"
        )
        return data

    if failures:
        name, error = failures[-1]
        raise EncodeFailureError(
            f"All {len(failures)} attempted PNG backends failed, last was {name}: {error}"
        ) from error
    if skipped:
        raise NoCapableEncoderError(
            f"None of {len(candidates)} PNG backends can encode this image"
        ) from skipped[-1]
    raise NoCapableEncoderError("No PNG backends available")


def _dimensions(payload: bytes) -> PixelDimensions:
    if len(payload) != 9:
        raise UnsupportedSourceError(f"pHYs chunk has {len(payload)} bytes, expected 9")
    x, y, unit = struct.unpack(">IIB", payload)
    return PixelDimensions(x, y, "meter" if unit == 1 else "unknown")


def read_density(data: bytes) -> Optional[PixelDimensions]:
    """pHYs contents of a PNG byte stream, or None when it has no pHYs chunk"""
    for chunk_type, payload in iter_chunks(bytes(data)):
        if chunk_type == b"pHYs":
            return _dimensions(payload)
    return None


def read_metadata(data: bytes) -> PngMetadata:
    """
    Native metadata tree of a PNG byte stream.

    Holds the IHDR fields, the pHYs node when present and every text chunk;
    pixel data and palette chunks are left out. The returned metadata is
    read-only.
    """
    root = MetadataNode(NATIVE_FORMAT)
    for chunk_type, payload in iter_chunks(bytes(data)):
        if chunk_type == b"IHDR":
            if len(payload) != 13:
                raise UnsupportedSourceError(f"IHDR chunk has {len(payload)} bytes, expected 13")
            width, height, bit_depth, color_type, _, _, interlace = struct.unpack(">IIBBBBB", payload)
            root.append_child(
                MetadataNode(
                    "IHDR",
                    {
                        "width": width,
                        "height": height,
                        "bitDepth": bit_depth,
                        "colorType": COLOR_TYPE_NAMES.get(color_type, str(color_type)),
                        "compressionMethod": "deflate",
                        "filterMethod": "adaptive",
                        "interlaceMethod": "adam7" if interlace else "none",
                    },
                )
            )
        elif chunk_type == b"pHYs":
            density = _dimensions(payload)
            root.append_child(
                MetadataNode(
                    "pHYs",
                    {
                        "pixelsPerUnitXAxis": density.pixels_per_unit_x,
                        "pixelsPerUnitYAxis": density.pixels_per_unit_y,
                        "unitSpecifier": density.unit,
                    },
                )
            )
        elif chunk_type.decode("latin-1") in TEXT_TAGS:
            root.append_child(parse_text(chunk_type, payload))
    return PngMetadata(root, read_only=True)


def pixel_size_mm(metadata: PngMetadata) -> Optional[Tuple[float, float]]:
    """(horizontal, vertical) pixel size in millimetres from the standard view"""
    dimension = metadata.as_tree(STANDARD_FORMAT).child("Dimension")
    if dimension is None:
        return None
    horizontal = dimension.child("HorizontalPixelSize")
    vertical = dimension.child("VerticalPixelSize")
    return float(horizontal.get_attribute("value")), float(vertical.get_attribute("value"))  # type: ignore
