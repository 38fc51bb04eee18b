# File: pipeline.py
"""
End-to-end pipeline: decode, optionally reduce the palette, encode with a
density declaration. Synchronous; every stage blocks until done.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from .codec import PngBackend, WriteParams
from .density import PhysicalDensity, encode_with_density, pixel_size_mm, read_density, read_metadata
from .palette import PalettePolicy, reduce
from .raster import ImageSource, IndexedImage, load_image

logger = logging.getLogger("dpipng.pipeline")

DEFAULT_DPI = 600


@dataclass
class ProcessingManifest:
    """Stores metadata about one pipeline run"""

    image_size: Tuple[int, int]
    processing_steps: Dict
    processing_time_ms: int
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def process_image(
    source: ImageSource,
    policy: Optional[PalettePolicy] = None,
    dpi: float = DEFAULT_DPI,
    backends: Optional[Sequence[PngBackend]] = None,
    params: Optional[WriteParams] = None,
) -> Dict:
    """
    Main image processing pipeline

    Args:
        source: PNG bytes, path to a PNG file, PIL image, or numpy array
        policy: Palette policy (Binary, FixedSmall, EightBit); None keeps true color
        dpi: Density to declare in the pHYs chunk
        backends: PNG encoder backends to try, in order
        params: Encoder write params

    Returns:
        Dictionary with the encoded image, PNG bytes, density read back and manifest
    """
    density = PhysicalDensity(dpi)
    start_time = time.time()

    raster = load_image(source)
    logger.info(f"Processing image: {raster.width}x{raster.height}")
    decoded_at = time.time()

    image = reduce(raster, policy) if policy is not None else raster
    reduced_at = time.time()

    png = encode_with_density(image, density, backends=backends, params=params)
    encoded_at = time.time()

    written = read_density(png)
    pixel_size = pixel_size_mm(read_metadata(png))

    if isinstance(image, IndexedImage):
        palette_steps: Dict[str, Any] = {
            "policy": policy.name,  # type: ignore[union-attr]
            "palette_size": image.palette.size,
            "bit_depth": image.palette.bit_depth,
            "colors_used": len(image.used_indices()),
        }
    else:
        palette_steps = {"policy": None, "colors_used": raster.count_colors()}

    processing_time = int((encoded_at - start_time) * 1000)
    manifest = ProcessingManifest(
        image_size=(image.width, image.height),
        processing_steps={
            "decode": {"time_ms": int((decoded_at - start_time) * 1000)},
            "palette_reduction": {
                **palette_steps,
                "time_ms": int((reduced_at - decoded_at) * 1000),
            },
            "density": {
                "dpi": density.dots_per_inch,
                "pixels_per_meter": density.pixels_per_meter,
                "pixel_size_mm": list(pixel_size) if pixel_size is not None else None,
                "time_ms": int((encoded_at - reduced_at) * 1000),
            },
            "output_bytes": len(png),
        },
        processing_time_ms=processing_time,
        timestamp=datetime.now().isoformat(),
    )

    logger.info(f"Processing complete in {processing_time}ms")

    return {"image": image, "png": png, "density": written, "manifest": manifest}
