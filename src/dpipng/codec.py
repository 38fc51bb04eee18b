# File: codec.py
"""
PNG encoder backends and chunk-level helpers.

Every backend is a strategy with the same surface: default write params, a
default metadata template for a pixel type, a capability check for the image
it is handed, and write(image, metadata, params) -> bytes. encode_with_density
walks them in order and uses the first one that can do the job.
"""

import io
import logging
import struct
import zlib
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

import cv2
import numpy as np
from PIL.PngImagePlugin import PngInfo

from .errors import UnsupportedSourceError
from .metadata import (
    INCH_IN_METERS,
    MAX_PHYS_VALUE,
    NATIVE_FORMAT,
    UNIT_SPECIFIERS,
    MetadataNode,
    PngMetadata,
    default_png_metadata,
)
from .raster import PNG_SIGNATURE, IndexedImage, RasterImage

logger = logging.getLogger("dpipng.codec")

AnyImage = Union[RasterImage, IndexedImage]

TEXT_TAGS = ("tEXt", "zTXt", "iTXt")


@dataclass(frozen=True)
class WriteParams:
    """Encoder settings shared by all backends"""

    compress_level: int = 6

    def __post_init__(self) -> None:
        if isinstance(self.compress_level, bool) or not 0 <= self.compress_level <= 9:
            raise ValueError(f"compress_level must be 0..9, got {self.compress_level}")


def build_chunk(chunk_type: bytes, data: bytes) -> bytes:
    """Serialize one chunk: length, type, data, CRC32 over type + data"""
    crc = zlib.crc32(data, zlib.crc32(chunk_type)) & 0xFFFFFFFF
    return struct.pack(">I", len(data)) + chunk_type + data + struct.pack(">I", crc)


def iter_chunks(data: bytes) -> Iterator[Tuple[bytes, bytes]]:
    """Yield (type, payload) for every chunk up to and including IEND, checking CRCs"""
    if not data.startswith(PNG_SIGNATURE):
        raise UnsupportedSourceError("Not a valid PNG byte stream")

    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(data):
        length = struct.unpack(">I", data[offset : offset + 4])[0]
        chunk_type = data[offset + 4 : offset + 8]
        end = offset + 12 + length
        if end > len(data):
            raise UnsupportedSourceError(f"Truncated {chunk_type!r} chunk at offset {offset}")
        payload = data[offset + 8 : end - 4]
        expected = struct.unpack(">I", data[end - 4 : end])[0]
        if zlib.crc32(payload, zlib.crc32(chunk_type)) & 0xFFFFFFFF != expected:
            raise UnsupportedSourceError(f"CRC mismatch in {chunk_type!r} chunk at offset {offset}")
        yield chunk_type, payload
        offset = end
        if chunk_type == b"IEND":
            break


def insert_chunk_after_ihdr(data: bytes, chunk_type: bytes, payload: bytes) -> bytes:
    """Place a chunk right after IHDR, dropping any existing chunk of that type"""
    out = [PNG_SIGNATURE]
    inserted = False
    for existing_type, existing_payload in iter_chunks(data):
        if existing_type == chunk_type:
            continue
        out.append(build_chunk(existing_type, existing_payload))
        if existing_type == b"IHDR":
            out.append(build_chunk(chunk_type, payload))
            inserted = True
    if not inserted:
        raise ValueError("PNG stream has no IHDR chunk")
    return b"".join(out)


def insert_chunks_before_iend(data: bytes, chunks: List[Tuple[bytes, bytes]]) -> bytes:
    """Append (type, payload) chunks right before IEND"""
    out = [PNG_SIGNATURE]
    ended = False
    for existing_type, existing_payload in iter_chunks(data):
        if existing_type == b"IEND":
            out.extend(build_chunk(chunk_type, payload) for chunk_type, payload in chunks)
            ended = True
        out.append(build_chunk(existing_type, existing_payload))
    if not ended:
        raise ValueError("PNG stream has no IEND chunk")
    return b"".join(out)


def parse_phys(node: MetadataNode) -> Tuple[int, int, int]:
    """(pixels per unit X, pixels per unit Y, unit byte) from a pHYs node"""
    try:
        x = int(node.get_attribute("pixelsPerUnitXAxis", ""))  # type: ignore[arg-type]
        y = int(node.get_attribute("pixelsPerUnitYAxis", ""))  # type: ignore[arg-type]
    except ValueError as e:
        raise ValueError(f"pHYs node needs integer axis values: {node.attributes}") from e

    unit_name = node.get_attribute("unitSpecifier", "unknown")
    if unit_name not in UNIT_SPECIFIERS:
        raise ValueError(f"Unknown pHYs unit specifier: {unit_name!r}")
    for value in (x, y):
        if not 0 <= value <= MAX_PHYS_VALUE:
            raise ValueError(f"pHYs value out of range: {value}")
    return x, y, UNIT_SPECIFIERS[unit_name]  # type: ignore[index]


def phys_payload(node: MetadataNode) -> bytes:
    return struct.pack(">IIB", *parse_phys(node))


def _keyword(node: MetadataNode) -> str:
    keyword = node.get_attribute("keyword", "")
    try:
        size = len(keyword.encode("latin-1"))  # type: ignore[union-attr]
    except UnicodeEncodeError as e:
        raise ValueError(f"{node.tag} keyword must be Latin-1: {keyword!r}") from e
    if not 1 <= size <= 79:
        raise ValueError(f"{node.tag} keyword must be 1 to 79 bytes: {keyword!r}")
    return keyword  # type: ignore[return-value]


def _is_compressed(node: MetadataNode) -> bool:
    return (node.get_attribute("compressed") or "FALSE").upper() == "TRUE"


def text_nodes(metadata: PngMetadata) -> List[MetadataNode]:
    """Text chunk nodes of the native tree in document order"""
    return [node for node in metadata.as_tree(NATIVE_FORMAT).iter() if node.tag in TEXT_TAGS]


def text_payload(node: MetadataNode) -> bytes:
    """Serialize a tEXt, zTXt or iTXt node"""
    key = _keyword(node).encode("latin-1")
    value = node.get_attribute("value", "")
    if node.tag == "tEXt":
        return key + b"\0" + value.encode("latin-1")  # type: ignore[union-attr]
    if node.tag == "zTXt":
        return key + b"\0\0" + zlib.compress(value.encode("latin-1"))  # type: ignore[union-attr]
    if node.tag == "iTXt":
        compressed = _is_compressed(node)
        text = value.encode("utf-8")  # type: ignore[union-attr]
        if compressed:
            text = zlib.compress(text)
        return (
            key
            + b"\0"
            + bytes([int(compressed), 0])
            + node.get_attribute("languageTag", "").encode("ascii")  # type: ignore[union-attr]
            + b"\0"
            + node.get_attribute("translatedKeyword", "").encode("utf-8")  # type: ignore[union-attr]
            + b"\0"
            + text
        )
    raise ValueError(f"Not a text chunk: {node.tag}")


def parse_text(chunk_type: bytes, payload: bytes) -> MetadataNode:
    """Node for a tEXt, zTXt or iTXt payload"""
    tag = chunk_type.decode("ascii")
    keyword, _, rest = payload.partition(b"\0")
    attributes = {"keyword": keyword.decode("latin-1")}
    try:
        if tag == "tEXt":
            attributes["value"] = rest.decode("latin-1")
        elif tag == "zTXt":
            attributes["value"] = zlib.decompress(rest[1:]).decode("latin-1")
        elif tag == "iTXt":
            if len(rest) < 2:
                raise UnsupportedSourceError(f"iTXt chunk {keyword!r} is truncated")
            compressed = rest[0] == 1
            language, _, rest = rest[2:].partition(b"\0")
            translated, _, text = rest.partition(b"\0")
            if compressed:
                text = zlib.decompress(text)
            attributes.update(
                {
                    "value": text.decode("utf-8"),
                    "languageTag": language.decode("ascii"),
                    "translatedKeyword": translated.decode("utf-8"),
                    "compressed": "TRUE" if compressed else "FALSE",
                }
            )
        else:
            raise ValueError(f"Not a text chunk: {tag}")
    except (zlib.error, UnicodeDecodeError) as e:
        raise UnsupportedSourceError(f"Cannot read {tag} chunk {keyword!r}: {e}") from e
    return MetadataNode(tag, attributes)


class PngBackend:
    """Base class for PNG encoder backends"""

    name = "base"

    def default_write_params(self) -> WriteParams:
        return WriteParams()

    def default_image_metadata(self, pixel_type: str, params: WriteParams) -> PngMetadata:
        return default_png_metadata(pixel_type)

    def can_encode(self, image: AnyImage) -> bool:
        return isinstance(image, (RasterImage, IndexedImage))

    def write(self, image: AnyImage, metadata: PngMetadata, params: WriteParams) -> bytes:
        raise NotImplementedError


class PillowPngBackend(PngBackend):
    """Pillow's PNG plugin; writes true-color and palette images"""

    name = "pillow"

    def write(self, image: AnyImage, metadata: PngMetadata, params: WriteParams) -> bytes:
        pil_image = image.to_pil()
        save_kwargs: Dict[str, Any] = {
            "format": "PNG",
            "compress_level": params.compress_level,
        }

        if isinstance(image, IndexedImage) and image.palette.bit_depth == 8:
            # Pillow would otherwise shrink small palettes below 8 bits
            save_kwargs["bits"] = 8

        phys = metadata.find_chunk("pHYs")
        if phys is not None:
            x, y, unit = parse_phys(phys)
            if unit != UNIT_SPECIFIERS["meter"]:
                raise ValueError("Pillow only writes pHYs in meters")
            # Pillow writes int(dpi / 0.0254 + 0.5), which gives back x and y exactly
            save_kwargs["dpi"] = (x * INCH_IN_METERS, y * INCH_IN_METERS)

        texts = text_nodes(metadata)
        if texts:
            save_kwargs["pnginfo"] = self._pnginfo(texts)

        with io.BytesIO() as output:
            pil_image.save(output, **save_kwargs)
            return output.getvalue()

    @staticmethod
    def _pnginfo(nodes: List[MetadataNode]) -> PngInfo:
        info = PngInfo()
        for node in nodes:
            keyword = _keyword(node)
            value = node.get_attribute("value", "")
            if node.tag == "iTXt":
                info.add_itxt(
                    keyword,
                    value,
                    lang=node.get_attribute("languageTag", ""),
                    tkey=node.get_attribute("translatedKeyword", ""),
                    zip=_is_compressed(node),
                )
            else:
                info.add_text(keyword, value, zip=node.tag == "zTXt")
        return info


class OpenCvPngBackend(PngBackend):
    """OpenCV's libpng encoder; true-color only, pHYs and text chunks spliced in after encoding"""

    name = "opencv"

    def can_encode(self, image: AnyImage) -> bool:
        return isinstance(image, RasterImage)

    def write(self, image: AnyImage, metadata: PngMetadata, params: WriteParams) -> bytes:
        if not isinstance(image, RasterImage):
            raise TypeError("OpenCV backend only writes true-color images")

        pixels = np.array(image.pixels)
        if image.is_opaque:
            bgr = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGR)
        else:
            bgr = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)

        ok, buffer = cv2.imencode(".png", bgr, [cv2.IMWRITE_PNG_COMPRESSION, params.compress_level])
        if not ok:
            raise OSError("cv2.imencode could not produce a PNG")
        data = buffer.tobytes()

        phys = metadata.find_chunk("pHYs")
        if phys is not None:
            data = insert_chunk_after_ihdr(data, b"pHYs", phys_payload(phys))
        texts = text_nodes(metadata)
        if texts:
            data = insert_chunks_before_iend(
                data, [(node.tag.encode("ascii"), text_payload(node)) for node in texts]
            )
        return data


def available_backends() -> List[PngBackend]:
    """PNG backends in the order they are tried"""
    return [PillowPngBackend(), OpenCvPngBackend()]
