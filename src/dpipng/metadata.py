# File: metadata.py
"""
PNG metadata as an addressable node tree.

The native tree ("png") has one child per chunk, named after the chunk type
(IHDR, pHYs, tEXt, ...), with string attributes. The standard tree
("standard") is a format-neutral view in which density is expressed as
millimetres per pixel under Dimension/HorizontalPixelSize and
Dimension/VerticalPixelSize.

Trees are patched in place: locate a node by tag, create it when absent,
then merge it back by tag so unrelated default fields survive.
"""

import logging
import math
from typing import Dict, Iterator, List, Optional

from .errors import AmbiguousMetadataError, MetadataUnsupportedError

logger = logging.getLogger("dpipng.metadata")

NATIVE_FORMAT = "png"
STANDARD_FORMAT = "standard"

INCH_IN_METERS = 0.0254
MM_PER_METER = 1000.0

# Chunks that may legally appear more than once; merged by appending
REPEATABLE_TAGS = frozenset({"tEXt", "iTXt", "zTXt", "sPLT"})

UNIT_SPECIFIERS = {"unknown": 0, "meter": 1}

# PNG four-byte unsigned fields are limited to 2**31 - 1
MAX_PHYS_VALUE = 2**31 - 1

COLOR_TYPES = {
    "L": "Gray",
    "LA": "GrayAlpha",
    "RGB": "RGB",
    "RGBA": "RGBAlpha",
    "P": "Palette",
}


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (PNG writers truncate x + 0.5)"""
    if not math.isfinite(value):
        raise ValueError(f"Cannot round {value} to an integer")
    return int(math.floor(value + 0.5))


class MetadataNode:
    """Element of a metadata tree: tag, string attributes, ordered children"""

    def __init__(
        self,
        tag: str,
        attributes: Optional[Dict[str, str]] = None,
        children: Optional[List["MetadataNode"]] = None,
    ) -> None:
        self.tag = tag
        self.attributes: Dict[str, str] = {k: str(v) for k, v in (attributes or {}).items()}
        self.children: List[MetadataNode] = list(children or [])

    def __repr__(self) -> str:
        return f"MetadataNode({self.tag!r}, {self.attributes!r}, children={len(self.children)})"

    def get_attribute(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(name, default)

    def set_attribute(self, name: str, value: object) -> None:
        self.attributes[name] = str(value)

    def append_child(self, node: "MetadataNode") -> "MetadataNode":
        self.children.append(node)
        return node

    def child(self, tag: str) -> Optional["MetadataNode"]:
        """First direct child with the given tag"""
        for node in self.children:
            if node.tag == tag:
                return node
        return None

    def iter(self) -> Iterator["MetadataNode"]:
        """Depth-first walk over all descendants, excluding this node"""
        for node in self.children:
            yield node
            yield from node.iter()

    def find_all(self, tag: str) -> List["MetadataNode"]:
        return [node for node in self.iter() if node.tag == tag]

    def copy(self) -> "MetadataNode":
        return MetadataNode(self.tag, self.attributes, [c.copy() for c in self.children])


def find_or_create(tree: MetadataNode, tag: str) -> MetadataNode:
    """
    Locate the single node with `tag` anywhere under `tree`, creating it as a
    direct child when absent. More than one match is an error and leaves the
    tree untouched.
    """
    matches = tree.find_all(tag)
    if len(matches) > 1:
        raise AmbiguousMetadataError(
            f"Found {len(matches)} {tag} nodes under {tree.tag}, refusing to pick one"
        )
    if matches:
        return matches[0]
    logger.debug(f"No {tag} node under {tree.tag}, creating one")
    return tree.append_child(MetadataNode(tag))


def node_path(tree: MetadataNode, node: MetadataNode) -> List[MetadataNode]:
    """Nodes from a direct child of `tree` down to `node` itself; empty when absent"""
    for child in tree.children:
        if child is node:
            return [child]
        below = node_path(child, node)
        if below:
            return [child] + below
    return []


def branch_to(tree: MetadataNode, node: MetadataNode) -> MetadataNode:
    """
    Root holding copies of `node`'s ancestors and of `node`, so merging it
    into `tree` by tag lands on the node's own position.
    """
    path = node_path(tree, node)
    if not path:
        raise ValueError(f"{node.tag} node is not part of the {tree.tag} tree")
    branch = path[-1].copy()
    for ancestor in reversed(path[:-1]):
        branch = MetadataNode(ancestor.tag, ancestor.attributes, [branch])
    return MetadataNode(tree.tag, children=[branch])


def merge_nodes(target: MetadataNode, source: MetadataNode) -> None:
    """Merge `source` into `target` by tag; unmatched nodes are appended as copies"""
    target.attributes.update(source.attributes)
    for node in source.children:
        existing = None if node.tag in REPEATABLE_TAGS else target.child(node.tag)
        if existing is None:
            target.append_child(node.copy())
        else:
            merge_nodes(existing, node)


def _pixel_size_mm(node: Optional[MetadataNode]) -> Optional[float]:
    if node is None:
        return None
    raw = node.get_attribute("value")
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError) as e:
        raise ValueError(f"{node.tag} needs a numeric value, got {raw!r}") from e
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"{node.tag} must be positive, got {value}")
    return value


class PngMetadata:
    """
    Metadata for a single PNG image.

    Args:
        root: Initial native tree; copied, never aliased
        read_only: Reject every merge
        standard_format_supported: Whether the standard tree can be read and merged
    """

    native_format_name = NATIVE_FORMAT

    def __init__(
        self,
        root: Optional[MetadataNode] = None,
        read_only: bool = False,
        standard_format_supported: bool = True,
    ) -> None:
        if root is not None and root.tag != NATIVE_FORMAT:
            raise ValueError(f"Native root must be {NATIVE_FORMAT!r}, got {root.tag!r}")
        self._root = root.copy() if root is not None else MetadataNode(NATIVE_FORMAT)
        self._read_only = read_only
        self._standard_format_supported = standard_format_supported

    @property
    def read_only(self) -> bool:
        return self._read_only

    @property
    def standard_format_supported(self) -> bool:
        return self._standard_format_supported

    def find_chunk(self, tag: str) -> Optional[MetadataNode]:
        """Copy of the first native node with `tag`, at any depth"""
        matches = self._root.find_all(tag)
        return matches[0].copy() if matches else None

    def find_chunks(self, tag: str) -> List[MetadataNode]:
        """Copies of every native node with `tag`, in document order"""
        return [node.copy() for node in self._root.find_all(tag)]

    def as_tree(self, format_name: str) -> MetadataNode:
        """Detached copy of the tree in the requested format"""
        if format_name == NATIVE_FORMAT:
            return self._root.copy()
        if format_name == STANDARD_FORMAT:
            if not self._standard_format_supported:
                raise MetadataUnsupportedError("Standard metadata format not supported")
            return self._standard_tree()
        raise MetadataUnsupportedError(f"Unknown metadata format: {format_name!r}")

    def merge_tree(self, format_name: str, root: MetadataNode) -> None:
        """Merge a tree in the given format into this metadata"""
        if self._read_only:
            raise MetadataUnsupportedError("Metadata is read-only")
        if root.tag != format_name:
            raise ValueError(f"Root node must be {format_name!r}, got {root.tag!r}")

        if format_name == NATIVE_FORMAT:
            merge_nodes(self._root, root)
        elif format_name == STANDARD_FORMAT:
            if not self._standard_format_supported:
                raise MetadataUnsupportedError("Standard metadata format not supported")
            self._merge_standard(root)
        else:
            raise MetadataUnsupportedError(f"Unknown metadata format: {format_name!r}")

    def _standard_tree(self) -> MetadataNode:
        root = MetadataNode(STANDARD_FORMAT)

        ihdr = self._root.child("IHDR")
        if ihdr is not None:
            compression = root.append_child(MetadataNode("Compression"))
            compression.append_child(
                MetadataNode("CompressionTypeName", {"value": ihdr.get_attribute("compressionMethod", "deflate")})
            )
            compression.append_child(MetadataNode("Lossless", {"value": "TRUE"}))

        phys = self.find_chunk("pHYs")
        if phys is not None and phys.get_attribute("unitSpecifier") == "meter":
            x = int(phys.get_attribute("pixelsPerUnitXAxis", "0"))  # type: ignore[arg-type]
            y = int(phys.get_attribute("pixelsPerUnitYAxis", "0"))  # type: ignore[arg-type]
            if x > 0 and y > 0:
                dimension = root.append_child(MetadataNode("Dimension"))
                dimension.append_child(MetadataNode("HorizontalPixelSize", {"value": repr(MM_PER_METER / x)}))
                dimension.append_child(MetadataNode("VerticalPixelSize", {"value": repr(MM_PER_METER / y)}))
        return root

    def _merge_standard(self, root: MetadataNode) -> None:
        dimension = root.child("Dimension")
        if dimension is None:
            return

        horizontal = _pixel_size_mm(dimension.child("HorizontalPixelSize"))
        vertical = _pixel_size_mm(dimension.child("VerticalPixelSize"))
        if horizontal is None and vertical is None:
            return
        # One axis given: the other follows it
        horizontal = horizontal or vertical
        vertical = vertical or horizontal

        x = round_half_up(MM_PER_METER / horizontal)  # type: ignore[operator]
        y = round_half_up(MM_PER_METER / vertical)  # type: ignore[operator]
        if not (1 <= x <= MAX_PHYS_VALUE and 1 <= y <= MAX_PHYS_VALUE):
            raise ValueError(f"Pixel size gives {x}x{y} pixels per meter, outside the pHYs range")
        phys = find_or_create(self._root, "pHYs")
        phys.set_attribute("pixelsPerUnitXAxis", x)
        phys.set_attribute("pixelsPerUnitYAxis", y)
        phys.set_attribute("unitSpecifier", "meter")


def default_png_metadata(pixel_type: str = "RGB", read_only: bool = False) -> PngMetadata:
    """Default metadata template for an 8-bit image of the given Pillow mode"""
    try:
        color_type = COLOR_TYPES[pixel_type]
    except KeyError:
        raise MetadataUnsupportedError(f"No PNG template for pixel type {pixel_type!r}") from None

    ihdr = MetadataNode(
        "IHDR",
        {
            "bitDepth": "8",
            "colorType": color_type,
            "compressionMethod": "deflate",
            "filterMethod": "adaptive",
            "interlaceMethod": "none",
        },
    )
    return PngMetadata(MetadataNode(NATIVE_FORMAT, children=[ihdr]), read_only=read_only)
