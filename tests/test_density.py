"""Tests for the density metadata writer and PNG backends"""

import io
import struct
import zlib

import numpy as np
import pytest
from PIL import Image

from dpipng.codec import (
    OpenCvPngBackend,
    PillowPngBackend,
    PngBackend,
    WriteParams,
    build_chunk,
    insert_chunks_before_iend,
    insert_chunk_after_ihdr,
    iter_chunks,
    parse_text,
    text_payload,
)
from dpipng.density import (
    PhysicalDensity,
    encode_with_density,
    inject_density,
    pixel_size_mm,
    read_density,
    read_metadata,
)
from dpipng.errors import (
    AmbiguousMetadataError,
    EncodeFailureError,
    MetadataUnsupportedError,
    NoCapableEncoderError,
    UnsupportedSourceError,
)
from dpipng.metadata import NATIVE_FORMAT, MetadataNode, PngMetadata, default_png_metadata
from dpipng.palette import Binary, EightBit, FixedSmall, reduce
from dpipng.raster import RasterImage, decode_png

from tests.conftest import png_bytes


def chunk(data: bytes, chunk_type: bytes) -> bytes:
    return next(payload for ctype, payload in iter_chunks(data) if ctype == chunk_type)


def two_phys_metadata() -> PngMetadata:
    root = MetadataNode(
        NATIVE_FORMAT,
        children=[
            MetadataNode("IHDR", {"colorType": "RGB"}),
            MetadataNode("pHYs", {"pixelsPerUnitXAxis": "1", "pixelsPerUnitYAxis": "1", "unitSpecifier": "meter"}),
            MetadataNode("pHYs", {"pixelsPerUnitXAxis": "2", "pixelsPerUnitYAxis": "2", "unitSpecifier": "meter"}),
        ],
    )
    return PngMetadata(root)


class RecordingBackend(PngBackend):
    """Backend double that records calls and can be told to fail"""

    def __init__(self, name, read_only=False, standard=True, error=None, capable=True):
        self.name = name
        self.read_only = read_only
        self.standard = standard
        self.error = error
        self.capable = capable
        self.writes = []

    def default_image_metadata(self, pixel_type, params):
        metadata = default_png_metadata(pixel_type, read_only=self.read_only)
        if not self.standard:
            return PngMetadata(metadata.as_tree(NATIVE_FORMAT), standard_format_supported=False)
        return metadata

    def can_encode(self, image):
        return self.capable

    def write(self, image, metadata, params):
        self.writes.append(metadata.find_chunk("pHYs"))
        if self.error is not None:
            raise self.error
        return PillowPngBackend().write(image, metadata, params)


class TestPhysicalDensity:
    """DPI to pixels per meter"""

    @pytest.mark.parametrize(
        "dpi,expected",
        [(600, 23622), (600.01, 23622), (300, 11811), (72, 2835), (96, 3780), (1, 39)],
    )
    def test_pixels_per_meter(self, dpi, expected):
        assert PhysicalDensity(dpi).pixels_per_meter == expected

    @pytest.mark.parametrize(
        "dpi", [0, -1, float("nan"), float("inf"), True, "600", None, 1e9, 1e308, 0.001, 0.0126]
    )
    def test_invalid_dpi(self, dpi):
        with pytest.raises(ValueError):
            PhysicalDensity(dpi)


class TestInjectDensity:
    """pHYs node construction in the metadata tree"""

    def test_creates_node_and_keeps_defaults(self):
        metadata = default_png_metadata()

        inject_density(metadata, PhysicalDensity(600))

        assert metadata.find_chunk("pHYs").attributes == {
            "pixelsPerUnitXAxis": "23622",
            "pixelsPerUnitYAxis": "23622",
            "unitSpecifier": "meter",
        }
        assert metadata.find_chunk("IHDR").get_attribute("colorType") == "RGB"

    def test_reuses_existing_node(self):
        root = MetadataNode(NATIVE_FORMAT, children=[MetadataNode("pHYs", {"pixelsPerUnitXAxis": "5"})])
        metadata = PngMetadata(root)

        inject_density(metadata, PhysicalDensity(300))

        tree = metadata.as_tree(NATIVE_FORMAT)
        assert len(tree.find_all("pHYs")) == 1
        assert tree.child("pHYs").get_attribute("pixelsPerUnitXAxis") == "11811"

    def test_updates_nested_node_in_place(self):
        nested = MetadataNode("pHYs", {"pixelsPerUnitXAxis": "1", "pixelsPerUnitYAxis": "1", "unitSpecifier": "meter"})
        root = MetadataNode(NATIVE_FORMAT, children=[MetadataNode("group", {"id": "g"}, [nested])])
        metadata = PngMetadata(root)

        inject_density(metadata, PhysicalDensity(600))
        inject_density(metadata, PhysicalDensity(300))

        tree = metadata.as_tree(NATIVE_FORMAT)
        nodes = tree.find_all("pHYs")
        assert len(nodes) == 1
        assert tree.child("pHYs") is None
        assert tree.child("group").get_attribute("id") == "g"
        assert tree.child("group").child("pHYs").get_attribute("pixelsPerUnitXAxis") == "11811"
        assert metadata.find_chunk("pHYs").get_attribute("pixelsPerUnitYAxis") == "11811"

    def test_ambiguous_metadata_is_not_mutated(self):
        metadata = two_phys_metadata()

        with pytest.raises(AmbiguousMetadataError):
            inject_density(metadata, PhysicalDensity(600))

        nodes = metadata.as_tree(NATIVE_FORMAT).find_all("pHYs")
        assert [n.get_attribute("pixelsPerUnitXAxis") for n in nodes] == ["1", "2"]
        assert [n.get_attribute("pixelsPerUnitYAxis") for n in nodes] == ["1", "2"]


class TestEncodeWithDensity:
    """End-to-end encoding with the default backends"""

    def test_density_round_trip(self, gradient_image):
        for dpi in (1, 72, 96, 150.5, 300, 600, 1200, 2400):
            data = encode_with_density(gradient_image, dpi)
            density = read_density(data)

            assert density.unit == "meter"
            assert density.pixels_per_unit_x == density.pixels_per_unit_y
            assert density.pixels_per_unit_x == PhysicalDensity(dpi).pixels_per_meter
            assert abs(density.dots_per_inch - dpi) <= 0.0254

    def test_pillow_reads_the_dpi(self, gradient_image):
        data = encode_with_density(gradient_image, 600)

        with Image.open(io.BytesIO(data)) as image:
            x_dpi, y_dpi = image.info["dpi"]
        assert x_dpi == pytest.approx(600, abs=0.05)
        assert y_dpi == pytest.approx(600, abs=0.05)

    def test_pixels_survive(self, gradient_image):
        data = encode_with_density(gradient_image, 300)

        assert np.array_equal(decode_png(data).pixels, gradient_image.pixels)

    def test_repeated_encoding_is_identical(self, gradient_image):
        first = encode_with_density(gradient_image, 600)
        second = encode_with_density(gradient_image, 600)

        assert chunk(first, b"pHYs") == chunk(second, b"pHYs")
        assert first == second

    def test_dpi_rounding_to_same_value(self, gradient_image):
        first = encode_with_density(gradient_image, 600)
        second = encode_with_density(gradient_image, 600.01)

        assert chunk(first, b"pHYs") == chunk(second, b"pHYs") == struct.pack(">IIB", 23622, 23622, 1)

    def test_binary_white_red_at_600_dpi(self, gradient_image):
        indexed = reduce(gradient_image, Binary("#ffffff", "#ff0000"))

        data = encode_with_density(indexed, PhysicalDensity(600))

        ihdr = chunk(data, b"IHDR")
        width, height, bit_depth, color_type = struct.unpack(">IIBB", ihdr[:10])
        assert (width, height) == (100, 100)
        assert bit_depth == 1
        assert color_type == 3
        assert chunk(data, b"PLTE") == bytes([255, 255, 255, 255, 0, 0])
        assert read_density(data).pixels_per_unit_x == 23622
        assert read_density(data).pixels_per_unit_y == 23622
        with Image.open(io.BytesIO(data)) as image:
            assert image.mode == "P"

    def test_fixed_small_uses_four_bits(self, gradient_image):
        indexed = reduce(gradient_image, FixedSmall())

        data = encode_with_density(indexed, 300)

        assert chunk(data, b"IHDR")[8] == 4
        assert len(chunk(data, b"PLTE")) == 6 * 3

    def test_eight_bit_stays_eight_bits(self, sixteen_color_image):
        indexed = reduce(sixteen_color_image, EightBit())

        data = encode_with_density(indexed, 300)

        assert chunk(data, b"IHDR")[8] == 8
        decoded = decode_png(data)
        assert np.array_equal(decoded.pixels[:, :, :3], indexed.to_rgb_array())

    def test_rejects_non_image(self, gradient_rgb):
        with pytest.raises(UnsupportedSourceError):
            encode_with_density(gradient_rgb, 600)

    def test_rejects_invalid_dpi(self, gradient_image):
        with pytest.raises(ValueError):
            encode_with_density(gradient_image, 0)

    def test_out_of_range_dpi_fails_before_any_backend(self, gradient_image):
        backend = RecordingBackend("unused")

        for dpi in (1e9, 0.001):
            with pytest.raises(ValueError):
                encode_with_density(gradient_image, dpi, backends=[backend])

        assert backend.writes == []

    def test_nested_template_node_is_written(self, gradient_image):
        class NestedBackend(RecordingBackend):
            def default_image_metadata(self, pixel_type, params):
                nested = MetadataNode("pHYs", {"pixelsPerUnitXAxis": "1", "pixelsPerUnitYAxis": "1"})
                return PngMetadata(MetadataNode(NATIVE_FORMAT, children=[MetadataNode("group", children=[nested])]))

        backend = NestedBackend("nested")

        data = encode_with_density(gradient_image, 600, backends=[backend])

        assert backend.writes[0].get_attribute("pixelsPerUnitXAxis") == "23622"
        assert read_density(data).pixels_per_unit_x == 23622


class TestBackendEnumeration:
    """Capability-checked strategies, tried once each in order"""

    def test_skips_read_only_and_non_standard_templates(self, gradient_image):
        read_only = RecordingBackend("read-only", read_only=True)
        non_standard = RecordingBackend("non-standard", standard=False)
        working = RecordingBackend("working")

        data = encode_with_density(gradient_image, 600, backends=[read_only, non_standard, working])

        assert read_only.writes == []
        assert non_standard.writes == []
        assert len(working.writes) == 1
        assert read_density(data).pixels_per_unit_x == 23622

    def test_first_capable_backend_wins(self, gradient_image):
        first = RecordingBackend("first")
        second = RecordingBackend("second")

        encode_with_density(gradient_image, 600, backends=[first, second])

        assert len(first.writes) == 1
        assert second.writes == []

    def test_failed_write_falls_through_once(self, gradient_image):
        broken = RecordingBackend("broken", error=OSError("disk on fire"))
        working = RecordingBackend("working")

        encode_with_density(gradient_image, 600, backends=[broken, working])

        assert len(broken.writes) == 1
        assert len(working.writes) == 1

    def test_all_writes_fail(self, gradient_image):
        error = OSError("codec exploded")
        backends = [RecordingBackend("a", error=ValueError("nope")), RecordingBackend("b", error=error)]

        with pytest.raises(EncodeFailureError) as excinfo:
            encode_with_density(gradient_image, 600, backends=backends)

        assert excinfo.value.__cause__ is error
        assert [len(b.writes) for b in backends] == [1, 1]

    def test_no_backends(self, gradient_image):
        with pytest.raises(NoCapableEncoderError):
            encode_with_density(gradient_image, 600, backends=[])

    def test_no_capable_backend(self, gradient_image):
        backends = [RecordingBackend("ro", read_only=True), RecordingBackend("nope", capable=False)]

        with pytest.raises(NoCapableEncoderError) as excinfo:
            encode_with_density(gradient_image, 600, backends=backends)

        assert isinstance(excinfo.value.__cause__, MetadataUnsupportedError)

    def test_ambiguous_template_fails(self, gradient_image):
        class AmbiguousBackend(RecordingBackend):
            def default_image_metadata(self, pixel_type, params):
                return two_phys_metadata()

        ambiguous = AmbiguousBackend("ambiguous")
        fallback = RecordingBackend("fallback")

        with pytest.raises(AmbiguousMetadataError):
            encode_with_density(gradient_image, 600, backends=[ambiguous, fallback])

        assert ambiguous.writes == []
        assert fallback.writes == []

    def test_write_params_are_passed(self, gradient_image):
        seen = []

        class ParamsBackend(RecordingBackend):
            def write(self, image, metadata, params):
                seen.append(params)
                return super().write(image, metadata, params)

        encode_with_density(
            gradient_image, 600, backends=[ParamsBackend("p")], params=WriteParams(compress_level=9)
        )

        assert seen == [WriteParams(compress_level=9)]


class TestOpenCvBackend:
    """OpenCV encoder with pHYs splicing"""

    def test_true_color_round_trip(self, gradient_image):
        data = encode_with_density(gradient_image, 600, backends=[OpenCvPngBackend()])

        assert np.array_equal(decode_png(data).pixels, gradient_image.pixels)
        assert read_density(data).pixels_per_unit_x == 23622
        assert [ctype for ctype, _ in iter_chunks(data)][:2] == [b"IHDR", b"pHYs"]

    def test_alpha_round_trip(self):
        pixels = np.zeros((4, 4, 4), dtype=np.uint8)
        pixels[:, :, 0] = 200
        pixels[:, :, 3] = np.arange(16, dtype=np.uint8).reshape(4, 4) * 16
        image = RasterImage(pixels)

        data = encode_with_density(image, 96, backends=[OpenCvPngBackend()])

        assert np.array_equal(decode_png(data).pixels, pixels)

    def test_indexed_images_fall_back(self, gradient_image):
        indexed = reduce(gradient_image, Binary())

        with pytest.raises(NoCapableEncoderError):
            encode_with_density(indexed, 600, backends=[OpenCvPngBackend()])

        data = encode_with_density(indexed, 600, backends=[OpenCvPngBackend(), PillowPngBackend()])
        assert chunk(data, b"IHDR")[8] == 1


class TestChunks:
    """Chunk-level helpers"""

    def test_build_chunk_crc(self):
        built = build_chunk(b"pHYs", b"\x00" * 9)

        assert built[:4] == struct.pack(">I", 9)
        assert built[4:8] == b"pHYs"
        assert struct.unpack(">I", built[-4:])[0] == zlib.crc32(b"pHYs" + b"\x00" * 9)

    def test_insert_replaces_existing_chunk(self, gradient_rgb):
        original = png_bytes(Image.fromarray(gradient_rgb), dpi=(72, 72))

        patched = insert_chunk_after_ihdr(original, b"pHYs", struct.pack(">IIB", 100, 200, 1))

        types = [ctype for ctype, _ in iter_chunks(patched)]
        assert types.count(b"pHYs") == 1
        assert types[1] == b"pHYs"
        assert read_density(patched).pixels_per_unit_x == 100
        assert read_density(patched).pixels_per_unit_y == 200
        assert read_density(patched).dots_per_inch is None
        with Image.open(io.BytesIO(patched)) as image:
            image.load()

    def test_read_density_absent(self, gradient_png):
        assert read_density(gradient_png) is None

    def test_read_density_rejects_garbage(self):
        with pytest.raises(UnsupportedSourceError):
            read_density(b"definitely not a png")

    def test_truncated_chunk(self, gradient_png):
        with pytest.raises(UnsupportedSourceError):
            list(iter_chunks(gradient_png[:30]))

    def test_write_params_validation(self):
        with pytest.raises(ValueError):
            WriteParams(compress_level=10)

    def test_crc_mismatch(self, gradient_image):
        data = encode_with_density(gradient_image, 600)
        at = data.index(b"pHYs") + 4
        corrupted = data[:at] + bytes([data[at] ^ 0x01]) + data[at + 1 :]

        with pytest.raises(UnsupportedSourceError):
            read_density(corrupted)

    def test_insert_before_iend(self, gradient_png):
        patched = insert_chunks_before_iend(gradient_png, [(b"tEXt", b"Title\0scan")])

        types = [ctype for ctype, _ in iter_chunks(patched)]
        assert types[-2:] == [b"tEXt", b"IEND"]


def text_metadata(*nodes) -> PngMetadata:
    metadata = default_png_metadata("RGB")
    metadata.merge_tree(NATIVE_FORMAT, MetadataNode(NATIVE_FORMAT, children=list(nodes)))
    return metadata


class TestTextChunks:
    """Merged text nodes reach the encoded bytes"""

    @pytest.mark.parametrize("backend", [PillowPngBackend(), OpenCvPngBackend()], ids=["pillow", "opencv"])
    def test_text_nodes_are_written(self, gradient_image, backend):
        metadata = text_metadata(
            MetadataNode("tEXt", {"keyword": "Author", "value": "x"}),
            MetadataNode("tEXt", {"keyword": "Title", "value": "scan"}),
            MetadataNode("zTXt", {"keyword": "Comment", "value": "packed " * 20}),
            MetadataNode("iTXt", {"keyword": "Caption", "value": "naïve €", "languageTag": "fr"}),
        )

        data = backend.write(gradient_image, metadata, WriteParams())

        with Image.open(io.BytesIO(data)) as image:
            image.load()
            assert image.text["Author"] == "x"
            assert image.text["Title"] == "scan"
            assert image.text["Comment"] == "packed " * 20
            assert image.text["Caption"] == "naïve €"

    def test_text_survives_density_injection(self, gradient_image):
        class TextBackend(RecordingBackend):
            def default_image_metadata(self, pixel_type, params):
                return text_metadata(MetadataNode("tEXt", {"keyword": "Software", "value": "dpipng"}))

        data = encode_with_density(gradient_image, 300, backends=[TextBackend("text")])

        assert read_density(data).pixels_per_unit_x == 11811
        text = read_metadata(data).find_chunks("tEXt")
        assert [(n.get_attribute("keyword"), n.get_attribute("value")) for n in text] == [("Software", "dpipng")]

    @pytest.mark.parametrize("keyword", ["", "k" * 80, "clé€"])
    def test_invalid_keyword(self, gradient_image, keyword):
        metadata = text_metadata(MetadataNode("tEXt", {"keyword": keyword, "value": "v"}))

        for backend in (PillowPngBackend(), OpenCvPngBackend()):
            with pytest.raises(ValueError):
                backend.write(gradient_image, metadata, WriteParams())

    def test_text_payload_round_trip(self):
        node = MetadataNode(
            "iTXt",
            {"keyword": "Caption", "value": "ü", "languageTag": "de", "translatedKeyword": "Titel", "compressed": "TRUE"},
        )

        parsed = parse_text(b"iTXt", text_payload(node))

        assert parsed.attributes == node.attributes


class TestReadMetadata:
    """Metadata read back from PNG bytes"""

    def test_header_density_and_pixel_size(self, gradient_image):
        data = encode_with_density(gradient_image, 600)

        metadata = read_metadata(data)

        ihdr = metadata.find_chunk("IHDR")
        assert ihdr.get_attribute("width") == "100"
        assert ihdr.get_attribute("colorType") == "RGB"
        assert metadata.find_chunk("pHYs").get_attribute("pixelsPerUnitXAxis") == "23622"
        assert metadata.read_only
        horizontal, vertical = pixel_size_mm(metadata)
        assert horizontal == pytest.approx(1000 / 23622)
        assert vertical == pytest.approx(1000 / 23622)

    def test_without_density(self, gradient_png):
        metadata = read_metadata(gradient_png)

        assert metadata.find_chunk("pHYs") is None
        assert pixel_size_mm(metadata) is None
