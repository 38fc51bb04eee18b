"""Error types raised by dpipng"""


class DpiPngError(Exception):
    """Base class for every error raised by this package"""


class InvalidPaletteError(DpiPngError, ValueError):
    """Palette policy parameters yield zero entries or more than the bit depth allows"""


class UnsupportedSourceError(DpiPngError, ValueError):
    """Source cannot be read as per-pixel true color"""


class MetadataUnsupportedError(DpiPngError):
    """Metadata template is read-only or lacks the standard metadata format"""


class AmbiguousMetadataError(DpiPngError):
    """Metadata tree holds more than one density node"""


class NoCapableEncoderError(DpiPngError):
    """No enumerated PNG backend was able to take the image and its metadata"""


class EncodeFailureError(DpiPngError):
    """A PNG backend raised while writing; the codec error is chained as __cause__"""
