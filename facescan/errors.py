"""
Error types raised by the face pipeline.

Configuration errors are fatal and surface at model construction. Decode and
inference errors belong to a single picture: the batch task records the
picture as broken and moves on.
"""


class FaceScanError(Exception):
    """Base class for all facescan errors."""


class ConfigurationError(FaceScanError):
    """Bad weights, a malformed anchor table or an unusable device."""


class DecodeError(FaceScanError):
    """An image could not be opened or decoded."""

    def __init__(self, path, message: str = ""):
        self.path = path
        super().__init__(message or f"could not decode {path}")


class ImageNotFoundError(DecodeError):
    def __init__(self, path):
        super().__init__(path, f"image not found: {path}")


class UnsupportedImageError(DecodeError):
    def __init__(self, path, reason: str = ""):
        detail = f" ({reason})" if reason else ""
        super().__init__(path, f"unsupported image format: {path}{detail}")


class InferenceError(FaceScanError):
    """A tensor operation failed during the forward pass or decoding."""
