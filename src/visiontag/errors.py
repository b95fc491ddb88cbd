"""Exception hierarchy for VisionTag.

Value-style errors also subclass ``ValueError`` so callers that only know the
standard library contract can still catch them.
"""

from __future__ import annotations


class VisionTagError(Exception):
    """Base class for all VisionTag errors."""


class InvalidDimensionsError(VisionTagError, ValueError):
    """A tensor spec or source image has non-positive dimensions."""


class UnsupportedPixelFormatError(VisionTagError, ValueError):
    """The source image cannot yield per-pixel color components."""


class InvalidArgumentError(VisionTagError, ValueError):
    """An argument is outside its accepted range (e.g. ``k < 1``)."""


class ImageDecodeError(VisionTagError, ValueError):
    """Uploaded bytes could not be decoded into an image or exceed limits."""


class ExternalServiceError(VisionTagError, RuntimeError):
    """An external collaborator (inference session, OCR engine) failed.

    The original exception is always chained as ``__cause__``.
    """


class ModelUnavailableError(VisionTagError, RuntimeError):
    """A model or its label file could not be resolved or downloaded."""
