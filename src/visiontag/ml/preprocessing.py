"""Image preprocessing: decoding uploads and encoding model input tensors.

The encoder turns an image of any size into the fixed-size, row-major
(NHWC) byte buffer a quantized classification model expects. Each pixel
contributes ``channels`` bytes in R, G, B (, A) order; alpha is dropped for
three-channel models.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from visiontag.errors import ImageDecodeError, InvalidDimensionsError, UnsupportedPixelFormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Pillow modes that convert losslessly enough to 8-bit RGB components.
RGB_CONVERTIBLE_MODES: frozenset[str] = frozenset(
    {"1", "L", "LA", "P", "PA", "RGB", "RGBA", "RGBX", "CMYK", "YCbCr"}
)

_CHANNEL_MODES: dict[int, str] = {1: "L", 3: "RGB", 4: "RGBA"}


@dataclass(frozen=True)
class TensorSpec:
    """Shape of a model's image input tensor.

    Only a batch size of one is supported.
    """

    width: int
    height: int
    channels: int = 3
    batch_size: int = 1

    def __post_init__(self) -> None:
        for name in ("width", "height", "channels"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidDimensionsError(f"TensorSpec.{name} must be a positive integer, got {value!r}")
        if self.batch_size != 1:
            raise InvalidDimensionsError(f"Only batch_size=1 is supported, got {self.batch_size!r}")

    @property
    def byte_length(self) -> int:
        return self.batch_size * self.width * self.height * self.channels

    @property
    def shape(self) -> tuple[int, int, int, int]:
        """NHWC shape of the encoded tensor."""
        return (self.batch_size, self.height, self.width, self.channels)


@dataclass(frozen=True)
class EncodedTensor:
    """An encoded input buffer together with the spec it was built for."""

    spec: TensorSpec
    data: bytes

    def as_array(self) -> NDArray[np.uint8]:
        """Return a fresh uint8 array shaped ``spec.shape``."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.spec.shape).copy()


def decode_image(image_bytes: bytes, *, max_file_size: int, max_image_pixels: int) -> Image.Image:
    """Decode raw upload bytes into a Pillow image.

    EXIF orientation is applied so the pixel grid matches what the camera saw.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_file_size: Upper bound on ``len(image_bytes)``.
        max_image_pixels: Upper bound on ``width * height``.

    Returns:
        A fully loaded Pillow image.

    Raises:
        ImageDecodeError: If the bytes are empty, undecodable, or exceed a limit.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image upload")
    if len(image_bytes) > max_file_size:
        raise ImageDecodeError(f"Image file is {len(image_bytes)} bytes, limit is {max_file_size}")

    try:
        image = Image.open(io.BytesIO(image_bytes))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ImageDecodeError("Could not decode image") from exc

    width, height = image.size
    if width * height > max_image_pixels:
        raise ImageDecodeError(f"Image has {width * height} pixels, limit is {max_image_pixels}")

    try:
        image.load()
        transposed = ImageOps.exif_transpose(image)
    except (Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise ImageDecodeError("Could not decode image") from exc

    logger.debug("Decoded %s image (%dx%d, mode=%s)", image.format, width, height, image.mode)
    return transposed if transposed is not None else image


def as_pil_image(image: Image.Image | NDArray[np.uint8]) -> Image.Image:
    """Validate an image's pixel format and return it as a Pillow image.

    Raises:
        UnsupportedPixelFormatError: For Pillow modes without RGB components,
            non-uint8 arrays, or arrays that are not HxW, HxWx1, HxWx3 or HxWx4.
    """
    if isinstance(image, Image.Image):
        if image.mode not in RGB_CONVERTIBLE_MODES:
            raise UnsupportedPixelFormatError(f"Pixel format {image.mode!r} has no RGB components")
        return image

    array = np.asarray(image)
    if array.dtype != np.uint8:
        raise UnsupportedPixelFormatError(f"Image arrays must be uint8, got {array.dtype}")
    if array.ndim == 3 and array.shape[2] == 1:
        array = array[:, :, 0]
    if array.ndim == 2 or (array.ndim == 3 and array.shape[2] in (3, 4)):
        # fromarray infers L, RGB or RGBA from the shape.
        return Image.fromarray(np.ascontiguousarray(array))
    raise UnsupportedPixelFormatError(f"Unsupported image array shape {array.shape}")


def encode_image(image: Image.Image | NDArray[np.uint8], spec: TensorSpec) -> EncodedTensor:
    """Encode an image into a row-major byte tensor matching ``spec``.

    The image is scaled (not cropped) to exactly ``spec.width x spec.height``
    with bilinear filtering, then every pixel is written as ``spec.channels``
    bytes. The source image is never modified.

    Args:
        image: A Pillow image or an HxW / HxWxC uint8 array, at least 1x1.
        spec: Target tensor shape.

    Returns:
        An :class:`EncodedTensor` whose data is exactly ``spec.byte_length`` bytes.

    Raises:
        InvalidDimensionsError: If the source image has no pixels.
        UnsupportedPixelFormatError: If the image cannot yield RGB components
            or ``spec.channels`` is not 1, 3 or 4.
    """
    if isinstance(image, np.ndarray) and (image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0):
        raise InvalidDimensionsError(f"Source image must be at least 1x1, got shape {image.shape}")

    source = as_pil_image(image)
    if source.width <= 0 or source.height <= 0:
        raise InvalidDimensionsError(f"Source image must be at least 1x1, got {source.width}x{source.height}")

    target_mode = _CHANNEL_MODES.get(spec.channels)
    if target_mode is None:
        raise UnsupportedPixelFormatError(f"Cannot encode {spec.channels} channels per pixel")

    # convert() and resize() both return new images.
    converted = source if source.mode == target_mode else source.convert(target_mode)
    resized = converted.resize((spec.width, spec.height), resample=Image.Resampling.BILINEAR)

    pixels = np.asarray(resized, dtype=np.uint8).reshape(spec.shape)
    data = np.ascontiguousarray(pixels).tobytes()
    if len(data) != spec.byte_length:
        raise InvalidDimensionsError(f"Encoded {len(data)} bytes, expected {spec.byte_length}")
    return EncodedTensor(spec=spec, data=data)
