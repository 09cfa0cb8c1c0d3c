"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion, size validation,
and conversion to numpy arrays for detector input. Detection and cropping
both decode through here so they agree on one pixel coordinate space.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from headshot.errors import InvalidImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an upright RGB Pillow image.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        RGB image with EXIF orientation applied.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise InvalidImageError("Empty image data")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if max_pixels is not None and width * height > max_pixels:
            raise InvalidImageError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
        image = ImageOps.exif_transpose(image)
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise InvalidImageError(f"Cannot decode image: {exc}") from exc

    if image.width <= 0 or image.height <= 0:
        raise InvalidImageError("Image has no pixels")
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def to_array(image: Image.Image) -> NDArray[np.uint8]:
    """Return an HxWx3 RGB uint8 array for a decoded image."""
    return np.asarray(image, dtype=np.uint8)


def decode_to_array(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    return to_array(decode_image(image_bytes, max_pixels))


def preprocess_for_detection(
    image: NDArray[np.uint8],
    input_size: tuple[int, int],
    mean: float = 127.0,
    scale: float = 128.0,
) -> NDArray[np.float32]:
    """Prepare an RGB image for the ONNX face detector.

    Args:
        image: HxWx3 RGB uint8 array.
        input_size: Model input as (width, height).
        mean: Value subtracted from every channel.
        scale: Divisor applied after mean subtraction.

    Returns:
        1x3xHxW float32 tensor.
    """
    resized = cv2.resize(image, input_size, interpolation=cv2.INTER_LINEAR)
    tensor = (resized.astype(np.float32) - mean) / scale
    return np.ascontiguousarray(tensor.transpose(2, 0, 1)[np.newaxis, ...])


def to_grayscale(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
