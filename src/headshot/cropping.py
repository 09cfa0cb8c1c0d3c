"""Square headshot cropping.

``square_crop`` is pure coordinate math; ``extract_pixels`` does the actual
pixel copy with Pillow. The order of operations in ``square_crop`` matters:
pad, then square, then shift back inside the image, then clamp. Squaring
after the edge shift produces off-centre crops near the borders.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from headshot.errors import InvalidImageError, WorkerUnavailableError
from headshot.images import ImageHandle
from headshot.ml.preprocessing import decode_image
from headshot.regions import Point, Size

if TYPE_CHECKING:
    from PIL import Image

    from headshot.ml.inference import InferencePool
    from headshot.regions import Bounds

logger = logging.getLogger(__name__)

DEFAULT_PADDING = 20
DEFAULT_JPEG_QUALITY = 90


@dataclass(frozen=True)
class CropRect:
    """Integer, square pixel rectangle fully inside its source image."""

    origin: Point
    size: Size

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(left, top, right, bottom) as Pillow expects."""
        x, y = int(self.origin.x), int(self.origin.y)
        return x, y, x + int(self.size.width), y + int(self.size.height)


def square_crop(bounds: Bounds, padding: int, image_width: int, image_height: int) -> CropRect:
    """Convert a face box into a padded, square, in-bounds crop rectangle.

    Raises:
        InvalidImageError: If the image or box is empty, or nothing of the
            padded box lies inside the image.
    """
    if padding < 0:
        raise ValueError(f"padding must be >= 0, got {padding}")
    if image_width <= 0 or image_height <= 0:
        raise InvalidImageError(f"Invalid image dimensions: {image_width}x{image_height}")
    if bounds.width <= 0 or bounds.height <= 0:
        raise InvalidImageError(f"Invalid face bounds: {bounds.width}x{bounds.height}")

    # Snap fractional detector output outward onto the pixel grid.
    x = math.floor(bounds.x)
    y = math.floor(bounds.y)
    width = math.ceil(bounds.x + bounds.width) - x
    height = math.ceil(bounds.y + bounds.height) - y

    padded_x = max(0, x - padding)
    padded_y = max(0, y - padding)
    padded_w = min(image_width - padded_x, width + 2 * padding)
    padded_h = min(image_height - padded_y, height + 2 * padding)
    if padded_w <= 0 or padded_h <= 0:
        raise InvalidImageError(f"Invalid crop dimensions: {padded_w}x{padded_h}")

    side = max(padded_w, padded_h)

    crop_x = padded_x
    crop_y = padded_y
    if crop_x + side > image_width:
        crop_x = image_width - side
    if crop_y + side > image_height:
        crop_y = image_height - side

    crop_x = max(0, crop_x)
    crop_y = max(0, crop_y)
    crop_w = min(image_width - crop_x, side)
    crop_h = min(image_height - crop_y, side)

    # An image narrower than the square in one axis: shrink both sides.
    side = min(crop_w, crop_h)
    return CropRect(origin=Point(crop_x, crop_y), size=Size(side, side))


def extract_pixels(image: Image.Image, crop_rect: CropRect, quality: int = DEFAULT_JPEG_QUALITY) -> ImageHandle:
    """Copy the crop out of a decoded image and re-encode it as JPEG."""
    left, top, right, bottom = crop_rect.box
    if left < 0 or top < 0 or right > image.width or bottom > image.height or right <= left or bottom <= top:
        raise InvalidImageError(f"Crop {crop_rect.box} outside image {image.width}x{image.height}")

    cropped = image.crop((left, top, right, bottom))
    if cropped.mode != "RGB":
        cropped = cropped.convert("RGB")

    buffer = io.BytesIO()
    cropped.save(buffer, format="JPEG", quality=quality)
    return ImageHandle.from_bytes(buffer.getvalue(), mime_type="image/jpeg")


def crop_headshot(
    image_bytes: bytes,
    bounds: Bounds,
    padding: int,
    quality: int = DEFAULT_JPEG_QUALITY,
    max_pixels: int | None = None,
) -> ImageHandle:
    """Decode, compute the square crop, and extract it. Blocking."""
    image = decode_image(image_bytes, max_pixels)
    rect = square_crop(bounds, padding, image.width, image.height)
    logger.debug("Cropping %s from %dx%d image", rect.box, image.width, image.height)
    return extract_pixels(image, rect, quality)


class HeadshotCropper:
    """Async facade producing square headshots from image handles."""

    def __init__(
        self,
        pool: InferencePool,
        padding: int = DEFAULT_PADDING,
        quality: int = DEFAULT_JPEG_QUALITY,
        max_image_pixels: int | None = None,
    ) -> None:
        self._pool = pool
        self._padding = padding
        self._quality = quality
        self._max_image_pixels = max_image_pixels

    @property
    def padding(self) -> int:
        return self._padding

    async def crop_region(self, image: ImageHandle, bounds: Bounds, padding: int | None = None) -> ImageHandle:
        """Crop a detected face region with padding.

        Raises:
            ImageLoadError: If the source image cannot be read.
            InvalidImageError: If the image cannot be decoded or the region is degenerate.
            WorkerUnavailableError: If the worker pool is saturated or shut down.
        """
        data = await image.read()
        try:
            return await self._pool.run(
                crop_headshot,
                data,
                bounds,
                self._padding if padding is None else padding,
                self._quality,
                self._max_image_pixels,
            )
        except TimeoutError as exc:
            raise WorkerUnavailableError("Image workers are busy") from exc
        except RuntimeError as exc:
            raise WorkerUnavailableError(f"Image workers unavailable: {exc}") from exc

    async def crop_manual(self, image: ImageHandle, bounds: Bounds) -> ImageHandle:
        """Crop a user-drawn region; no padding is added."""
        return await self.crop_region(image, bounds, padding=0)
