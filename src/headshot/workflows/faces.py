"""Pieces shared by the capture and party workflows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from headshot.errors import InvalidImageError

if TYPE_CHECKING:
    from headshot.images import ImageHandle
    from headshot.regions import Bounds, DetectionRegion, DetectionResult

logger = logging.getLogger(__name__)


class FaceLocator(Protocol):
    """Anything that can find faces in an image (see FaceDetectionService)."""

    async def detect(self, image: ImageHandle) -> DetectionResult: ...


class Cropper(Protocol):
    """Anything that turns regions into square headshots (see HeadshotCropper)."""

    async def crop_region(self, image: ImageHandle, bounds: Bounds, padding: int | None = None) -> ImageHandle: ...

    async def crop_manual(self, image: ImageHandle, bounds: Bounds) -> ImageHandle: ...


@dataclass(frozen=True)
class FaceCandidate:
    """A face offered to the user, already cropped for display."""

    id: str
    headshot: ImageHandle
    region: DetectionRegion | None = None


async def detect_candidates(
    locator: FaceLocator,
    cropper: Cropper,
    image: ImageHandle,
) -> list[FaceCandidate]:
    """Detect faces and crop each one eagerly.

    Returns an empty list when detection found nothing trustworthy, which
    callers treat as "go to manual cropping". A region whose crop turns out
    degenerate is dropped rather than replaced by the full photo.

    Raises:
        HeadshotError: If the image cannot be read while cropping.
    """
    result = await locator.detect(image)
    if not result.is_real_detection or not result.regions:
        return []

    candidates: list[FaceCandidate] = []
    for region in result.regions:
        try:
            headshot = await cropper.crop_region(image, region.bounds)
        except InvalidImageError as exc:
            logger.warning("Dropping %s: %s", region.id, exc)
            continue
        candidates.append(FaceCandidate(id=region.id, headshot=headshot, region=region))
    return candidates
