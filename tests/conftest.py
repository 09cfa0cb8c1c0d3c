"""Shared fixtures: a worker pool, synthetic images, and scripted collaborators."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

from headshot.config import Settings
from headshot.contacts import CreatedContact
from headshot.errors import ContactCreationError, UploadError
from headshot.images import ImageHandle
from headshot.ml.inference import InferencePool
from headshot.regions import DetectionResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    import numpy as np
    from numpy.typing import NDArray

    from headshot.contacts import ContactDraft
    from headshot.ml.face_detector import RawDetection
    from headshot.regions import Bounds


class StubBackend:
    """Detection backend that replays scripted detections or fails on demand."""

    def __init__(
        self,
        name: str = "stub",
        detections: list[RawDetection] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.name = name
        self.detections = detections or []
        self.error = error
        self.calls = 0

    async def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.detections)


class FakeLocator:
    """Returns a fixed detection result, optionally after ``gate`` opens."""

    def __init__(
        self,
        result: DetectionResult | None = None,
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.result = result if result is not None else DetectionResult.none()
        self.error = error
        self.gate = gate
        self.calls: list[ImageHandle] = []

    async def detect(self, image: ImageHandle) -> DetectionResult:
        self.calls.append(image)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class FakeCropper:
    """Produces a distinct in-memory handle per crop; can fail for chosen boxes."""

    def __init__(self, errors: dict[Bounds, Exception] | None = None) -> None:
        self.errors = errors or {}
        self.region_calls: list[tuple[Bounds, int | None]] = []
        self.manual_calls: list[Bounds] = []

    async def crop_region(self, image: ImageHandle, bounds: Bounds, padding: int | None = None) -> ImageHandle:
        self.region_calls.append((bounds, padding))
        return self._crop(bounds, "region")

    async def crop_manual(self, image: ImageHandle, bounds: Bounds) -> ImageHandle:
        self.manual_calls.append(bounds)
        return self._crop(bounds, "manual")

    def _crop(self, bounds: Bounds, label: str) -> ImageHandle:
        if bounds in self.errors:
            raise self.errors[bounds]
        return ImageHandle.from_bytes(f"{label}-{bounds.x}-{bounds.y}".encode())


class FakeContactsClient:
    """In-memory stand-in for ContactsClient that records every request."""

    def __init__(self, fail_uploads: set[str] | None = None, fail_creates: set[str] | None = None) -> None:
        self.fail_uploads = fail_uploads or set()
        self.fail_creates = fail_creates or set()
        self.uploads: list[ImageHandle] = []
        self.created: list[tuple[ContactDraft, str | None]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._pending_name: str | None = None

    async def upload_image(self, image: ImageHandle) -> str:
        self._enter()
        try:
            await asyncio.sleep(0)
            self.uploads.append(image)
            if image.data is not None and image.data.decode(errors="ignore") in self.fail_uploads:
                raise UploadError("Network error. Please check your connection and try again.")
            return f"https://cdn.example.test/{len(self.uploads)}.jpg"
        finally:
            self._exit()

    async def create_contact(self, draft: ContactDraft, photo_url: str | None = None) -> CreatedContact:
        self._enter()
        try:
            await asyncio.sleep(0)
            if draft.name in self.fail_creates:
                raise ContactCreationError("Server error. Please try again later.", status=500)
            self.created.append((draft, photo_url))
            return CreatedContact(id=str(len(self.created)), name=draft.name, category=draft.category, photo=photo_url)
        finally:
            self._exit()

    @property
    def created_names(self) -> list[str]:
        return [draft.name for draft, _ in self.created]

    def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)

    def _exit(self) -> None:
        self.in_flight -= 1


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(Settings(max_concurrent=2))
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def make_jpeg() -> Callable[..., bytes]:
    """Return a factory producing solid-color JPEG bytes of a given size."""

    def _make(width: int = 200, height: int = 200, color: tuple[int, int, int] = (200, 120, 80)) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color).save(buffer, format="JPEG", quality=95)
        return buffer.getvalue()

    return _make


@pytest.fixture()
def stub_backend() -> Callable[..., StubBackend]:
    return StubBackend


@pytest.fixture()
def fake_locator() -> Callable[..., FakeLocator]:
    return FakeLocator


@pytest.fixture()
def fake_cropper() -> Callable[..., FakeCropper]:
    return FakeCropper


@pytest.fixture()
def fake_client() -> Callable[..., FakeContactsClient]:
    return FakeContactsClient
