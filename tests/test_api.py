"""Tests for the Headshot HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from headshot.api.middleware import HTTP_413_TOO_LARGE, HTTP_422_UNPROCESSABLE
from headshot.config import get_settings
from headshot.cropping import HeadshotCropper
from headshot.main import create_app, init_state
from headshot.ml.face_detector import FaceDetectionService, RawDetection
from headshot.ml.inference import InferencePool
from headshot.regions import Bounds

# Keep tests offline: no model download, no cascade unless a test asks for it.
_OFFLINE = {"HEADSHOT_NATIVE_DETECTOR": "false", "HEADSHOT_MODEL_DETECTOR": "false"}


def _init_app_state(app: FastAPI, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {**_OFFLINE, **env_overrides}):
        settings = get_settings()
    init_state(app, settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with offline settings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _use_detections(app: FastAPI, backend: object) -> None:
    app.state.detector = FaceDetectionService([backend], app.state.inference_pool)  # type: ignore[list-item]


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["backends"] == ["unavailable"]
        assert data["models_loaded"] == []
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_lists_configured_backends(self, tmp_path: Path) -> None:
        model_app = create_app()
        _init_app_state(model_app, HEADSHOT_MODEL_DETECTOR="true", HEADSHOT_MODELS_DIR=str(tmp_path))
        async for ac in _make_client(model_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["backends"] == ["model"]


class TestDetectFacesEndpoint:
    async def test_no_faces_means_manual_crop(
        self, client: httpx.AsyncClient, make_jpeg: Callable[..., bytes]
    ) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(320, 240)), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_real_detection"] is False
        assert data["faces"] == []
        assert (data["image_width"], data["image_height"]) == (320, 240)

    async def test_detected_faces_include_square_crop(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        make_jpeg: Callable[..., bytes],
        stub_backend: Callable[..., object],
    ) -> None:
        _use_detections(app, stub_backend(detections=[RawDetection(Bounds.from_xywh(10, 10, 100, 80), 0.97)]))

        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(1000, 1000)), "image/jpeg")},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_real_detection"] is True
        [face] = data["faces"]
        assert face["id"] == "face-0"
        assert face["confidence"] == pytest.approx(0.97)
        assert face["crop"] == {"x": 0, "y": 0, "size": 140}

    async def test_padding_query_overrides_default(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        make_jpeg: Callable[..., bytes],
        stub_backend: Callable[..., object],
    ) -> None:
        _use_detections(app, stub_backend(detections=[RawDetection(Bounds.from_xywh(30, 40, 50, 50), 1.0)]))

        response = await client.post(
            "/api/v1/detect-faces?padding=0",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(200, 200)), "image/jpeg")},
        )

        assert response.json()["faces"][0]["crop"] == {"x": 30, "y": 40, "size": 50}

    async def test_garbage_upload_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == HTTP_422_UNPROCESSABLE

    async def test_empty_upload_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/detect-faces",
            files={"file": ("test.jpg", io.BytesIO(b""), "image/jpeg")},
        )
        assert response.status_code == HTTP_422_UNPROCESSABLE

    async def test_oversized_upload_is_rejected(self, make_jpeg: Callable[..., bytes]) -> None:
        small_app = create_app()
        _init_app_state(small_app, HEADSHOT_MAX_FILE_SIZE="100")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/detect-faces",
                files={"file": ("test.jpg", io.BytesIO(make_jpeg(200, 200)), "image/jpeg")},
            )
            assert response.status_code == HTTP_413_TOO_LARGE


class TestCropEndpoint:
    async def test_returns_square_jpeg(self, client: httpx.AsyncClient, make_jpeg: Callable[..., bytes]) -> None:
        response = await client.post(
            "/api/v1/crop",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(1000, 1000)), "image/jpeg")},
            data={"x": "950", "y": "950", "width": "80", "height": "80"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "image/jpeg"
        with Image.open(io.BytesIO(response.content)) as headshot:
            assert headshot.size == (70, 70)

    async def test_region_outside_image_is_rejected(
        self, client: httpx.AsyncClient, make_jpeg: Callable[..., bytes]
    ) -> None:
        response = await client.post(
            "/api/v1/crop",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(100, 100)), "image/jpeg")},
            data={"x": "500", "y": "500", "width": "20", "height": "20", "padding": "0"},
        )
        assert response.status_code == HTTP_422_UNPROCESSABLE

    async def test_zero_width_fails_validation(
        self, client: httpx.AsyncClient, make_jpeg: Callable[..., bytes]
    ) -> None:
        response = await client.post(
            "/api/v1/crop",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(100, 100)), "image/jpeg")},
            data={"x": "10", "y": "10", "width": "0", "height": "20"},
        )
        assert response.status_code == HTTP_422_UNPROCESSABLE

    async def test_stopped_workers_return_503(
        self, app: FastAPI, client: httpx.AsyncClient, make_jpeg: Callable[..., bytes]
    ) -> None:
        stopped = InferencePool(get_settings())
        stopped.shutdown()
        app.state.cropper = HeadshotCropper(stopped)

        response = await client.post(
            "/api/v1/crop",
            files={"file": ("test.jpg", io.BytesIO(make_jpeg(100, 100)), "image/jpeg")},
            data={"x": "10", "y": "10", "width": "20", "height": "20"},
        )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        names = {m["name"] for m in response.json()["models"]}
        assert names == {"ultraface_rfb_320", "ultraface_rfb_640"}

    async def test_models_available_when_model_detector_off(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert {m["status"] for m in response.json()["models"]} == {"available"}

    async def test_configured_model_is_active(self, tmp_path: Path) -> None:
        model_app = create_app()
        _init_app_state(model_app, HEADSHOT_MODEL_DETECTOR="true", HEADSHOT_MODELS_DIR=str(tmp_path))
        async for ac in _make_client(model_app):
            response = await ac.get("/api/v1/models")
            models = {m["name"]: m for m in response.json()["models"]}
            assert models["ultraface_rfb_640"]["status"] == "active"
            assert models["ultraface_rfb_320"]["status"] == "available"
            assert models["ultraface_rfb_640"]["input_width"] == 640


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, HEADSHOT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, HEADSHOT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, HEADSHOT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
