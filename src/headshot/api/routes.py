"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, Query, Request, status
from fastapi.responses import JSONResponse, Response

from headshot.api.middleware import HTTP_413_TOO_LARGE, HTTP_422_UNPROCESSABLE, read_limited_upload, verify_api_key
from headshot.api.schemas import (
    CropBox,
    DetectedFace,
    DetectFacesResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from headshot.cropping import square_crop
from headshot.errors import InvalidImageError, WorkerUnavailableError
from headshot.images import ImageHandle
from headshot.ml.model_manager import MODEL_REGISTRY
from headshot.ml.preprocessing import decode_image
from headshot.regions import Bounds

if TYPE_CHECKING:
    from headshot.config import Settings
    from headshot.cropping import HeadshotCropper
    from headshot.ml.face_detector import FaceDetectionService
    from headshot.ml.inference import InferencePool
    from headshot.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    HTTP_413_TOO_LARGE: {"model": ErrorResponse},
    HTTP_422_UNPROCESSABLE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_detector(request: Request) -> FaceDetectionService:
    detector: FaceDetectionService = request.app.state.detector
    return detector


def _get_cropper(request: Request) -> HeadshotCropper:
    cropper: HeadshotCropper = request.app.state.cropper
    return cropper


def _get_model_manager(request: Request) -> ModelManager | None:
    return getattr(request.app.state, "model_manager", None)


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _busy() -> JSONResponse:
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Server busy, try again shortly")


@router.post(
    "/detect-faces",
    response_model=DetectFacesResponse,
    responses=_ERROR_RESPONSES,
    summary="Detect faces in an image",
)
async def detect_faces(
    request: Request,
    data: Annotated[bytes, Depends(read_limited_upload)],
    padding: Annotated[int | None, Query(ge=0)] = None,
) -> DetectFacesResponse | JSONResponse:
    """Locate faces and suggest a square crop for each.

    ``is_real_detection`` false means no trustworthy face was found and the
    client should offer manual cropping.
    """
    settings = _get_settings(request)
    pool = _get_inference_pool(request)

    try:
        image = await pool.run(decode_image, data, settings.max_image_pixels)
    except InvalidImageError as exc:
        return _error(HTTP_422_UNPROCESSABLE, str(exc))
    except TimeoutError:
        return _busy()

    result = await _get_detector(request).detect(ImageHandle.from_bytes(data))
    crop_padding = settings.crop_padding if padding is None else padding

    faces: list[DetectedFace] = []
    for region in result.regions:
        try:
            rect = square_crop(region.bounds, crop_padding, image.width, image.height)
            crop = CropBox(x=int(rect.origin.x), y=int(rect.origin.y), size=int(rect.size.width))
        except InvalidImageError as exc:
            logger.warning("No crop for %s: %s", region.id, exc)
            crop = None
        faces.append(
            DetectedFace(
                id=region.id,
                x=region.bounds.x,
                y=region.bounds.y,
                width=region.bounds.width,
                height=region.bounds.height,
                confidence=region.confidence,
                crop=crop,
            )
        )

    return DetectFacesResponse(
        is_real_detection=result.is_real_detection,
        image_width=image.width,
        image_height=image.height,
        faces=faces,
    )


@router.post(
    "/crop",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/jpeg": {}}, "description": "Square JPEG headshot"},
        **_ERROR_RESPONSES,
    },
    summary="Cut a square headshot out of an image",
)
async def crop_face(
    request: Request,
    data: Annotated[bytes, Depends(read_limited_upload)],
    x: Annotated[float, Form()],
    y: Annotated[float, Form()],
    width: Annotated[float, Form(gt=0)],
    height: Annotated[float, Form(gt=0)],
    padding: Annotated[int | None, Form(ge=0)] = None,
) -> Response:
    """Crop a detected or hand-drawn region into a square JPEG."""
    cropper = _get_cropper(request)
    bounds = Bounds.from_xywh(x, y, width, height)

    try:
        headshot = await cropper.crop_region(ImageHandle.from_bytes(data), bounds, padding)
    except InvalidImageError as exc:
        return _error(HTTP_422_UNPROCESSABLE, str(exc))
    except WorkerUnavailableError:
        return _busy()

    return Response(content=headshot.data, media_type=headshot.mime_type)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        backends=_get_detector(request).backend_names,
        models_loaded=manager.get_loaded_models() if manager is not None else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return detection models and their status based on current configuration."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    loaded = set(manager.get_loaded_models()) if manager is not None else set()

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        if name in loaded:
            model_status = "loaded"
        elif settings.model_detector and name == settings.face_detection_model:
            model_status = "active"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=name,
                status=model_status,
                license=spec.license,
                input_width=spec.input_size[0],
                input_height=spec.input_size[1],
            )
        )

    return ModelsResponse(models=models)
