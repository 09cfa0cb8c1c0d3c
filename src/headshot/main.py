"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from headshot.api.routes import router
from headshot.config import Settings, get_settings
from headshot.cropping import HeadshotCropper
from headshot.ml.face_detector import FaceDetectionService, discover_backends
from headshot.ml.inference import InferencePool
from headshot.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the pool, detector, and cropper once for the app's lifetime."""
    app.state.settings = settings

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings) if settings.model_detector else None
    detector = FaceDetectionService(
        discover_backends(settings, inference_pool, model_manager),
        inference_pool,
        confidence_floor=settings.confidence_floor,
        max_image_pixels=settings.max_image_pixels,
    )
    cropper = HeadshotCropper(
        inference_pool,
        padding=settings.crop_padding,
        quality=settings.jpeg_quality,
        max_image_pixels=settings.max_image_pixels,
    )

    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.detector = detector
    app.state.cropper = cropper


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Headshot (device=%s, max_concurrent=%s, native=%s, model=%s, confidence_floor=%.2f)",
        settings.device,
        settings.max_concurrent,
        settings.native_detector,
        settings.face_detection_model if settings.model_detector else "off",
        settings.confidence_floor,
    )

    init_state(app, settings)
    app.state.detector.warm_up()

    logger.info("Headshot ready (backends: %s)", ", ".join(app.state.detector.backend_names))
    yield

    logger.info("Shutting down Headshot")
    app.state.inference_pool.shutdown()
    if app.state.model_manager is not None:
        app.state.model_manager.shutdown()
    logger.info("Headshot shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Headshot",
        description="Face localization and square headshot cropping for contact photos",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
