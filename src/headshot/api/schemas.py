"""Pydantic request/response schemas for the Headshot API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CropBox(BaseModel):
    """Square crop rectangle in source pixels."""

    x: int = Field(ge=0)
    y: int = Field(ge=0)
    size: int = Field(gt=0, description="Side length; crops are always square")


class DetectedFace(BaseModel):
    """A single detected face with its bounding box and suggested crop."""

    id: str
    x: float = Field(description="Bounding box x position in source pixels")
    y: float = Field(description="Bounding box y position in source pixels")
    width: float = Field(description="Bounding box width in source pixels")
    height: float = Field(description="Bounding box height in source pixels")
    confidence: float = Field(ge=0.0, le=1.0, description="Detection confidence (0.0-1.0)")
    crop: CropBox | None = Field(default=None, description="Padded square crop; null if degenerate")


class DetectFacesResponse(BaseModel):
    """Face detection outcome; is_real_detection=false means crop manually."""

    is_real_detection: bool
    image_width: int
    image_height: int
    faces: list[DetectedFace]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    backends: list[str]
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available detection model."""

    name: str
    status: str = Field(description="Model status: 'active', 'loaded', or 'available'")
    license: str
    input_width: int
    input_height: int


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
