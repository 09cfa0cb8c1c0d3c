"""Environment-based configuration for Headshot."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from HEADSHOT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HEADSHOT_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Detection backends, discovered once at startup in this order
    native_detector: bool = True
    model_detector: bool = True
    face_detection_model: str = "ultraface_rfb_640"
    models_dir: str = "models"

    # Detection policy
    confidence_floor: float = Field(default=0.5, ge=0.0, le=1.0)
    nms_threshold: float = Field(default=0.3, gt=0.0, le=1.0)

    # Headshot output
    crop_padding: int = Field(default=20, ge=0)
    jpeg_quality: int = Field(default=90, ge=1, le=100)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=40_000_000, ge=1)
    max_file_size: int = Field(default=26_214_400, ge=1)

    # Remote contacts API
    contacts_api_url: str = "https://ummyou.com/api"
    contacts_api_token: str | None = None
    request_timeout: float = Field(default=30.0, gt=0)
    upload_timeout: float = Field(default=60.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
