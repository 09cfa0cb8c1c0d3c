"""Model manager: download, load, and cache ONNX face detection models.

Handles downloading models from HuggingFace and creating and caching ONNX
InferenceSessions. Sessions live for the whole process; a model is fetched
at most once.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

if TYPE_CHECKING:
    from headshot.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model is downloaded and return its file path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX face detection model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    input_size: tuple[int, int]  # (width, height)
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "ultraface_rfb_320": ModelSpec(
        name="ultraface_rfb_320",
        repo_id="onnxmodelzoo/version-RFB-320",
        filename="version-RFB-320.onnx",
        subfolder=None,
        input_size=(320, 240),
        license="MIT",
    ),
    "ultraface_rfb_640": ModelSpec(
        name="ultraface_rfb_640",
        repo_id="onnxmodelzoo/version-RFB-640",
        filename="version-RFB-640.onnx",
        subfolder=None,
        input_size=(640, 480),
        license="MIT",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# ONNX Runtime setup
# ---------------------------------------------------------------------------


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Fetches model files once and keeps one InferenceSession per model.

    Loading is serialized per model, so two threads asking for the same
    model never download or build it twice; different models load in
    parallel.
    """

    def __init__(self, settings: Settings) -> None:
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

        self._registry_lock = threading.Lock()
        self._load_locks: dict[str, threading.Lock] = {}
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, fetching it from HuggingFace if absent."""
        spec = get_model_spec(model_name)

        known = self._model_paths.get(model_name)
        if known is not None and known.exists():
            return known

        local = self._local_path(spec)
        if local.exists():
            logger.debug("Using cached model file %s", local)
            self._model_paths[model_name] = local
            return local

        logger.info("Fetching %s from %s", model_name, spec.repo_id)
        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = path
        logger.info("Stored %s at %s", model_name, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the session for ``model_name``, loading it on first use.

        Raises:
            KeyError: Unknown model name.
            Exception: Whatever the download or ONNX Runtime raised; nothing
                is cached in that case.
        """
        session = self._sessions.get(model_name)
        if session is not None:
            return session

        with self._load_lock(model_name):
            session = self._sessions.get(model_name)
            if session is None:
                session = InferenceSession(
                    str(self.ensure_downloaded(model_name)),
                    sess_options=self._session_options,
                    providers=self._providers,
                )
                with self._registry_lock:
                    self._sessions[model_name] = session
                logger.info("Loaded %s (providers: %s)", model_name, ", ".join(session.get_providers()))
            return session

    def get_loaded_models(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._sessions)

    def shutdown(self) -> None:
        with self._registry_lock:
            count = len(self._sessions)
            self._sessions.clear()
        logger.info("Released %d model session(s)", count)

    def _local_path(self, spec: ModelSpec) -> Path:
        base = self._models_dir / spec.subfolder if spec.subfolder else self._models_dir
        return base / spec.filename

    def _load_lock(self, model_name: str) -> threading.Lock:
        with self._registry_lock:
            return self._load_locks.setdefault(model_name, threading.Lock())
