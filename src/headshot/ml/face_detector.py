"""Face detection backends and the adapter that hides them.

Backends:
    native  - OpenCV's bundled Haar cascade; local, no confidence score
    model   - ONNX UltraFace detector fetched from HuggingFace on first use
    unavailable - nothing usable on this host

The adapter (FaceDetectionService) never raises for detection problems:
anything that goes wrong becomes "no real detection" and the caller falls
back to manual cropping.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from headshot.errors import DetectionError
from headshot.ml.model_manager import OnnxModelManager, get_model_spec
from headshot.ml.preprocessing import decode_to_array, preprocess_for_detection, to_grayscale
from headshot.regions import Bounds, DetectionRegion, DetectionResult

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from headshot.config import Settings
    from headshot.images import ImageHandle
    from headshot.ml.inference import InferencePool
    from headshot.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

NATIVE_CONFIDENCE: float = 1.0
# Pre-NMS cut for model candidates; the confidence floor is applied later.
_CANDIDATE_MIN_SCORE: float = 0.05


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection in source-image pixel coordinates."""

    bounds: Bounds
    score: float


class DetectionBackend(Protocol):
    """Protocol for face detection backends."""

    @property
    def name(self) -> str:
        """Return the backend identifier string."""
        ...

    async def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Detections with pixel bounds and scores.
        """
        ...


# ---------------------------------------------------------------------------
# Native backend
# ---------------------------------------------------------------------------


class NativeBackend:
    """OpenCV Haar cascade detector. Fast, no network, no confidence."""

    name = "native"

    def __init__(
        self,
        pool: InferencePool,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: tuple[int, int] = (30, 30),
    ) -> None:
        self._pool = pool
        self._scale_factor = scale_factor
        self._min_neighbors = min_neighbors
        self._min_size = min_size

        cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"  # type: ignore[attr-defined]
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise RuntimeError(f"Failed to load cascade from {cascade_path}")
        # CascadeClassifier is not safe to share across threads.
        self._cascade_lock = threading.Lock()

    async def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        return await self._pool.run(self._detect_sync, image)

    def _detect_sync(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        gray = to_grayscale(image)
        try:
            with self._cascade_lock:
                faces = self._cascade.detectMultiScale(
                    gray,
                    scaleFactor=self._scale_factor,
                    minNeighbors=self._min_neighbors,
                    minSize=self._min_size,
                )
        except cv2.error as exc:
            raise DetectionError(f"Haar cascade failed: {exc}") from exc
        return [
            RawDetection(Bounds.from_xywh(int(x), int(y), int(w), int(h)), NATIVE_CONFIDENCE)
            for (x, y, w, h) in faces
        ]


# ---------------------------------------------------------------------------
# Model backend
# ---------------------------------------------------------------------------


def _nms(boxes: NDArray[np.float32], scores: NDArray[np.float32], threshold: float) -> list[int]:
    """Greedy non-maximum suppression on (x1, y1, x2, y2) boxes."""
    if len(boxes) == 0:
        return []

    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = (x2 - x1) * (y2 - y1)
    order = scores.argsort()[::-1]

    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)

        xx1 = np.maximum(x1[i], x1[order[1:]])
        yy1 = np.maximum(y1[i], y1[order[1:]])
        xx2 = np.minimum(x2[i], x2[order[1:]])
        yy2 = np.minimum(y2[i], y2[order[1:]])

        inter = np.maximum(0.0, xx2 - xx1) * np.maximum(0.0, yy2 - yy1)
        iou = inter / (areas[i] + areas[order[1:]] - inter + 1e-8)
        order = order[np.where(iou <= threshold)[0] + 1]
    return keep


def decode_detections(
    scores: NDArray[np.float32],
    boxes: NDArray[np.float32],
    image_width: int,
    image_height: int,
    nms_threshold: float,
    min_score: float = _CANDIDATE_MIN_SCORE,
) -> list[RawDetection]:
    """Turn UltraFace outputs into pixel-space detections.

    Args:
        scores: 1xNx2 background/face probabilities.
        boxes: 1xNx4 normalized (x1, y1, x2, y2) corners.
        image_width: Source image width in pixels.
        image_height: Source image height in pixels.
        nms_threshold: IoU above which overlapping boxes are suppressed.
        min_score: Candidates at or below this face probability are ignored.
    """
    face_scores = scores[0, :, 1]
    mask = face_scores > min_score
    if not np.any(mask):
        return []

    candidates = boxes[0][mask] * np.array([image_width, image_height, image_width, image_height], dtype=np.float32)
    candidates[:, [0, 2]] = np.clip(candidates[:, [0, 2]], 0, image_width)
    candidates[:, [1, 3]] = np.clip(candidates[:, [1, 3]], 0, image_height)
    candidate_scores = face_scores[mask]

    detections: list[RawDetection] = []
    for i in _nms(candidates, candidate_scores, nms_threshold):
        x1, y1, x2, y2 = (float(v) for v in candidates[i])
        if x2 <= x1 or y2 <= y1:
            continue
        detections.append(RawDetection(Bounds.from_corners(x1, y1, x2, y2), float(candidate_scores[i])))
    return detections


class ModelBackend:
    """ONNX face detector with lazy, process-wide, one-time initialization.

    The first caller schedules download + session creation; every caller,
    concurrent or later, awaits that same future. A failed initialization
    stays failed, so the model is fetched at most once per process.
    """

    name = "model"

    def __init__(
        self,
        manager: ModelManager,
        pool: InferencePool,
        model_name: str,
        nms_threshold: float = 0.3,
    ) -> None:
        self._manager = manager
        self._pool = pool
        self._spec = get_model_spec(model_name)
        self._nms_threshold = nms_threshold
        self._init: asyncio.Future[InferenceSession] | None = None

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def is_ready(self) -> bool:
        """True once the session loaded successfully."""
        init = self._init
        return init is not None and init.done() and not init.cancelled() and init.exception() is None

    def warm_up(self) -> None:
        """Start initialization without waiting for it."""
        self._initializing()

    async def session(self) -> InferenceSession:
        # shield: a cancelled caller must not cancel the shared initialization
        return await asyncio.shield(self._initializing())

    async def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        session = await self.session()
        return await self._pool.run(self._run, session, image)

    def _initializing(self) -> asyncio.Future[InferenceSession]:
        if self._init is None:
            logger.info("Initializing face detection model %s", self._spec.name)
            self._init = asyncio.ensure_future(asyncio.to_thread(self._manager.get_session, self._spec.name))
            self._init.add_done_callback(self._log_init_outcome)
        return self._init

    def _log_init_outcome(self, future: asyncio.Future[InferenceSession]) -> None:
        if future.cancelled():
            logger.warning("Initialization of %s was cancelled", self._spec.name)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Face detection model %s failed to load: %s", self._spec.name, exc)
        else:
            logger.info("Face detection model %s ready", self._spec.name)

    def _run(self, session: InferenceSession, image: NDArray[np.uint8]) -> list[RawDetection]:
        height, width = image.shape[:2]
        tensor = preprocess_for_detection(image, self._spec.input_size)
        input_name = session.get_inputs()[0].name
        outputs = session.run(["scores", "boxes"], {input_name: tensor})
        if len(outputs) != 2:
            raise DetectionError(f"{self._spec.name} returned {len(outputs)} outputs, expected scores and boxes")
        scores, boxes = (np.asarray(output) for output in outputs)
        if scores.ndim != 3 or scores.shape[2] != 2 or boxes.shape != (*scores.shape[:2], 4):
            raise DetectionError(f"Unexpected {self._spec.name} output shapes: {scores.shape}, {boxes.shape}")
        return decode_detections(scores, boxes, width, height, self._nms_threshold)


class UnavailableBackend:
    """Stand-in when no detector could be set up on this host."""

    name = "unavailable"

    async def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        return []


# ---------------------------------------------------------------------------
# Startup discovery
# ---------------------------------------------------------------------------


def discover_backends(
    settings: Settings,
    pool: InferencePool,
    manager: ModelManager | None = None,
) -> list[DetectionBackend]:
    """Build the ordered backend chain once, from configuration and host capabilities."""
    backends: list[DetectionBackend] = []

    if settings.native_detector:
        try:
            backends.append(NativeBackend(pool))
        except (RuntimeError, AttributeError, cv2.error) as exc:
            # AttributeError: OpenCV builds without the cascade API.
            logger.warning("Native face detector unavailable: %s", exc)

    if settings.model_detector:
        try:
            backends.append(
                ModelBackend(
                    manager if manager is not None else OnnxModelManager(settings),
                    pool,
                    settings.face_detection_model,
                    nms_threshold=settings.nms_threshold,
                )
            )
        except KeyError as exc:
            logger.error("Model face detector unavailable: %s", exc.args[0])

    if not backends:
        logger.warning("No face detection backend available; all photos will use manual cropping")
        backends.append(UnavailableBackend())
    else:
        logger.info("Face detection backends: %s", ", ".join(b.name for b in backends))
    return backends


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class FaceDetectionService:
    """Single entry point for face localization across backends."""

    def __init__(
        self,
        backends: Sequence[DetectionBackend],
        pool: InferencePool,
        confidence_floor: float = 0.5,
        max_image_pixels: int | None = None,
    ) -> None:
        if not 0.0 <= confidence_floor <= 1.0:
            raise ValueError(f"confidence_floor must be within [0, 1], got {confidence_floor}")
        self._backends = list(backends) or [UnavailableBackend()]
        self._pool = pool
        self._confidence_floor = confidence_floor
        self._max_image_pixels = max_image_pixels

    @property
    def backend_names(self) -> list[str]:
        return [backend.name for backend in self._backends]

    @property
    def confidence_floor(self) -> float:
        return self._confidence_floor

    @property
    def backends(self) -> list[DetectionBackend]:
        return list(self._backends)

    def warm_up(self) -> None:
        for backend in self._backends:
            if isinstance(backend, ModelBackend):
                backend.warm_up()

    async def detect(self, image: ImageHandle) -> DetectionResult:
        """Locate faces in an image.

        Never raises for detection problems: unreadable images, missing
        models, and backend crashes all produce ``DetectionResult.none()``.
        """
        try:
            data = await image.read()
            pixels = await self._pool.run(decode_to_array, data, self._max_image_pixels)
        except Exception:  # noqa: BLE001
            logger.exception("Could not load image for face detection")
            return DetectionResult.none()

        for backend in self._backends:
            try:
                raw = await backend.detect(pixels)
            except Exception:  # noqa: BLE001
                logger.exception("Face detection failed in %s backend", backend.name)
                continue

            accepted = [d for d in raw if d.score >= self._confidence_floor]
            if len(accepted) < len(raw):
                logger.debug(
                    "%s backend: dropped %d of %d regions below confidence %.2f",
                    backend.name,
                    len(raw) - len(accepted),
                    len(raw),
                    self._confidence_floor,
                )
            if accepted:
                regions = [
                    DetectionRegion(id=f"face-{i}", bounds=d.bounds, confidence=d.score)
                    for i, d in enumerate(accepted)
                ]
                logger.info("Detected %d face(s) with %s backend", len(regions), backend.name)
                return DetectionResult(regions=regions, is_real_detection=True)

        logger.info("No faces detected (backends: %s); manual cropping required", ", ".join(self.backend_names))
        return DetectionResult.none()
