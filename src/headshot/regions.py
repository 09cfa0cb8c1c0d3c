"""Face regions in source-image pixel space.

Origin is top-left; x grows right and y grows down.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Size:
    width: float
    height: float


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned rectangle as origin + size."""

    origin: Point
    size: Size

    @classmethod
    def from_xywh(cls, x: float, y: float, width: float, height: float) -> Bounds:
        return cls(origin=Point(x, y), size=Size(width, height))

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> Bounds:
        return cls.from_xywh(x1, y1, x2 - x1, y2 - y1)

    @property
    def x(self) -> float:
        return self.origin.x

    @property
    def y(self) -> float:
        return self.origin.y

    @property
    def width(self) -> float:
        return self.size.width

    @property
    def height(self) -> float:
        return self.size.height


@dataclass(frozen=True)
class DetectionRegion:
    """A rectangle believed to contain a face, with a confidence in [0, 1]."""

    id: str
    bounds: Bounds
    confidence: float


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of one detection call.

    ``is_real_detection`` is False whenever no trustworthy region was found;
    callers route to manual cropping in that case.
    """

    regions: list[DetectionRegion] = field(default_factory=list)
    is_real_detection: bool = False

    @classmethod
    def none(cls) -> DetectionResult:
        return cls(regions=[], is_real_detection=False)
