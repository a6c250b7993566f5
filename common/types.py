from __future__ import annotations

import hashlib
import math
import numbers
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from common.errors import InvalidInput
from common.utils import iso_now_ms


IsoTime = str
PointId = str

MAX_ZOOM = 22
TILE_SIZE = 256


class TransformKind(str, Enum):
    AFFINE = "affine"
    POLYNOMIAL = "polynomial"
    THIN_PLATE_SPLINE = "thin_plate_spline"
    PROJECTIVE = "projective"

    @classmethod
    def parse(cls, value: "TransformKind | str") -> "TransformKind":
        if isinstance(value, cls):
            return value
        v = str(value).strip().lower()
        if v == "tps":
            return cls.THIN_PLATE_SPLINE
        try:
            return cls(v)
        except ValueError:
            raise InvalidInput(f"unknown transform kind: {value!r}") from None


class Stage(str, Enum):
    PENDING = "PENDING"
    SOLVING = "SOLVING"
    RASTERIZING = "RASTERIZING"
    READY = "READY"
    FAILED = "FAILED"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass(frozen=True, slots=True)
class ControlPoint:
    """
    Pixel ↔ WGS84 correspondence.

    Attributes:
        pixel_x, pixel_y: source page pixel coordinates (origin top-left).
        lon, lat: WGS84 degrees.
        accuracy_m: optional stated accuracy of the geographic position.
        confidence: optional [0..1] score from the producer.
        source: 'manual' | 'automated' | 'imported'.
    """
    pixel_x: float
    pixel_y: float
    lon: float
    lat: float
    accuracy_m: Optional[float] = None
    confidence: Optional[float] = None
    source: str = "manual"
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        for name in ("pixel_x", "pixel_y", "lon", "lat"):
            v = getattr(self, name)
            if not isinstance(v, numbers.Real) or isinstance(v, bool) or not math.isfinite(v):
                raise InvalidInput(f"{name} must be a finite number", field=name, value=repr(v))
        if not (-180.0 <= self.lon <= 180.0) or not (-90.0 <= self.lat <= 90.0):
            raise InvalidInput("lat/lon out of range", lon=self.lon, lat=self.lat)
        if self.accuracy_m is not None and self.accuracy_m < 0:
            raise InvalidInput("accuracy_m must be >= 0")
        if self.confidence is not None and not (0.0 <= self.confidence <= 1.0):
            raise InvalidInput("confidence must be within [0, 1]")
        if self.source not in ("manual", "automated", "imported"):
            raise InvalidInput(f"unknown control point source: {self.source!r}")

    @classmethod
    def from_tuple(cls, t: Tuple[float, float, float, float]) -> "ControlPoint":
        if len(t) != 4:
            raise InvalidInput("control point tuple must be (pixel_x, pixel_y, lon, lat)")
        return cls(float(t[0]), float(t[1]), float(t[2]), float(t[3]))

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.pixel_x, self.pixel_y, self.lon, self.lat)


@dataclass(frozen=True, slots=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    def intersects(self, other: "Bounds") -> bool:
        # Half-open: touching edges do not count.
        return (
            self.west < other.east and other.west < self.east
            and self.south < other.north and other.south < self.north
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TransformModel:
    """
    A fitted pixel → lon/lat mapping.

    `coefficients` is plain JSON (lists/floats) holding the normalization
    frames and fitted terms; `solver.build_transform(model)` turns it back into
    an evaluator.
    """
    overlay_id: str
    version: int
    kind: TransformKind
    coefficients: Dict[str, Any] = field(repr=False)
    rmse: float
    bounds: Bounds
    point_count: int
    source_size: Tuple[int, int]
    residuals_m: Tuple[float, ...] = field(default=(), repr=False)
    created_at: IsoTime = field(default_factory=iso_now_ms)

    def __post_init__(self) -> None:
        if not (self.rmse >= 0.0):
            raise ValueError("rmse must be >= 0")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overlay_id": self.overlay_id,
            "version": self.version,
            "kind": self.kind.value,
            "coefficients": self.coefficients,
            "rmse": self.rmse,
            "bounds": self.bounds.to_dict(),
            "point_count": self.point_count,
            "source_size": list(self.source_size),
            "residuals_m": list(self.residuals_m),
            "created_at": self.created_at,
        }


def content_etag(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True, slots=True)
class Tile:
    overlay_id: str
    transform_version: int
    z: int
    x: int
    y: int
    payload: bytes = field(repr=False)
    format: str = "png"
    etag: str = ""
    created_at: IsoTime = field(default_factory=iso_now_ms)

    def __post_init__(self) -> None:
        if not (0 <= self.z <= MAX_ZOOM):
            raise InvalidInput(f"zoom must be within [0, {MAX_ZOOM}]", z=self.z)
        n = 1 << self.z
        if not (0 <= self.x < n and 0 <= self.y < n):
            raise InvalidInput("tile index out of range", z=self.z, x=self.x, y=self.y)
        if not self.etag:
            object.__setattr__(self, "etag", content_etag(self.payload))

    @property
    def key(self) -> Tuple[str, int, int, int, int]:
        return (self.overlay_id, self.transform_version, self.z, self.x, self.y)

    def to_meta(self) -> Dict[str, Any]:
        """Metadata without payload bytes (safe to log/serialize)."""
        return {
            "overlay_id": self.overlay_id,
            "transform_version": self.transform_version,
            "z": self.z,
            "x": self.x,
            "y": self.y,
            "format": self.format,
            "etag": self.etag,
            "size": len(self.payload),
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class SourcePage:
    """
    Decoded source page.

    Attributes:
        source_ref: opaque reference given to the page reader.
        width, height: pixel dimensions.
        raster: np.ndarray (H, W, 4) uint8 BGRA.
    """
    source_ref: str
    width: int
    height: int
    raster: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.raster, np.ndarray):
            raise TypeError("raster must be a numpy ndarray")
        if self.raster.ndim != 3 or self.raster.shape[2] != 4:
            raise ValueError("raster must be (H, W, 4) BGRA")
        if self.raster.shape[0] != self.height or self.raster.shape[1] != self.width:
            raise ValueError("width/height do not match raster shape")
        if self.raster.dtype != np.uint8:
            self.raster = self.raster.astype(np.uint8, copy=False)


@dataclass(slots=True)
class TileFailure:
    z: int
    x: int
    y: int
    error: str
    kind: str = "PartialTileFailure"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProcessingJob:
    """
    One pass of an overlay through SOLVING → RASTERIZING → READY.

    `completed_zoom` is the resume cursor: the highest zoom level whose tiles
    are all persisted. `tile_failures` is kept even when levels succeed.
    """
    id: str
    overlay_id: str
    points: List[ControlPoint] = field(repr=False)
    kind: TransformKind
    zoom_levels: List[int]
    stage: Stage = Stage.PENDING
    status: JobStatus = JobStatus.PENDING
    progress_pct: float = 0.0
    error: Optional[Dict[str, Any]] = None
    attempt_count: int = 0
    max_attempts: int = 3
    priority: int = 5
    transform_version: Optional[int] = None
    completed_zoom: Optional[int] = None
    tile_failures: List[TileFailure] = field(default_factory=list)
    level_stats: Dict[int, Dict[str, int]] = field(default_factory=dict)
    transitions: List[Stage] = field(default_factory=list)
    created_at: IsoTime = field(default_factory=iso_now_ms)
    updated_at: IsoTime = field(default_factory=iso_now_ms)

    def __post_init__(self) -> None:
        if not (1 <= self.priority <= 10):
            raise InvalidInput("priority must be within [1, 10]")
        if not self.transitions:
            self.transitions.append(self.stage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "overlay_id": self.overlay_id,
            "kind": self.kind.value,
            "zoom_levels": list(self.zoom_levels),
            "stage": self.stage.value,
            "status": self.status.value,
            "progress_pct": round(self.progress_pct, 2),
            "error": self.error,
            "attempt_count": self.attempt_count,
            "priority": self.priority,
            "transform_version": self.transform_version,
            "completed_zoom": self.completed_zoom,
            "tile_failures": [f.to_dict() for f in self.tile_failures],
            "level_stats": {str(k): v for k, v in self.level_stats.items()},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
