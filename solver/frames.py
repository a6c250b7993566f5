from __future__ import annotations

"""
Normalization frames used by every fitter.

Pixels are centered on their centroid and scaled so the mean distance from it
is sqrt(2) (Hartley normalization). Geographic points are projected to local
east/north meters about their centroid and scaled the same way. Fitting in
these frames keeps design matrices well conditioned and puts residuals in
meters.
"""

import math
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from common.errors import DegenerateGeometry
from common.geo import LocalFrame


_SQRT2 = math.sqrt(2.0)


@dataclass(frozen=True)
class PixelFrame:
    cx: float
    cy: float
    scale: float  # pixels per normalized unit

    @classmethod
    def fit(cls, px: np.ndarray, py: np.ndarray) -> "PixelFrame":
        cx, cy = float(np.mean(px)), float(np.mean(py))
        d = float(np.mean(np.hypot(px - cx, py - cy)))
        if not math.isfinite(d) or d <= 0.0:
            raise DegenerateGeometry("control points share a single pixel location")
        return cls(cx, cy, d / _SQRT2)

    def normalize(self, px, py) -> Tuple[np.ndarray, np.ndarray]:
        return (np.asarray(px, dtype=float) - self.cx) / self.scale, (np.asarray(py, dtype=float) - self.cy) / self.scale

    def denormalize(self, u, v) -> Tuple[np.ndarray, np.ndarray]:
        return np.asarray(u) * self.scale + self.cx, np.asarray(v) * self.scale + self.cy

    def to_dict(self) -> Dict[str, float]:
        return {"cx": self.cx, "cy": self.cy, "scale": self.scale}

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> "PixelFrame":
        return cls(float(d["cx"]), float(d["cy"]), float(d["scale"]))


@dataclass(frozen=True)
class GeoFrame:
    local: LocalFrame
    scale: float  # meters per normalized unit

    @classmethod
    def fit(cls, lon: np.ndarray, lat: np.ndarray) -> "GeoFrame":
        local = LocalFrame.centroid_of(lon, lat)
        e, n = local.to_local(lon, lat)
        d = float(np.mean(np.hypot(e, n)))
        if not math.isfinite(d) or d <= 0.0:
            raise DegenerateGeometry("control points share a single geographic location")
        return cls(local, d / _SQRT2)

    def normalize(self, lon, lat) -> Tuple[np.ndarray, np.ndarray]:
        e, n = self.local.to_local(lon, lat)
        return e / self.scale, n / self.scale

    def denormalize(self, a, b) -> Tuple[np.ndarray, np.ndarray]:
        return self.local.to_geo(np.asarray(a) * self.scale, np.asarray(b) * self.scale)

    def to_dict(self) -> Dict[str, float]:
        d = self.local.to_dict()
        d["scale"] = self.scale
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, float]) -> "GeoFrame":
        return cls(LocalFrame(float(d["lon0"]), float(d["lat0"])), float(d["scale"]))


def check_distinct(u: np.ndarray, v: np.ndarray, what: str, tol: float = 1e-9) -> None:
    """Duplicate points make every kind underdetermined or inconsistent."""
    pts = np.column_stack([u, v])
    n = len(pts)
    for i in range(n - 1):
        d = np.hypot(*(pts[i + 1:] - pts[i]).T)
        if np.any(d <= tol):
            j = int(i + 1 + np.argmax(d <= tol))
            raise DegenerateGeometry(f"duplicate {what} coordinates", first=i, second=j)


def check_not_collinear(u: np.ndarray, v: np.ndarray, what: str, tol: float = 1e-9) -> None:
    """Raise unless the points span the plane."""
    M = np.column_stack([u, v, np.ones_like(u)])
    s = np.linalg.svd(M, compute_uv=False)
    if len(s) < 3 or s[-1] <= tol * s[0]:
        raise DegenerateGeometry(f"{what} coordinates are collinear")
