from __future__ import annotations

from typing import Tuple
import math
import numpy as np

from common.types import Bounds


# --- Earth constants ---
EARTH_RADIUS_M = 6371008.8                # mean Earth radius (m)
MERCATOR_MAX_LAT = 85.05112877980659      # Web Mercator latitude limit (deg)


# -------------------------
# Local planar frame (equirectangular)
# -------------------------
class LocalFrame:
    """
    Equirectangular projection about (lon0, lat0).

    Maps lon/lat degrees to east/north meters so that residuals and fits are
    computed in a single planar unit. Accurate for overlay-sized areas; the
    scale factor is fixed at the reference latitude.
    """

    def __init__(self, lon0: float, lat0: float):
        self.lon0 = float(lon0)
        self.lat0 = float(lat0)
        self._kx = math.radians(1.0) * EARTH_RADIUS_M * max(1e-6, math.cos(math.radians(self.lat0)))
        self._ky = math.radians(1.0) * EARTH_RADIUS_M

    @classmethod
    def centroid_of(cls, lon: np.ndarray, lat: np.ndarray) -> "LocalFrame":
        return cls(float(np.mean(lon)), float(np.mean(lat)))

    def to_local(self, lon, lat) -> Tuple[np.ndarray, np.ndarray]:
        e = (np.asarray(lon, dtype=float) - self.lon0) * self._kx
        n = (np.asarray(lat, dtype=float) - self.lat0) * self._ky
        return e, n

    def to_geo(self, e, n) -> Tuple[np.ndarray, np.ndarray]:
        lon = np.asarray(e, dtype=float) / self._kx + self.lon0
        lat = np.asarray(n, dtype=float) / self._ky + self.lat0
        return lon, lat

    def to_dict(self) -> dict:
        return {"lon0": self.lon0, "lat0": self.lat0}


# -------------------------
# Web Mercator / slippy-map tiling
# -------------------------
def lon_to_tile_x(lon, z: int):
    """Fractional tile X at zoom z (vectorized)."""
    return (np.asarray(lon, dtype=float) + 180.0) / 360.0 * (1 << z)


def lat_to_tile_y(lat, z: int):
    """Fractional tile Y at zoom z; latitude is clamped to the Mercator limit."""
    lat = np.clip(np.asarray(lat, dtype=float), -MERCATOR_MAX_LAT, MERCATOR_MAX_LAT)
    s = np.sin(np.radians(lat))
    y = 0.5 - np.log((1.0 + s) / (1.0 - s)) / (4.0 * math.pi)
    return y * (1 << z)


def tile_x_to_lon(x, z: int):
    return np.asarray(x, dtype=float) / (1 << z) * 360.0 - 180.0


def tile_y_to_lat(y, z: int):
    n = math.pi - 2.0 * math.pi * (np.asarray(y, dtype=float) / (1 << z))
    return np.degrees(np.arctan(np.sinh(n)))


def tile_bounds(z: int, x: int, y: int) -> Bounds:
    """Geographic envelope of tile (z, x, y)."""
    return Bounds(
        north=float(tile_y_to_lat(y, z)),
        south=float(tile_y_to_lat(y + 1, z)),
        east=float(tile_x_to_lon(x + 1, z)),
        west=float(tile_x_to_lon(x, z)),
    )


def clamp_bounds(b: Bounds) -> Bounds:
    """Clamp an envelope to the Web Mercator domain."""
    return Bounds(
        north=min(MERCATOR_MAX_LAT, max(-MERCATOR_MAX_LAT, b.north)),
        south=min(MERCATOR_MAX_LAT, max(-MERCATOR_MAX_LAT, b.south)),
        east=min(180.0, max(-180.0, b.east)),
        west=min(180.0, max(-180.0, b.west)),
    )
