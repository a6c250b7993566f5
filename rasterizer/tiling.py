from __future__ import annotations

import math
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from common.errors import InvalidInput
from common.geo import lat_to_tile_y, lon_to_tile_x
from common.types import MAX_ZOOM, Bounds


TileIndex = Tuple[int, int]


def validate_zoom_levels(zoom_levels: Sequence[int]) -> List[int]:
    """Sorted, de-duplicated zoom levels; each must lie in [0, MAX_ZOOM]."""
    out = sorted({int(z) for z in zoom_levels})
    if not out:
        raise InvalidInput("at least one zoom level is required")
    for z in out:
        if z < 0 or z > MAX_ZOOM:
            raise InvalidInput(f"zoom level must be within [0, {MAX_ZOOM}]", zoom=z)
    return out


def tile_range(bounds: Bounds, z: int) -> Tuple[int, int, int, int]:
    """
    Inclusive (x_min, x_max, y_min, y_max) of tiles whose envelope intersects
    `bounds` at zoom z. Intersection is half-open: a tile that only touches
    an edge of the bounds is excluded. Indices are clamped to [0, 2^z).
    """
    n = 1 << z
    fx0 = float(lon_to_tile_x(bounds.west, z))
    fx1 = float(lon_to_tile_x(bounds.east, z))
    fy0 = float(lat_to_tile_y(bounds.north, z))
    fy1 = float(lat_to_tile_y(bounds.south, z))
    x0, y0 = math.floor(fx0), math.floor(fy0)
    x1 = max(x0, math.ceil(fx1) - 1)
    y1 = max(y0, math.ceil(fy1) - 1)
    clamp = lambda v: min(n - 1, max(0, v))
    return clamp(x0), clamp(x1), clamp(y0), clamp(y1)


def tiles_for_bounds(bounds: Bounds, z: int) -> List[TileIndex]:
    """Row-major list of (x, y) tiles intersecting bounds at zoom z."""
    x0, x1, y0, y1 = tile_range(bounds, z)
    return [(x, y) for y in range(y0, y1 + 1) for x in range(x0, x1 + 1)]


class TileCursor:
    """
    Explicit cursor over (zoom_level, tile_index) pairs.

    Levels are visited low zoom first. `completed_zoom` is the externally
    persisted resume point: levels <= completed_zoom are skipped, so a
    restarted job continues at the next level without replaying earlier ones.

        cursor = TileCursor(model.bounds, [0, 1, 2], completed_zoom=job.completed_zoom)
        for z in cursor.pending_levels():
            for x, y in cursor.tiles_at(z):
                ...
            cursor.mark_level_done(z)
    """

    def __init__(self, bounds: Bounds, zoom_levels: Sequence[int], completed_zoom: Optional[int] = None):
        self.bounds = bounds
        self.zoom_levels = validate_zoom_levels(zoom_levels)
        self.completed_zoom = completed_zoom
        self._cache: Dict[int, List[TileIndex]] = {}

    def resume_from(self, completed_zoom: Optional[int]) -> "TileCursor":
        self.completed_zoom = completed_zoom
        return self

    def tiles_at(self, z: int) -> List[TileIndex]:
        if z not in self._cache:
            self._cache[z] = tiles_for_bounds(self.bounds, z)
        return self._cache[z]

    def pending_levels(self) -> List[int]:
        if self.completed_zoom is None:
            return list(self.zoom_levels)
        return [z for z in self.zoom_levels if z > self.completed_zoom]

    def mark_level_done(self, z: int) -> None:
        if self.completed_zoom is None or z > self.completed_zoom:
            self.completed_zoom = z

    def total(self) -> int:
        return sum(len(self.tiles_at(z)) for z in self.zoom_levels)

    def remaining(self) -> int:
        return sum(len(self.tiles_at(z)) for z in self.pending_levels())

    def __iter__(self) -> Iterator[Tuple[int, int, int]]:
        for z in self.pending_levels():
            for x, y in self.tiles_at(z):
                yield (z, x, y)
