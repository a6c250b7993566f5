from __future__ import annotations

"""
Tile resampling.

For every output pixel center of a 256x256 Web Mercator tile:
    tile pixel -> lon/lat -> transform.inverse -> source pixel
then cv2.remap samples the page (bilinear, transparent outside the page).

Page pixel coordinates are continuous with (0, 0) at the top-left corner of
the first pixel, so the remap coordinate of page position p is p - 0.5.
"""

import math
from concurrent.futures import FIRST_COMPLETED, Executor, Future, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

import cv2
import numpy as np

from common.errors import JobCancelled, JobTimeout, LevelFailed, PartialTileFailure
from common.geo import tile_x_to_lon, tile_y_to_lat
from common.logging_setup import get_logger
from common.types import TILE_SIZE, SourcePage, Tile, TileFailure, TransformModel
from common.utils import CancelToken, Deadline
from rasterizer.tiling import TileCursor, tiles_for_bounds
from solver import Transform, build_transform


log = get_logger(__name__)

_OUTSIDE = -1.0
_TRANSPARENT = (0, 0, 0, 0)


class PagePyramid:
    """
    Page raster plus cv2.pyrDown overviews.

    Low zoom tiles cover many page pixels per output pixel; sampling the
    matching overview keeps them from aliasing. Built once per job, read-only
    afterwards so worker threads can share it.
    """

    def __init__(self, page: SourcePage, enabled: bool = True, min_side: int = 32):
        self.page = page
        self.levels: List[np.ndarray] = [page.raster]
        if enabled:
            img = page.raster
            while min(img.shape[0], img.shape[1]) // 2 >= min_side:
                img = cv2.pyrDown(img)
                self.levels.append(img)

    def select(self, pixels_per_output: float) -> Tuple[int, np.ndarray]:
        if not math.isfinite(pixels_per_output) or pixels_per_output <= 2.0:
            return 0, self.levels[0]
        k = min(len(self.levels) - 1, int(math.floor(math.log2(pixels_per_output))) - 1)
        k = max(0, k)
        return k, self.levels[k]


def tile_page_coords(transform: Transform, z: int, x: int, y: int,
                     tile_size: int = TILE_SIZE) -> Tuple[np.ndarray, np.ndarray]:
    """Continuous page coordinates for every output pixel center (NaN where unmapped)."""
    centers = (np.arange(tile_size, dtype=float) + 0.5) / tile_size
    lon = tile_x_to_lon(x + centers, z)
    lat = tile_y_to_lat(y + centers, z)
    lon_g, lat_g = np.meshgrid(lon, lat)
    px, py = transform.inverse(lon_g, lat_g)
    return np.asarray(px, dtype=float), np.asarray(py, dtype=float)


def _footprint(px: np.ndarray, py: np.ndarray) -> float:
    """Median page pixels covered by one output pixel."""
    with np.errstate(all="ignore"):
        dx = np.hypot(np.diff(px, axis=1), np.diff(py, axis=1))
        dy = np.hypot(np.diff(px, axis=0), np.diff(py, axis=0))
        vals = np.concatenate([dx[np.isfinite(dx)], dy[np.isfinite(dy)]])
    if vals.size == 0:
        return 1.0
    return float(np.median(vals))


def _inside_page(px: np.ndarray, py: np.ndarray, width: int, height: int) -> np.ndarray:
    """True where a continuous page coordinate lies on the page (edges included)."""
    with np.errstate(invalid="ignore"):
        return (px >= 0.0) & (px <= width) & (py >= 0.0) & (py <= height)


def _remap_maps(px: np.ndarray, py: np.ndarray, level: int, img: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    f = float(1 << level)
    h, w = img.shape[:2]
    with np.errstate(all="ignore"):
        mx = px / f - 0.5
        my = py / f - 0.5
    bad = ~(np.isfinite(mx) & np.isfinite(my))
    mx = np.where(bad, _OUTSIDE, np.clip(mx, _OUTSIDE, float(w)))
    my = np.where(bad, _OUTSIDE, np.clip(my, _OUTSIDE, float(h)))
    return mx.astype(np.float32), my.astype(np.float32)


def render_tile(transform: Transform, pyramid: PagePyramid, z: int, x: int, y: int,
                tile_size: int = TILE_SIZE) -> bytes:
    """
    Resample one tile and return its PNG payload (RGBA).

    Sampling replicates the page border so edge pixels keep full opacity;
    everything whose source coordinate is off the page is then cleared.
    """
    px, py = tile_page_coords(transform, z, x, y, tile_size)
    level, img = pyramid.select(_footprint(px, py))
    map_x, map_y = _remap_maps(px, py, level, img)
    out = cv2.remap(
        img, map_x, map_y,
        interpolation=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_REPLICATE,
    )
    out[~_inside_page(px, py, pyramid.page.width, pyramid.page.height)] = _TRANSPARENT
    ok, buf = cv2.imencode(".png", out)
    if not ok:
        raise PartialTileFailure("PNG encoding failed", z=z, x=x, y=y)
    return buf.tobytes()


@dataclass(slots=True)
class LevelResult:
    z: int
    total: int
    rendered: int = 0
    tiles: List[Tile] = field(default_factory=list, repr=False)
    failures: List[TileFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def stats(self) -> Dict[str, int]:
        return {"total": self.total, "rendered": self.rendered, "failed": self.failed}


def _check_interrupts(cancel: Optional[CancelToken], deadline: Optional[Deadline], z: int) -> None:
    if cancel is not None and cancel.cancelled:
        raise JobCancelled("job cancelled", zoom=z)
    if deadline is not None and deadline.expired:
        raise JobTimeout(f"attempt exceeded {deadline.budget_s}s", zoom=z)


def _render_one(transform: Transform, pyramid: PagePyramid, z: int, x: int, y: int, tile_size: int) -> bytes:
    return render_tile(transform, pyramid, z, x, y, tile_size)


def render_level(
    model: TransformModel,
    page: SourcePage,
    z: int,
    pool: Executor,
    cancel: Optional[CancelToken] = None,
    deadline: Optional[Deadline] = None,
    *,
    transform: Optional[Transform] = None,
    pyramid: Optional[PagePyramid] = None,
    tile_size: int = TILE_SIZE,
    max_failed_ratio: float = 0.05,
    sink: Optional[Callable[[Tile], None]] = None,
    window: int = 8,
) -> LevelResult:
    """
    Render every tile of zoom level z on `pool`.

    Submissions are windowed so cancellation and the deadline are checked
    between tiles; tiles already in flight finish. Completed tiles go to
    `sink` on the calling thread (collected in the result when no sink is
    given). Per-tile exceptions become TileFailure records.

    Raises:
        JobCancelled, JobTimeout: between tiles.
        LevelFailed: failed/total > max_failed_ratio.
        Whatever `sink` raises (e.g. StorageFailure).
    """
    transform = transform or build_transform(model)
    pyramid = pyramid or PagePyramid(page)
    indices = tiles_for_bounds(model.bounds, z)
    result = LevelResult(z=z, total=len(indices))
    window = max(1, int(window))
    pending: Set[Future] = set()
    where: Dict[Future, Tuple[int, int]] = {}

    def collect(done: Set[Future]) -> None:
        for fut in sorted(done, key=lambda f: (where[f][1], where[f][0])):
            x, y = where.pop(fut)
            try:
                payload = fut.result()
            except Exception as e:
                failure = TileFailure(z=z, x=x, y=y, error=str(e) or repr(e), kind=type(e).__name__)
                result.failures.append(failure)
                log.warning("tile failed", extra={"extra": {"overlay_id": model.overlay_id, **failure.to_dict()}})
                continue
            tile = Tile(
                overlay_id=model.overlay_id,
                transform_version=model.version,
                z=z, x=x, y=y,
                payload=payload,
            )
            result.rendered += 1
            if sink is not None:
                sink(tile)
            else:
                result.tiles.append(tile)

    try:
        for x, y in indices:
            _check_interrupts(cancel, deadline, z)
            while len(pending) >= window:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                collect(done)
            fut = pool.submit(_render_one, transform, pyramid, z, x, y, tile_size)
            where[fut] = (x, y)
            pending.add(fut)
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            collect(done)
    finally:
        for fut in pending:
            fut.cancel()

    result.tiles.sort(key=lambda t: (t.y, t.x))
    result.failures.sort(key=lambda f: (f.y, f.x))
    if result.total and result.failed / result.total > max_failed_ratio:
        raise LevelFailed(
            f"{result.failed}/{result.total} tiles failed at zoom {z}",
            zoom=z, failed=result.failed, total=result.total, failures=result.failures,
        )
    log.info("level rendered", extra={"extra": {"overlay_id": model.overlay_id, "version": model.version,
                                                "z": z, **result.stats()}})
    return result


def generate_tiles(
    model: TransformModel,
    page: SourcePage,
    zoom_levels: Sequence[int],
    *,
    resume_after: Optional[int] = None,
    tile_size: int = TILE_SIZE,
    pyramid: bool = True,
) -> Iterator[Tile]:
    """
    Lazy, single-threaded tile sequence, low zoom first.

    `resume_after` skips levels <= that zoom, so a consumer that persisted
    levels up to z can restart at z + 1. Rendering errors propagate.
    """
    transform = build_transform(model)
    levels = PagePyramid(page, enabled=pyramid)
    cursor = TileCursor(model.bounds, zoom_levels).resume_from(resume_after)
    for z, x, y in cursor:
        payload = render_tile(transform, levels, z, x, y, tile_size)
        yield Tile(overlay_id=model.overlay_id, transform_version=model.version, z=z, x=x, y=y, payload=payload)
