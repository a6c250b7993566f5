from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from common.errors import DegenerateGeometry, InvalidInput
from common.geo import clamp_bounds
from common.logging_setup import get_logger
from common.types import Bounds, ControlPoint, TransformKind, TransformModel
from solver.frames import GeoFrame, PixelFrame, check_distinct, check_not_collinear
from solver.kinds import FITTERS, AffineFitter, Fitter, ProjectiveFitter


log = get_logger(__name__)

_EDGE_SAMPLES = 17
_NEWTON_MAX_ITER = 50
_NEWTON_TOL = 1e-12
_NEWTON_MAX_STEP = 0.5


class Transform:
    """
    Evaluator for a TransformModel.

    forward: pixel (px, py) -> (lon, lat) degrees
    inverse: (lon, lat) -> pixel; NaN where no pre-image is found.
    Both accept scalars or numpy arrays of any shape.
    """

    def __init__(self, kind: TransformKind, params: Dict[str, Any], pixel: PixelFrame, geo: GeoFrame,
                 seed: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.params = params
        self.pixel = pixel
        self.geo = geo
        self._fitter: Fitter = FITTERS[kind]
        self._seed = seed

    # normalized-space helpers
    def forward_normalized(self, u, v):
        return self._fitter.forward(self.params, u, v)

    def inverse_normalized(self, a, b):
        if self._fitter.analytic_inverse:
            return self._fitter.inverse(self.params, a, b)
        return self._newton_inverse(np.asarray(a, dtype=float), np.asarray(b, dtype=float))

    def forward(self, px, py) -> Tuple[np.ndarray, np.ndarray]:
        u, v = self.pixel.normalize(px, py)
        a, b = self.forward_normalized(u, v)
        return self.geo.denormalize(a, b)

    def inverse(self, lon, lat) -> Tuple[np.ndarray, np.ndarray]:
        a, b = self.geo.normalize(lon, lat)
        u, v = self.inverse_normalized(a, b)
        return self.pixel.denormalize(u, v)

    def _newton_inverse(self, a: np.ndarray, b: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Damped Newton iteration on forward(u, v) = (a, b), seeded by the
        inverse of the affine least-squares fit of the same control points.
        """
        if self._seed is not None:
            u, v = AffineFitter().inverse(self._seed, a, b)
        else:
            u, v = np.array(a, dtype=float, copy=True), np.array(b, dtype=float, copy=True)
        u = np.array(u, dtype=float)
        v = np.array(v, dtype=float)
        with np.errstate(all="ignore"):
            for _ in range(_NEWTON_MAX_ITER):
                fa, fb = self._fitter.forward(self.params, u, v)
                ra = a - fa
                rb = b - fb
                if np.all(~np.isfinite(ra) | (np.abs(ra) + np.abs(rb) <= _NEWTON_TOL)):
                    break
                j11, j12, j21, j22 = self._fitter.jacobian(self.params, u, v)
                det = j11 * j22 - j12 * j21
                du = (j22 * ra - j12 * rb) / det
                dv = (-j21 * ra + j11 * rb) / det
                step = np.hypot(du, dv)
                damp = np.where(step > _NEWTON_MAX_STEP, _NEWTON_MAX_STEP / step, 1.0)
                u = u + du * damp
                v = v + dv * damp
            fa, fb = self._fitter.forward(self.params, u, v)
            resid = np.abs(a - fa) + np.abs(b - fb)
            bad = ~np.isfinite(resid) | (resid > 1e-8)
        u = np.where(bad, np.nan, u)
        v = np.where(bad, np.nan, v)
        if u.ndim == 0:
            return float(u), float(v)
        return u, v


def _as_arrays(points: Sequence[ControlPoint]) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    arr = np.array([p.as_tuple() for p in points], dtype=float).reshape(-1, 4)
    return arr[:, 0], arr[:, 1], arr[:, 2], arr[:, 3]


def _perimeter(width: float, height: float, n: int = _EDGE_SAMPLES) -> Tuple[np.ndarray, np.ndarray]:
    t = np.linspace(0.0, 1.0, n)
    xs = np.concatenate([t * width, np.full(n, width), (1 - t) * width, np.zeros(n)])
    ys = np.concatenate([np.zeros(n), t * height, np.full(n, height), (1 - t) * height])
    return xs, ys


def compute_bounds(transform: Transform, width: float, height: float) -> Bounds:
    """
    Envelope of the page pixel box projected through the transform. Corners
    plus edge samples so curved edges of non-linear kinds are covered.
    """
    xs, ys = _perimeter(width, height)
    if transform.kind is TransformKind.PROJECTIVE:
        u, v = transform.pixel.normalize(xs, ys)
        w = ProjectiveFitter().denominator(transform.params, u, v)
        if not (np.all(w > 1e-12) or np.all(w < -1e-12)):
            raise DegenerateGeometry("page crosses the homography horizon")
    lon, lat = transform.forward(xs, ys)
    if not (np.all(np.isfinite(lon)) and np.all(np.isfinite(lat))):
        raise DegenerateGeometry("page corners do not map to finite coordinates")
    return clamp_bounds(Bounds(
        north=float(np.max(lat)),
        south=float(np.min(lat)),
        east=float(np.max(lon)),
        west=float(np.min(lon)),
    ))


def check_geometry(points: Sequence[ControlPoint], kind: TransformKind | str, **options: Any) -> None:
    """
    Cheap up-front validation: count limits, duplicates and collinearity.
    Raises InvalidInput, TooManyPoints or DegenerateGeometry.
    """
    kind = TransformKind.parse(kind)
    fitter = FITTERS[kind]
    fitter.check_count(len(points), **_count_options(kind, options))
    px, py, lon, lat = _as_arrays(points)
    pixel = PixelFrame.fit(px, py)
    geo = GeoFrame.fit(lon, lat)
    u, v = pixel.normalize(px, py)
    a, b = geo.normalize(lon, lat)
    check_distinct(u, v, "pixel")
    check_distinct(a, b, "geographic")
    check_not_collinear(u, v, "pixel")
    check_not_collinear(a, b, "geographic")


def _count_options(kind: TransformKind, options: Dict[str, Any]) -> Dict[str, Any]:
    if kind is TransformKind.POLYNOMIAL:
        return {"order": options.get("order", 2)}
    if kind is TransformKind.THIN_PLATE_SPLINE:
        return {"max_points": options.get("max_points", 20)}
    return {}


def solve(
    points: Sequence[ControlPoint],
    kind: TransformKind | str = TransformKind.AFFINE,
    *,
    order: int = 2,
    smoothing: float = 0.0,
    max_points: int = 20,
    source_size: Optional[Tuple[int, int]] = None,
    overlay_id: str = "",
    version: int = 0,
) -> Tuple[TransformModel, np.ndarray]:
    """
    Fit a pixel → lon/lat transform.

    Args:
        points: control points (≥ minimum for the kind).
        kind: affine | polynomial | thin_plate_spline | projective.
        order: polynomial order.
        smoothing: TPS regularization (0 = exact interpolation).
        max_points: TPS hard cap.
        source_size: page (width, height) in pixels; bounds are derived from
            this box. Defaults to the control points' pixel envelope.

    Returns:
        (TransformModel, residuals) where residuals are per-point distances in
        meters between the reprojected pixel and the recorded position.

    Raises:
        InvalidInput, TooManyPoints, DegenerateGeometry
    """
    kind = TransformKind.parse(kind)
    pts = list(points)
    options = {"order": order, "smoothing": smoothing, "max_points": max_points}
    check_geometry(pts, kind, **options)

    px, py, lon, lat = _as_arrays(pts)
    pixel = PixelFrame.fit(px, py)
    geo = GeoFrame.fit(lon, lat)
    u, v = pixel.normalize(px, py)
    a, b = geo.normalize(lon, lat)

    fitter = FITTERS[kind]
    params = fitter.fit(u, v, a, b, **options)
    seed = None if fitter.analytic_inverse else AffineFitter().fit(u, v, a, b)
    transform = Transform(kind, params, pixel, geo, seed=seed)

    fa, fb = fitter.forward(params, u, v)
    residuals = np.hypot(fa - a, fb - b) * geo.scale
    if not np.all(np.isfinite(residuals)):
        raise DegenerateGeometry("fitted transform is not finite at the control points")
    rmse = float(np.sqrt(np.mean(residuals ** 2)))

    if source_size is None:
        width, height = float(np.max(px)), float(np.max(py))
    else:
        width, height = float(source_size[0]), float(source_size[1])
    if width <= 0 or height <= 0:
        raise InvalidInput("source size must be positive", width=width, height=height)
    bounds = compute_bounds(transform, width, height)

    coefficients = {
        "pixel_frame": pixel.to_dict(),
        "geo_frame": geo.to_dict(),
        "params": params,
        "seed": seed,
    }
    model = TransformModel(
        overlay_id=overlay_id,
        version=version,
        kind=kind,
        coefficients=coefficients,
        rmse=rmse,
        bounds=bounds,
        point_count=len(pts),
        source_size=(int(round(width)), int(round(height))),
        residuals_m=tuple(float(r) for r in residuals),
    )
    log.info(
        "transform solved",
        extra={"extra": {"overlay_id": overlay_id, "kind": kind.value, "points": len(pts), "rmse_m": rmse}},
    )
    return model, residuals


def build_transform(model: TransformModel) -> Transform:
    c = model.coefficients
    return Transform(
        model.kind,
        c["params"],
        PixelFrame.from_dict(c["pixel_frame"]),
        GeoFrame.from_dict(c["geo_frame"]),
        seed=c.get("seed"),
    )


def flag_outliers(residuals: Sequence[float], rmse: float, factor: float = 3.0) -> List[int]:
    """
    Indices of points whose residual exceeds factor × RMSE. Advisory only:
    nothing is removed, the caller decides what to do with them.
    """
    r = np.asarray(residuals, dtype=float)
    if rmse <= 0.0 or r.size == 0:
        return []
    return [int(i) for i in np.flatnonzero(r > factor * rmse)]
