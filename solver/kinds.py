from __future__ import annotations

"""
Fitters, one per TransformKind, behind a common contract.

All fitters work in normalized frames (see frames.py): `u, v` are normalized
pixel coordinates, `a, b` normalized east/north. Parameters are returned as
plain lists so a TransformModel stays JSON serializable.

    fitter = FITTERS[kind]
    params = fitter.fit(u, v, a, b, **options)
    a, b = fitter.forward(params, u, v)
    (da_du, da_dv, db_du, db_dv) = fitter.jacobian(params, u, v)
"""

from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from common.errors import DegenerateGeometry, InvalidInput, TooManyPoints
from common.types import TransformKind


Params = Dict[str, Any]
Arr = np.ndarray

_RANK_TOL = 1e-10


def _lstsq(X: Arr, t: Arr) -> Arr:
    coef, _res, rank, _sv = np.linalg.lstsq(X, t, rcond=None)
    if rank < X.shape[1]:
        raise DegenerateGeometry("design matrix is rank deficient", rank=int(rank), terms=int(X.shape[1]))
    return coef


def _check_rank(X: Arr, what: str) -> None:
    s = np.linalg.svd(X, compute_uv=False)
    if len(s) < X.shape[1] or s[-1] <= _RANK_TOL * s[0]:
        raise DegenerateGeometry(f"{what}: point configuration does not determine the transform")


class Fitter:
    kind: TransformKind
    analytic_inverse = False

    def min_points(self, **options: Any) -> int:
        raise NotImplementedError

    def max_points(self, **options: Any) -> Optional[int]:
        return None

    def fit(self, u: Arr, v: Arr, a: Arr, b: Arr, **options: Any) -> Params:
        raise NotImplementedError

    def forward(self, params: Params, u: Arr, v: Arr) -> Tuple[Arr, Arr]:
        raise NotImplementedError

    def jacobian(self, params: Params, u: Arr, v: Arr) -> Tuple[Arr, Arr, Arr, Arr]:
        raise NotImplementedError

    def inverse(self, params: Params, a: Arr, b: Arr) -> Tuple[Arr, Arr]:
        raise NotImplementedError

    def check_count(self, n: int, **options: Any) -> None:
        need = self.min_points(**options)
        if n < need:
            raise InvalidInput(
                f"{self.kind.value} transform needs at least {need} control points, got {n}",
                required=need,
                given=n,
            )
        cap = self.max_points(**options)
        if cap is not None and n > cap:
            raise TooManyPoints(
                f"{self.kind.value} transform accepts at most {cap} control points, got {n}",
                limit=cap,
                given=n,
            )


# -------------------------
# Affine
# -------------------------
class AffineFitter(Fitter):
    kind = TransformKind.AFFINE
    analytic_inverse = True

    def min_points(self, **options: Any) -> int:
        return 3

    def fit(self, u, v, a, b, **options) -> Params:
        X = np.column_stack([u, v, np.ones_like(u)])
        _check_rank(X, "affine")
        coef = _lstsq(X, np.column_stack([a, b]))  # (3, 2)
        M = coef.T                                  # rows: a, b ; cols: u, v, 1
        if abs(np.linalg.det(M[:, :2])) <= 1e-12:
            raise DegenerateGeometry("affine fit collapses the page onto a line")
        return {"matrix": M.tolist()}

    def forward(self, params, u, v):
        M = np.asarray(params["matrix"], dtype=float)
        a = M[0, 0] * u + M[0, 1] * v + M[0, 2]
        b = M[1, 0] * u + M[1, 1] * v + M[1, 2]
        return a, b

    def jacobian(self, params, u, v):
        M = np.asarray(params["matrix"], dtype=float)
        one = np.ones_like(np.asarray(u, dtype=float))
        return M[0, 0] * one, M[0, 1] * one, M[1, 0] * one, M[1, 1] * one

    def inverse(self, params, a, b):
        M = np.asarray(params["matrix"], dtype=float)
        Li = np.linalg.inv(M[:, :2])
        da = np.asarray(a, dtype=float) - M[0, 2]
        db = np.asarray(b, dtype=float) - M[1, 2]
        return Li[0, 0] * da + Li[0, 1] * db, Li[1, 0] * da + Li[1, 1] * db


# -------------------------
# Polynomial
# -------------------------
def _poly_exponents(order: int) -> List[Tuple[int, int]]:
    return [(i - j, j) for i in range(order + 1) for j in range(i + 1)]


class PolynomialFitter(Fitter):
    kind = TransformKind.POLYNOMIAL

    def _order(self, options: Dict[str, Any]) -> int:
        order = int(options.get("order", 2))
        if order < 1 or order > 5:
            raise InvalidInput("polynomial order must be within [1, 5]", order=order)
        return order

    def min_points(self, **options: Any) -> int:
        k = self._order(options)
        return (k + 1) * (k + 2) // 2

    @staticmethod
    def _basis(exps, u, v) -> Arr:
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        return np.stack([u ** i * v ** j for i, j in exps], axis=-1)

    def fit(self, u, v, a, b, **options) -> Params:
        order = self._order(options)
        exps = _poly_exponents(order)
        X = self._basis(exps, u, v)
        _check_rank(X, f"polynomial order {order}")
        coef = _lstsq(X, np.column_stack([a, b]))
        return {"order": order, "exponents": [list(e) for e in exps], "coef_a": coef[:, 0].tolist(), "coef_b": coef[:, 1].tolist()}

    def forward(self, params, u, v):
        exps = [tuple(e) for e in params["exponents"]]
        X = self._basis(exps, u, v)
        return X @ np.asarray(params["coef_a"]), X @ np.asarray(params["coef_b"])

    def jacobian(self, params, u, v):
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        ca = np.asarray(params["coef_a"])
        cb = np.asarray(params["coef_b"])
        du_terms = []
        dv_terms = []
        for i, j in (tuple(e) for e in params["exponents"]):
            du_terms.append(i * u ** max(i - 1, 0) * v ** j if i else np.zeros_like(u))
            dv_terms.append(j * u ** i * v ** max(j - 1, 0) if j else np.zeros_like(u))
        Du = np.stack(du_terms, axis=-1)
        Dv = np.stack(dv_terms, axis=-1)
        return Du @ ca, Dv @ ca, Du @ cb, Dv @ cb


# -------------------------
# Thin plate spline
# -------------------------
def _tps_kernel(r2: Arr) -> Arr:
    # U(r) = r^2 log r = 0.5 * r2 * log(r2), with U(0) = 0
    with np.errstate(divide="ignore", invalid="ignore"):
        k = 0.5 * r2 * np.log(r2)
    return np.where(r2 > 0.0, k, 0.0)


class ThinPlateSplineFitter(Fitter):
    kind = TransformKind.THIN_PLATE_SPLINE

    def min_points(self, **options: Any) -> int:
        return 3

    def max_points(self, **options: Any) -> Optional[int]:
        return int(options.get("max_points", 20))

    def fit(self, u, v, a, b, **options) -> Params:
        lam = float(options.get("smoothing", 0.0))
        if lam < 0.0:
            raise InvalidInput("TPS smoothing must be >= 0", smoothing=lam)
        n = len(u)
        P = np.column_stack([np.ones(n), u, v])
        _check_rank(P, "thin plate spline")
        r2 = (u[:, None] - u[None, :]) ** 2 + (v[:, None] - v[None, :]) ** 2
        K = _tps_kernel(r2) + lam * np.eye(n)
        L = np.zeros((n + 3, n + 3))
        L[:n, :n] = K
        L[:n, n:] = P
        L[n:, :n] = P.T
        rhs = np.zeros((n + 3, 2))
        rhs[:n, 0] = a
        rhs[:n, 1] = b
        try:
            sol = np.linalg.solve(L, rhs)
        except np.linalg.LinAlgError as e:
            raise DegenerateGeometry(f"thin plate spline system is singular: {e}") from e
        if not np.all(np.isfinite(sol)):
            raise DegenerateGeometry("thin plate spline solution is not finite")
        return {
            "centers": np.column_stack([u, v]).tolist(),
            "weights": sol[:n].tolist(),
            "affine": sol[n:].tolist(),  # rows: 1, u, v ; cols: a, b
            "smoothing": lam,
        }

    def _unpack(self, params):
        C = np.asarray(params["centers"], dtype=float)
        W = np.asarray(params["weights"], dtype=float)
        A = np.asarray(params["affine"], dtype=float)
        return C, W, A

    def forward(self, params, u, v):
        C, W, A = self._unpack(params)
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        du = u[..., None] - C[:, 0]
        dv = v[..., None] - C[:, 1]
        K = _tps_kernel(du * du + dv * dv)
        a = A[0, 0] + A[1, 0] * u + A[2, 0] * v + K @ W[:, 0]
        b = A[0, 1] + A[1, 1] * u + A[2, 1] * v + K @ W[:, 1]
        return a, b

    def jacobian(self, params, u, v):
        C, W, A = self._unpack(params)
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        du = u[..., None] - C[:, 0]
        dv = v[..., None] - C[:, 1]
        r2 = du * du + dv * dv
        # dU/du = (log(r2) + 1) * du
        with np.errstate(divide="ignore", invalid="ignore"):
            g = np.where(r2 > 0.0, np.log(r2) + 1.0, 0.0)
        gu = g * du
        gv = g * dv
        return (
            A[1, 0] + gu @ W[:, 0],
            A[2, 0] + gv @ W[:, 0],
            A[1, 1] + gu @ W[:, 1],
            A[2, 1] + gv @ W[:, 1],
        )


# -------------------------
# Projective
# -------------------------
class ProjectiveFitter(Fitter):
    kind = TransformKind.PROJECTIVE
    analytic_inverse = True

    def min_points(self, **options: Any) -> int:
        return 4

    def fit(self, u, v, a, b, **options) -> Params:
        n = len(u)
        if n == 4:
            for pts, what in (((u, v), "pixel"), ((a, b), "geographic")):
                x, y = pts
                for skip in range(4):
                    idx = [i for i in range(4) if i != skip]
                    M = np.column_stack([x[idx], y[idx], np.ones(3)])
                    if abs(np.linalg.det(M)) <= 1e-9:
                        raise DegenerateGeometry(f"three of four {what} points are collinear")
        zeros = np.zeros(n)
        ones = np.ones(n)
        rows_a = np.column_stack([-u, -v, -ones, zeros, zeros, zeros, a * u, a * v, a])
        rows_b = np.column_stack([zeros, zeros, zeros, -u, -v, -ones, b * u, b * v, b])
        A = np.vstack([rows_a, rows_b])
        _U, s, Vt = np.linalg.svd(A)
        if len(s) < 8 or s[7] <= _RANK_TOL * s[0]:
            raise DegenerateGeometry("projective: point configuration does not determine the homography")
        H = Vt[-1].reshape(3, 3)
        if abs(H[2, 2]) <= 1e-12:
            raise DegenerateGeometry("homography has h22 = 0")
        H = H / H[2, 2]
        w = H[2, 0] * u + H[2, 1] * v + 1.0
        if np.any(np.abs(w) <= 1e-12) or not (np.all(w > 0) or np.all(w < 0)):
            raise DegenerateGeometry("control points straddle the homography horizon")
        if abs(np.linalg.det(H)) <= 1e-12:
            raise DegenerateGeometry("homography is singular")
        return {"matrix": H.tolist()}

    def forward(self, params, u, v):
        H = np.asarray(params["matrix"], dtype=float)
        u = np.asarray(u, dtype=float)
        v = np.asarray(v, dtype=float)
        w = H[2, 0] * u + H[2, 1] * v + H[2, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            a = (H[0, 0] * u + H[0, 1] * v + H[0, 2]) / w
            b = (H[1, 0] * u + H[1, 1] * v + H[1, 2]) / w
        return a, b

    def denominator(self, params, u, v) -> Arr:
        H = np.asarray(params["matrix"], dtype=float)
        return H[2, 0] * np.asarray(u, dtype=float) + H[2, 1] * np.asarray(v, dtype=float) + H[2, 2]

    def jacobian(self, params, u, v):
        H = np.asarray(params["matrix"], dtype=float)
        a, b = self.forward(params, u, v)
        w = self.denominator(params, u, v)
        return (
            (H[0, 0] - a * H[2, 0]) / w,
            (H[0, 1] - a * H[2, 1]) / w,
            (H[1, 0] - b * H[2, 0]) / w,
            (H[1, 1] - b * H[2, 1]) / w,
        )

    def inverse(self, params, a, b):
        Hi = np.linalg.inv(np.asarray(params["matrix"], dtype=float))
        a = np.asarray(a, dtype=float)
        b = np.asarray(b, dtype=float)
        w = Hi[2, 0] * a + Hi[2, 1] * b + Hi[2, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            u = (Hi[0, 0] * a + Hi[0, 1] * b + Hi[0, 2]) / w
            v = (Hi[1, 0] * a + Hi[1, 1] * b + Hi[1, 2]) / w
        return u, v


FITTERS: Dict[TransformKind, Fitter] = {
    f.kind: f
    for f in (AffineFitter(), PolynomialFitter(), ThinPlateSplineFitter(), ProjectiveFitter())
}
