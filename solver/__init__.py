"""
Transformation Solver

Fits a pixel → WGS84 mapping from control points:
- affine (6 params), polynomial (order n), thin plate spline, projective (homography)
- RMSE and per-point residuals in meters (equirectangular at the centroid latitude)
- bounds of the projected page box, and vectorized forward/inverse evaluation
"""
from .kinds import FITTERS
from .solve import Transform, build_transform, check_geometry, compute_bounds, flag_outliers, solve

__all__ = [
    "FITTERS",
    "Transform",
    "build_transform",
    "check_geometry",
    "compute_bounds",
    "flag_outliers",
    "solve",
]
