from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from common.errors import InvalidInput
from common.logging_setup import get_logger
from common.types import ControlPoint, PointId
from common.utils import new_id


log = get_logger(__name__)


@dataclass(frozen=True)
class StoredPoint:
    point_id: PointId
    overlay_id: str
    point: ControlPoint


class ControlPointStore:
    """
    In-memory control point staging area, one ordered list per overlay.

    Points are validated against the page pixel bounds recorded with
    `register_page`. The store never triggers a solve; callers stage edits and
    commit explicitly.
    """

    def __init__(self) -> None:
        self._pages: Dict[str, Tuple[int, int]] = {}
        self._points: Dict[str, List[StoredPoint]] = {}
        self._owner: Dict[PointId, str] = {}
        self._lock = threading.Lock()

    # -------- public API --------

    def register_page(self, overlay_id: str, width: int, height: int) -> None:
        if int(width) <= 0 or int(height) <= 0:
            raise InvalidInput("page dimensions must be positive", width=width, height=height)
        with self._lock:
            self._pages[overlay_id] = (int(width), int(height))
            self._points.setdefault(overlay_id, [])

    def page_size(self, overlay_id: str) -> Tuple[int, int]:
        size = self._pages.get(overlay_id)
        if size is None:
            raise InvalidInput(f"unknown overlay: {overlay_id}")
        return size

    def add(self, overlay_id: str, point: ControlPoint) -> PointId:
        self.validate(overlay_id, point)
        pid = new_id("cp_")
        with self._lock:
            self._points[overlay_id].append(StoredPoint(pid, overlay_id, point))
            self._owner[pid] = overlay_id
        log.debug("control point added", extra={"extra": {"overlay_id": overlay_id, "point_id": pid}})
        return pid

    def list(self, overlay_id: str) -> List[ControlPoint]:
        self.page_size(overlay_id)
        with self._lock:
            return [sp.point for sp in self._points.get(overlay_id, [])]

    def remove(self, point_id: PointId) -> None:
        with self._lock:
            overlay_id = self._owner.pop(point_id, None)
            if overlay_id is None:
                raise InvalidInput(f"unknown control point: {point_id}")
            self._points[overlay_id] = [sp for sp in self._points[overlay_id] if sp.point_id != point_id]

    def replace(self, overlay_id: str, points: Iterable[ControlPoint]) -> List[PointId]:
        """Validate every point first, then swap the overlay's set in one step."""
        pts = list(points)
        for p in pts:
            self.validate(overlay_id, p)
        stored = [StoredPoint(new_id("cp_"), overlay_id, p) for p in pts]
        with self._lock:
            for sp in self._points.get(overlay_id, []):
                self._owner.pop(sp.point_id, None)
            self._points[overlay_id] = stored
            for sp in stored:
                self._owner[sp.point_id] = overlay_id
        return [sp.point_id for sp in stored]

    def validate(self, overlay_id: str, point: ControlPoint) -> None:
        """Raise InvalidInput if the point lies outside the page pixel bounds."""
        if not isinstance(point, ControlPoint):
            raise InvalidInput("expected a ControlPoint", got=type(point).__name__)
        w, h = self.page_size(overlay_id)
        if not (0.0 <= point.pixel_x <= w and 0.0 <= point.pixel_y <= h):
            raise InvalidInput(
                "pixel coordinate outside page bounds",
                pixel_x=point.pixel_x,
                pixel_y=point.pixel_y,
                width=w,
                height=h,
            )


def coerce_points(points: Iterable) -> List[ControlPoint]:
    """Accept ControlPoint instances or plain (pixel_x, pixel_y, lon, lat) tuples."""
    out: List[ControlPoint] = []
    for p in points:
        if isinstance(p, ControlPoint):
            out.append(p)
        elif isinstance(p, (tuple, list)):
            out.append(ControlPoint.from_tuple(p))
        else:
            raise InvalidInput("control point must be a ControlPoint or a 4-tuple", got=type(p).__name__)
    return out
