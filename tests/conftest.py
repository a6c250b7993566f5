"""
Shared fixtures: synthetic pages, control point sets and an engine config
that never sleeps.
"""

import copy
import os
import sys

import numpy as np
import pytest

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from common.config import DEFAULTS
from common.errors import SourceUnavailable
from common.geo import MERCATOR_MAX_LAT
from common.types import ControlPoint, SourcePage


WORLD_W, WORLD_H = 512, 256
CITY_W, CITY_H = 400, 300
CITY_LON0, CITY_LAT0 = 13.40, 52.52
CITY_DLON, CITY_DLAT = 0.02, -0.012  # per full page width/height


def make_page(width, height, seed=7, source_ref="page.png"):
    """Opaque BGRA page with a coarse checkerboard plus noise."""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 255, size=(height, width, 4), dtype=np.uint8)
    yy, xx = np.mgrid[0:height, 0:width]
    checker = (((xx // 32) + (yy // 32)) % 2).astype(np.uint8) * 120
    img[..., 0] = np.clip(img[..., 0] // 2 + checker, 0, 255)
    img[..., 3] = 255
    return SourcePage(source_ref=source_ref, width=width, height=height, raster=img)


def world_lonlat(px, py):
    return -180.0 + 360.0 * px / WORLD_W, MERCATOR_MAX_LAT - 2 * MERCATOR_MAX_LAT * py / WORLD_H


def city_lonlat(px, py):
    return CITY_LON0 + CITY_DLON * px / CITY_W, CITY_LAT0 + CITY_DLAT * py / CITY_H


def points_from(fn, pixels):
    out = []
    for px, py in pixels:
        lon, lat = fn(px, py)
        out.append(ControlPoint(float(px), float(py), float(lon), float(lat)))
    return out


class StaticPageReader:
    """In-memory page reader; unknown refs raise SourceUnavailable."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.reads = 0

    def read_page(self, source_ref):
        self.reads += 1
        try:
            return self.pages[source_ref]
        except KeyError:
            raise SourceUnavailable(f"no page {source_ref}") from None


@pytest.fixture
def world_page():
    return make_page(WORLD_W, WORLD_H, source_ref="world.png")


@pytest.fixture
def world_points():
    return points_from(world_lonlat, [(0, 0), (WORLD_W, 0), (WORLD_W, WORLD_H), (0, WORLD_H)])


@pytest.fixture
def city_page():
    return make_page(CITY_W, CITY_H, seed=11, source_ref="city.png")


@pytest.fixture
def city_points():
    return points_from(city_lonlat, [(10, 10), (390, 20), (380, 290), (20, 280), (200, 150)])


@pytest.fixture
def engine_cfg():
    cfg = copy.deepcopy(DEFAULTS)
    cfg["rasterizer"]["workers"] = 2
    cfg["rasterizer"]["zoom_levels"] = [0, 1, 2]
    cfg["jobs"]["backoff_base_s"] = 0.0
    cfg["jobs"]["backoff_max_s"] = 0.0
    cfg["logging"]["log_file"] = None
    return cfg
