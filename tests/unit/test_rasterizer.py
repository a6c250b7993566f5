"""
Unit tests for tiling, tile rendering and page readers
"""

import io
import types
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np
import pytest
from PIL import Image

import rasterizer.render as render_mod
from common.errors import InvalidInput, JobCancelled, JobTimeout, LevelFailed, SourceUnavailable
from common.geo import MERCATOR_MAX_LAT, lat_to_tile_y, lon_to_tile_x, tile_bounds
from common.types import Bounds, SourcePage
from common.utils import CancelToken, Deadline
from rasterizer import (
    BlobPageReader,
    FileSystemPageReader,
    PagePyramid,
    TileCursor,
    decode_page,
    generate_tiles,
    render_level,
    render_tile,
    tiles_for_bounds,
    validate_zoom_levels,
)
from rasterizer.pages import write_page_tiff
from solver import build_transform, solve
from tile_store import InMemoryObjectStorage
from tests.conftest import CITY_H, CITY_W, WORLD_H, WORLD_W, city_lonlat, points_from


def decode_png(payload):
    return Image.open(io.BytesIO(payload))


def split_page():
    """Left half blue, right half red (BGRA)."""
    img = np.zeros((WORLD_H, WORLD_W, 4), dtype=np.uint8)
    img[:, : WORLD_W // 2] = (255, 0, 0, 255)
    img[:, WORLD_W // 2:] = (0, 0, 255, 255)
    return SourcePage(source_ref="split.png", width=WORLD_W, height=WORLD_H, raster=img)


@pytest.fixture
def world_model(world_points):
    model, _ = solve(world_points, "affine", source_size=(WORLD_W, WORLD_H), overlay_id="world", version=1)
    return model


@pytest.fixture
def pool():
    with ThreadPoolExecutor(max_workers=2) as ex:
        yield ex


class TestTileCoverage:
    """Tile index ranges for a bounding box"""

    def brute_force(self, bounds, z):
        n = 1 << z
        return {(x, y) for x in range(n) for y in range(n) if bounds.intersects(tile_bounds(z, x, y))}

    def test_world_bounds_cover_every_tile(self, world_model):
        tiles = tiles_for_bounds(world_model.bounds, 3)
        assert len(tiles) == 64
        assert set(tiles) == {(x, y) for x in range(8) for y in range(8)}

    @pytest.mark.parametrize("z", [0, 1, 2, 3, 4, 5, 6])
    def test_matches_brute_force(self, city_points, z):
        model, _ = solve(city_points, "affine", source_size=(CITY_W, CITY_H))
        tiles = tiles_for_bounds(model.bounds, z)
        assert len(tiles) == len(set(tiles))
        assert set(tiles) == self.brute_force(model.bounds, z)

    def test_touching_edges_are_excluded(self):
        bounds = Bounds(north=MERCATOR_MAX_LAT, south=0.0, east=90.0, west=0.0)
        assert set(tiles_for_bounds(bounds, 2)) == {(2, 0), (2, 1)}

    def test_row_major_order(self):
        bounds = Bounds(north=MERCATOR_MAX_LAT, south=-MERCATOR_MAX_LAT, east=180.0, west=-180.0)
        assert tiles_for_bounds(bounds, 1) == [(0, 0), (1, 0), (0, 1), (1, 1)]

    @pytest.mark.parametrize("levels", [[-1], [23], []])
    def test_invalid_zoom_levels(self, levels):
        with pytest.raises(InvalidInput):
            validate_zoom_levels(levels)

    def test_zoom_levels_sorted_and_unique(self):
        assert validate_zoom_levels([3, 1, 3, 0]) == [0, 1, 3]


class TestTileCursor:
    def test_resume_skips_completed_levels(self, world_model):
        cursor = TileCursor(world_model.bounds, [0, 1, 2]).resume_from(0)
        assert cursor.pending_levels() == [1, 2]
        first = next(iter(cursor))
        assert first[0] == 1
        assert cursor.remaining() == 4 + 16
        assert cursor.total() == 1 + 4 + 16

    def test_mark_level_done_advances(self, world_model):
        cursor = TileCursor(world_model.bounds, [0, 1, 2])
        cursor.mark_level_done(0)
        cursor.mark_level_done(1)
        assert cursor.completed_zoom == 1
        assert [t for t in cursor] == [(2, x, y) for x, y in tiles_for_bounds(world_model.bounds, 2)]


class TestRenderTile:
    def test_png_rgba_256(self, world_model, world_page):
        payload = render_tile(build_transform(world_model), PagePyramid(world_page), 0, 0, 0)
        img = decode_png(payload)
        assert img.size == (256, 256)
        assert img.mode == "RGBA"

    def test_deterministic_payload(self, world_model, world_page):
        t = build_transform(world_model)
        pyr = PagePyramid(world_page)
        assert render_tile(t, pyr, 2, 1, 1) == render_tile(t, pyr, 2, 1, 1)

    def test_samples_the_right_part_of_the_page(self, world_model):
        t = build_transform(world_model)
        pyr = PagePyramid(split_page())
        west = np.asarray(decode_png(render_tile(t, pyr, 1, 0, 0)))
        east = np.asarray(decode_png(render_tile(t, pyr, 1, 1, 0)))
        assert tuple(west[128, 128]) == (0, 0, 255, 255)
        assert tuple(east[128, 128]) == (255, 0, 0, 255)

    def test_outside_page_is_transparent(self, city_points, city_page):
        model, _ = solve(city_points, "affine", source_size=(CITY_W, CITY_H))
        (x, y), = tiles_for_bounds(model.bounds, 8)
        rgba = np.asarray(decode_png(render_tile(build_transform(model), PagePyramid(city_page), 8, x, y)))
        assert (rgba[..., 3] == 0).any()
        assert (rgba[..., 3] == 255).any()

    def test_page_edge_has_no_halo_at_high_zoom(self, city_page):
        corners = points_from(city_lonlat, [(0, 0), (CITY_W, 0), (CITY_W, CITY_H), (0, CITY_H)])
        model, _ = solve(corners, "affine", source_size=(CITY_W, CITY_H))
        t = build_transform(model)
        lon, lat = city_lonlat(0, CITY_H / 2)
        z = 19
        x, y = int(lon_to_tile_x(lon, z)), int(lat_to_tile_y(lat, z))
        alpha = np.asarray(decode_png(render_tile(t, PagePyramid(city_page), z, x, y)))[..., 3]
        px, py = render_mod.tile_page_coords(t, z, x, y)
        outside = (px < 0) | (px > CITY_W) | (py < 0) | (py > CITY_H)
        assert outside.any() and (~outside).any()
        assert (alpha[outside] == 0).all()
        assert (alpha[~outside] == 255).all()


class TestRenderLevel:
    def test_renders_every_tile(self, world_model, world_page, pool):
        result = render_level(world_model, world_page, 2, pool)
        assert result.total == 16
        assert result.rendered == 16
        assert result.failures == []
        assert [(t.x, t.y) for t in result.tiles] == tiles_for_bounds(world_model.bounds, 2)
        assert all(t.transform_version == 1 for t in result.tiles)

    def test_sink_receives_tiles(self, world_model, world_page, pool):
        seen = []
        result = render_level(world_model, world_page, 1, pool, sink=seen.append)
        assert result.tiles == []
        assert sorted((t.x, t.y) for t in seen) == sorted(tiles_for_bounds(world_model.bounds, 1))

    def test_single_failure_under_threshold(self, world_model, world_page, pool, monkeypatch):
        original = render_mod.render_tile

        def flaky(transform, pyramid, z, x, y, tile_size=256):
            if (z, x, y) == (3, 5, 4):
                raise RuntimeError("resample blew up")
            return original(transform, pyramid, z, x, y, tile_size)

        monkeypatch.setattr(render_mod, "render_tile", flaky)
        result = render_level(world_model, world_page, 3, pool)
        assert result.total == 64
        assert result.rendered == 63
        assert len(result.failures) == 1
        f = result.failures[0]
        assert (f.z, f.x, f.y) == (3, 5, 4)
        assert f.kind == "RuntimeError"
        assert "blew up" in f.error

    def test_failures_over_threshold_raise(self, world_model, world_page, pool, monkeypatch):
        bad = {(3, 0, 0), (3, 1, 0), (3, 2, 0), (3, 3, 0)}

        def flaky(transform, pyramid, z, x, y, tile_size=256):
            if (z, x, y) in bad:
                raise RuntimeError("nope")
            return b"png"

        monkeypatch.setattr(render_mod, "render_tile", flaky)
        with pytest.raises(LevelFailed) as exc:
            render_level(world_model, world_page, 3, pool)
        assert exc.value.failed == 4
        assert exc.value.total == 64
        assert exc.value.zoom == 3
        assert len(exc.value.failures) == 4
        assert exc.value.retryable

    def test_cancelled_before_first_tile(self, world_model, world_page, pool):
        token = CancelToken()
        token.cancel()
        with pytest.raises(JobCancelled):
            render_level(world_model, world_page, 2, pool, cancel=token)

    def test_deadline_expired(self, world_model, world_page, pool):
        with pytest.raises(JobTimeout):
            render_level(world_model, world_page, 2, pool, deadline=Deadline(-1.0))


class TestGenerateTiles:
    def test_lazy_and_resumable(self, world_model, world_page):
        gen = generate_tiles(world_model, world_page, [0, 1, 2], resume_after=1)
        assert isinstance(gen, types.GeneratorType)
        tiles = list(gen)
        assert {t.z for t in tiles} == {2}
        assert len(tiles) == 16

    def test_low_zoom_first(self, world_model, world_page):
        zooms = [t.z for t in generate_tiles(world_model, world_page, [1, 0])]
        assert zooms == sorted(zooms)
        assert zooms[0] == 0


class TestPageReaders:
    def test_decode_png_to_bgra(self):
        bgr = np.full((20, 30, 3), 200, dtype=np.uint8)
        ok, buf = cv2.imencode(".png", bgr)
        assert ok
        page = decode_page(buf.tobytes(), "x.png")
        assert (page.width, page.height) == (30, 20)
        assert page.raster.shape == (20, 30, 4)
        assert (page.raster[..., 3] == 255).all()

    def test_garbage_is_unavailable(self):
        with pytest.raises(SourceUnavailable):
            decode_page(b"definitely not an image", "junk.bin")
        with pytest.raises(SourceUnavailable):
            decode_page(b"", "empty.png")

    def test_tiff_page_round_trip(self, tmp_path, city_page):
        write_page_tiff(str(tmp_path / "scan.tif"), city_page.raster)
        page = FileSystemPageReader(str(tmp_path)).read_page("scan.tif")
        assert (page.width, page.height) == (CITY_W, CITY_H)
        assert np.array_equal(page.raster, city_page.raster)

    def test_missing_file(self, tmp_path):
        with pytest.raises(SourceUnavailable):
            FileSystemPageReader(str(tmp_path)).read_page("nope.png")

    def test_blob_reader(self):
        storage = InMemoryObjectStorage()
        ok, buf = cv2.imencode(".png", np.zeros((8, 8, 4), dtype=np.uint8))
        storage.put_blob("pages/a.png", buf.tobytes())
        reader = BlobPageReader(storage)
        assert reader.read_page("pages/a.png").width == 8
        with pytest.raises(SourceUnavailable):
            reader.read_page("pages/missing.png")
