"""
Integration test for the offline tile build script
"""

import importlib.util
import json
import os
import sys

import cv2
import pytest

from tests.conftest import CITY_H, CITY_W, city_lonlat, make_page

project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def script(monkeypatch):
    path = os.path.join(project_root, "scripts", "build_overlay_tiles.py")
    spec = importlib.util.spec_from_file_location("build_overlay_tiles", path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    monkeypatch.setattr(mod, "setup_logging", lambda *a, **k: None)
    return mod


@pytest.fixture
def workspace(tmp_path):
    page = make_page(CITY_W, CITY_H, seed=3)
    cv2.imwrite(str(tmp_path / "plan.png"), page.raster)
    rows = ["pixel_x,pixel_y,lon,lat,accuracy_m,confidence,source,notes"]
    for px, py in [(10, 10), (390, 20), (380, 290), (20, 280)]:
        lon, lat = city_lonlat(px, py)
        rows.append(f"{px},{py},{lon},{lat},1.5,0.9,manual,")
    (tmp_path / "plan.csv").write_text("\n".join(rows) + "\n")
    (tmp_path / "params.yaml").write_text(
        "rasterizer:\n  workers: 2\nlogging:\n  log_file: null\n"
    )
    return tmp_path


class TestBuildOverlayTiles:
    def test_writes_tiles_and_reports(self, script, workspace, monkeypatch, capsys):
        out = workspace / "tiles"
        monkeypatch.setattr(sys, "argv", [
            "build_overlay_tiles.py",
            "--page", str(workspace / "plan.png"),
            "--points", str(workspace / "plan.csv"),
            "--zoom", "0", "1",
            "--out", str(out),
            "--config", str(workspace / "params.yaml"),
        ])
        assert script.main() == 0
        report = json.loads(capsys.readouterr().out)
        assert report["status"]["stage"] == "READY"
        assert report["rmse_m"] < 1.0
        assert report["tiles"] == 2
        assert (out / "overlays" / "plan" / "v1" / "0" / "0" / "0.png").exists()
        assert (out / "overlays" / "plan" / "v1" / "0" / "0" / "0.json").exists()

    def test_degenerate_points_exit_code(self, script, workspace, monkeypatch, capsys):
        (workspace / "bad.json").write_text(json.dumps([[0, 0, 13.0, 52.0], [10, 10, 13.1, 52.1], [20, 20, 13.2, 52.2]]))
        monkeypatch.setattr(sys, "argv", [
            "build_overlay_tiles.py",
            "--page", str(workspace / "plan.png"),
            "--points", str(workspace / "bad.json"),
            "--out", str(workspace / "tiles"),
            "--config", str(workspace / "params.yaml"),
        ])
        assert script.main() == 2
        err = json.loads(capsys.readouterr().err)
        assert err["error"]["kind"] == "DegenerateGeometry"

    @pytest.mark.parametrize("name,content", [
        ("no_lat.csv", "pixel_x,pixel_y,lon\n10,10,13.4\n"),
        ("words.json", json.dumps([{"pixel_x": "left", "pixel_y": 0, "lon": 13.4, "lat": 52.5}])),
        ("broken.json", "[[0, 0, 13.4"),
    ])
    def test_malformed_points_file_exit_code(self, script, workspace, monkeypatch, capsys, name, content):
        (workspace / name).write_text(content)
        monkeypatch.setattr(sys, "argv", [
            "build_overlay_tiles.py",
            "--page", str(workspace / "plan.png"),
            "--points", str(workspace / name),
            "--out", str(workspace / "tiles"),
            "--config", str(workspace / "params.yaml"),
        ])
        assert script.main() == 2
        err = json.loads(capsys.readouterr().err)
        assert err["error"]["kind"] == "InvalidInput"
        assert name in err["error"]["message"]
