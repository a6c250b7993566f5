#!/usr/bin/env python3
"""
Georeference one scanned page and write its tile pyramid to disk.

Reads a page (PNG/JPEG/TIFF) and a control point file, solves the transform,
and renders tiles into filesystem storage:

    {out}/overlays/{overlay}/v{version}/{z}/{x}/{y}.png  (+ .json sidecar)

Control points are CSV with a header (pixel_x,pixel_y,lon,lat and optionally
accuracy_m,confidence,source,notes) or a JSON list of objects/4-lists.

Examples:
  python scripts/build_overlay_tiles.py --page scans/plan.png --points plan_gcps.csv --zoom 10 11 12
  python scripts/build_overlay_tiles.py --page scans/plan.tif --points plan.json --kind tps --out data/tiles
"""
from __future__ import annotations

import argparse
import csv
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from common.config import load_config
from common.errors import InvalidInput, OverlayEngineError
from common.logging_setup import setup_logging
from common.types import ControlPoint
from orchestrator import Orchestrator
from rasterizer import FileSystemPageReader
from tile_store import FileSystemObjectStorage


def _opt_float(v: Any):
    if v is None or str(v).strip() == "":
        return None
    return float(v)


def _point_from_mapping(row: Dict[str, Any]) -> ControlPoint:
    return ControlPoint(
        pixel_x=float(row["pixel_x"]),
        pixel_y=float(row["pixel_y"]),
        lon=float(row["lon"]),
        lat=float(row["lat"]),
        accuracy_m=_opt_float(row.get("accuracy_m")),
        confidence=_opt_float(row.get("confidence")),
        source=(row.get("source") or "imported"),
        notes=(row.get("notes") or None),
    )


def _read_points(p: Path) -> List[ControlPoint]:
    if p.suffix.lower() == ".json":
        data = json.loads(p.read_text())
        out = []
        for item in data:
            if isinstance(item, dict):
                out.append(_point_from_mapping(item))
            else:
                out.append(ControlPoint.from_tuple(item))
        return out
    with p.open(newline="", encoding="utf-8") as f:
        return [_point_from_mapping(row) for row in csv.DictReader(f)]


def load_points(path: str) -> List[ControlPoint]:
    """Control points from CSV or JSON; any malformed file raises InvalidInput."""
    try:
        return _read_points(Path(path))
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise InvalidInput(f"cannot read control points from {path}: {e!r}", path=path) from e


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--page", required=True, help="Scanned page (PNG/JPEG/TIFF)")
    ap.add_argument("--points", required=True, help="Control points CSV or JSON")
    ap.add_argument("--overlay", default="", help="Overlay id (default: page file stem)")
    ap.add_argument("--kind", default="", help="affine | polynomial | thin_plate_spline (tps) | projective")
    ap.add_argument("--order", type=int, default=None, help="Polynomial order")
    ap.add_argument("--zoom", nargs="+", type=int, default=None, help="Zoom levels to render")
    ap.add_argument("--out", default="", help="Tile storage root (default: storage.root from config)")
    ap.add_argument("--config", default=None, help="YAML config (default: config/params.yaml)")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg["logging"].get("level"), cfg["logging"].get("log_file"), stream=sys.stderr)

    page = Path(args.page)
    overlay_id = args.overlay or page.stem
    storage = FileSystemObjectStorage(args.out or cfg["storage"]["root"])
    reader = FileSystemPageReader(str(page.parent))

    with Orchestrator(cfg, storage=storage, page_reader=reader) as orch:
        try:
            src = reader.read_page(page.name)
            orch.register_overlay(
                overlay_id, page.name, src.width, src.height,
                kind=args.kind or None, zoom_levels=args.zoom, order=args.order,
            )
            job = orch.commit_control_points(overlay_id, load_points(args.points))
        except OverlayEngineError as e:
            print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
            return 2
        orch.run(job.id)
        status = orch.get_status(overlay_id)
        model = orch.transforms.active(overlay_id)
        report = {
            "status": status,
            "rmse_m": model.rmse if model else None,
            "bounds": model.bounds.to_dict() if model else None,
            "tiles": len(orch.tiles.list_tiles(overlay_id, model.version)) if model else 0,
        }
    print(json.dumps(report, indent=2, default=str))
    return 0 if status["stage"] == "READY" else 1


if __name__ == "__main__":
    sys.exit(main())
