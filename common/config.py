from __future__ import annotations

"""
YAML configuration.

Defaults live here; `config/params.yaml` (or the file named by OVERLAY_CONFIG,
or an explicit path) is deep-merged on top. A missing file is not an error.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from common.errors import InvalidInput


ENV_CONFIG = "OVERLAY_CONFIG"
DEFAULT_PATH = "config/params.yaml"

DEFAULTS: Dict[str, Any] = {
    "solver": {
        "default_kind": "affine",
        "polynomial_order": 2,
        "tps_max_points": 20,
        "tps_smoothing": 0.0,
        "outlier_factor": 3.0,
    },
    "rasterizer": {
        "tile_size": 256,
        "workers": 4,
        "max_failed_ratio": 0.05,
        "zoom_levels": [0, 1, 2, 3, 4, 5, 6],
        "pyramid": True,
    },
    "jobs": {
        "max_attempts": 3,
        "backoff_base_s": 0.5,
        "backoff_max_s": 8.0,
        "job_timeout_s": 600.0,
        "default_priority": 5,
    },
    "storage": {
        "backend": "memory",
        "root": "data/tiles",
        "keep_versions": 2,
    },
    "logging": {
        "level": "INFO",
        "log_file": None,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidInput(f"config root must be a mapping: {path}")
    return data


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Resolve config path precedence:
      - explicit `path` arg
      - env OVERLAY_CONFIG
      - config/params.yaml
    Returns a fresh dict each call.
    """
    cfg = copy.deepcopy(DEFAULTS)
    candidate = path or os.environ.get(ENV_CONFIG) or DEFAULT_PATH
    p = Path(candidate)
    if p.exists():
        cfg = _deep_merge(cfg, _load_yaml(p))
    elif path is not None:
        raise InvalidInput(f"config file not found: {path}")
    return cfg
