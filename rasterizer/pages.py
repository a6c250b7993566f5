from __future__ import annotations

"""
Source page access.

Readers return a decoded SourcePage (BGRA uint8). PNG/JPEG go through OpenCV;
TIFF scans go through rasterio so multi-band and 16-bit pages are handled.
Anything missing or undecodable raises SourceUnavailable.
"""

from pathlib import Path
from typing import Protocol

import cv2
import numpy as np
import rasterio
from rasterio.errors import RasterioError
from rasterio.io import MemoryFile

from common.errors import BlobNotFound, SourceUnavailable
from common.logging_setup import get_logger
from common.types import SourcePage


log = get_logger(__name__)

_TIFF_MAGIC = (b"II*\x00", b"MM\x00*")


class PageReader(Protocol):
    def read_page(self, source_ref: str) -> SourcePage:
        ...


def _to_uint8(img: np.ndarray) -> np.ndarray:
    if img.dtype == np.uint8:
        return img
    img = img.astype(np.float32)
    lo, hi = float(np.min(img)), float(np.max(img))
    if hi <= lo:
        return np.zeros(img.shape, dtype=np.uint8)
    return np.clip((img - lo) / (hi - lo) * 255.0, 0, 255).astype(np.uint8)


def _to_bgra(img: np.ndarray) -> np.ndarray:
    img = _to_uint8(img)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    if img.shape[2] == 1:
        return cv2.cvtColor(img[..., 0], cv2.COLOR_GRAY2BGRA)
    if img.shape[2] == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    if img.shape[2] == 4:
        return np.ascontiguousarray(img)
    raise SourceUnavailable(f"unsupported channel count: {img.shape[2]}")


def _decode_tiff(data: bytes, source_ref: str) -> np.ndarray:
    try:
        with MemoryFile(data) as mem, mem.open() as ds:
            bands = ds.read()  # (bands, rows, cols)
    except RasterioError as e:
        raise SourceUnavailable(f"cannot decode TIFF page {source_ref}: {e}") from e
    if bands.shape[0] >= 4:
        rgba = np.stack([bands[2], bands[1], bands[0], bands[3]], axis=-1)  # → BGRA
        return rgba
    if bands.shape[0] == 3:
        return np.stack([bands[2], bands[1], bands[0]], axis=-1)
    return bands[0]


def decode_page(data: bytes, source_ref: str) -> SourcePage:
    """Decode raster bytes into a BGRA SourcePage."""
    if not data:
        raise SourceUnavailable(f"empty page: {source_ref}")
    if data[:4] in _TIFF_MAGIC:
        img = _decode_tiff(data, source_ref)
    else:
        img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        if img is None:
            raise SourceUnavailable(f"cannot decode page: {source_ref}")
    bgra = _to_bgra(img)
    h, w = bgra.shape[:2]
    if w == 0 or h == 0:
        raise SourceUnavailable(f"page has no pixels: {source_ref}")
    return SourcePage(source_ref=source_ref, width=int(w), height=int(h), raster=bgra)


class FileSystemPageReader:
    """Reads pages from `root / source_ref`."""

    def __init__(self, root: str = "."):
        self.root = Path(root)

    def read_page(self, source_ref: str) -> SourcePage:
        path = self.root / source_ref
        try:
            data = path.read_bytes()
        except OSError as e:
            raise SourceUnavailable(f"cannot read page {path}: {e}") from e
        page = decode_page(data, source_ref)
        log.info("page loaded", extra={"extra": {"source_ref": source_ref, "width": page.width, "height": page.height}})
        return page


class BlobPageReader:
    """Reads pages through the injected object storage (`get_blob`)."""

    def __init__(self, storage):
        self.storage = storage

    def read_page(self, source_ref: str) -> SourcePage:
        try:
            data = self.storage.get_blob(source_ref)
        except BlobNotFound as e:
            raise SourceUnavailable(f"page not found: {source_ref}") from e
        return decode_page(data, source_ref)


def write_page_tiff(path: str, bgra: np.ndarray) -> None:
    """Write a BGRA page as an RGBA GeoTIFF-less TIFF (test and CLI helper)."""
    rgba = np.stack([bgra[..., 2], bgra[..., 1], bgra[..., 0], bgra[..., 3]], axis=0)
    profile = {
        "driver": "GTiff",
        "height": int(bgra.shape[0]),
        "width": int(bgra.shape[1]),
        "count": 4,
        "dtype": rasterio.uint8,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(rgba)
