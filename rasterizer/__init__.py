"""
Rasterizer

Resamples a source page through a fitted transform into 256x256 Web Mercator
PNG tiles, one zoom level at a time, on a thread pool.
"""
from .pages import BlobPageReader, FileSystemPageReader, PageReader, decode_page
from .render import LevelResult, PagePyramid, generate_tiles, render_level, render_tile
from .tiling import TileCursor, tile_range, tiles_for_bounds, validate_zoom_levels

__all__ = [
    "BlobPageReader",
    "FileSystemPageReader",
    "LevelResult",
    "PagePyramid",
    "PageReader",
    "TileCursor",
    "decode_page",
    "generate_tiles",
    "render_level",
    "render_tile",
    "tile_range",
    "tiles_for_bounds",
    "validate_zoom_levels",
]
