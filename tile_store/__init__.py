"""
Tile Cache/Store

Versioned tile persistence over an injected object storage, with
invalidation of superseded transform versions and garbage collection.
"""
from .storage import (
    FileSystemObjectStorage,
    InMemoryObjectStorage,
    ObjectStorage,
    check_overlay_id,
    make_storage,
    owner_key,
    tile_key,
)
from .store import TileRef, TileStore

__all__ = [
    "FileSystemObjectStorage",
    "InMemoryObjectStorage",
    "ObjectStorage",
    "TileRef",
    "TileStore",
    "check_overlay_id",
    "make_storage",
    "owner_key",
    "tile_key",
]
