from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from common.errors import BlobNotFound, TileNotFound
from common.geo import tile_bounds
from common.logging_setup import get_logger
from common.types import Tile
from tile_store.storage import (
    ObjectStorage,
    OVERLAY_PREFIX,
    marker_key,
    parse_marker_key,
    parse_tile_key,
    tile_key,
)


log = get_logger(__name__)

TileKey = Tuple[str, int, int, int, int]


@dataclass(frozen=True, slots=True)
class TileRef:
    """Index entry for one persisted tile."""
    overlay_id: str
    version: int
    z: int
    x: int
    y: int
    fmt: str
    etag: str
    size: int
    created_at: str

    @property
    def payload_key(self) -> str:
        return tile_key(self.overlay_id, self.version, self.z, self.x, self.y, self.fmt)

    @property
    def meta_key(self) -> str:
        return tile_key(self.overlay_id, self.version, self.z, self.x, self.y, "json")


def _sidecar(tile: Tile) -> bytes:
    b = tile_bounds(tile.z, tile.x, tile.y)
    meta = tile.to_meta()
    meta["bbox"] = [b.west, b.south, b.east, b.north]
    return json.dumps(meta, sort_keys=True).encode("utf-8")


class TileStore:
    """
    Tiles keyed by (overlay_id, transform_version, z, x, y) over an object storage.

    The in-memory index maps keys to TileRef; it is rebuilt from the sidecar
    JSON files on construction, so a filesystem-backed store survives restarts.
    Only index mutations take the lock. Blob writes for the same key race and
    the last writer wins, which is harmless because rendering is deterministic.

    Invalidated versions stay readable until collect_garbage() deletes them.
    """

    def __init__(self, storage: ObjectStorage):
        self.storage = storage
        self._index: Dict[TileKey, TileRef] = {}
        self._reclaimable: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()
        self._scan()

    # -------- public API --------

    def put(self, tile: Tile) -> TileRef:
        ref = TileRef(
            overlay_id=tile.overlay_id,
            version=tile.transform_version,
            z=tile.z, x=tile.x, y=tile.y,
            fmt=tile.format,
            etag=tile.etag,
            size=len(tile.payload),
            created_at=tile.created_at,
        )
        self.storage.put_blob(ref.payload_key, tile.payload)
        self.storage.put_blob(ref.meta_key, _sidecar(tile))
        with self._lock:
            self._index[tile.key] = ref
        return ref

    def get(self, overlay_id: str, z: int, x: int, y: int, transform_version: int) -> Tile:
        key = (overlay_id, int(transform_version), int(z), int(x), int(y))
        with self._lock:
            ref = self._index.get(key)
        if ref is None:
            raise TileNotFound(
                f"no tile {z}/{x}/{y} for {overlay_id} v{transform_version}",
                overlay_id=overlay_id, version=transform_version, z=z, x=x, y=y,
            )
        try:
            payload = self.storage.get_blob(ref.payload_key)
        except BlobNotFound:
            raise TileNotFound(f"tile {z}/{x}/{y} for {overlay_id} v{transform_version} was collected") from None
        return Tile(
            overlay_id=ref.overlay_id,
            transform_version=ref.version,
            z=ref.z, x=ref.x, y=ref.y,
            payload=payload,
            format=ref.fmt,
            created_at=ref.created_at,
        )

    def list_tiles(self, overlay_id: str, transform_version: int, z: Optional[int] = None) -> List[Tuple[int, int, int]]:
        with self._lock:
            out = [
                (k[2], k[3], k[4]) for k in self._index
                if k[0] == overlay_id and k[1] == transform_version and (z is None or k[2] == z)
            ]
        return sorted(out)

    def versions(self, overlay_id: str) -> List[int]:
        with self._lock:
            return sorted({k[1] for k in self._index if k[0] == overlay_id})

    def is_reclaimable(self, overlay_id: str, transform_version: int) -> bool:
        with self._lock:
            return (overlay_id, transform_version) in self._reclaimable

    def invalidate(self, overlay_id: str, transform_version: int) -> int:
        """Mark one version reclaimable. Returns the number of tiles affected."""
        self.storage.put_blob(marker_key(overlay_id, transform_version), b"")
        with self._lock:
            self._reclaimable.add((overlay_id, transform_version))
            n = sum(1 for k in self._index if k[0] == overlay_id and k[1] == transform_version)
        log.info("tiles invalidated", extra={"extra": {"overlay_id": overlay_id, "version": transform_version, "tiles": n}})
        return n

    def restore(self, overlay_id: str, transform_version: int) -> int:
        """Undo invalidate() for a version that has not been collected yet."""
        self.storage.delete_blob(marker_key(overlay_id, transform_version))
        with self._lock:
            self._reclaimable.discard((overlay_id, transform_version))
            return sum(1 for k in self._index if k[0] == overlay_id and k[1] == transform_version)

    def evict_older_than(self, overlay_id: str, keep_latest_n_versions: int, protect: Iterable[int] = ()) -> int:
        """
        Mark every version except the newest N (and any in `protect`) as
        reclaimable. Returns the number of tiles marked.
        """
        keep = set(sorted(self.versions(overlay_id), reverse=True)[:max(0, keep_latest_n_versions)])
        keep.update(protect)
        n = 0
        for v in self.versions(overlay_id):
            if v not in keep and not self.is_reclaimable(overlay_id, v):
                n += self.invalidate(overlay_id, v)
        return n

    def collect_garbage(self, overlay_id: Optional[str] = None) -> int:
        """Delete reclaimable tiles (payload and sidecar). Returns tiles deleted."""
        with self._lock:
            targets = sorted(r for r in self._reclaimable if overlay_id is None or r[0] == overlay_id)
        deleted = 0
        for oid, version in targets:
            with self._lock:
                refs = [ref for k, ref in self._index.items() if k[0] == oid and k[1] == version]
            for ref in refs:
                self.storage.delete_blob(ref.payload_key)
                self.storage.delete_blob(ref.meta_key)
                with self._lock:
                    self._index.pop((oid, version, ref.z, ref.x, ref.y), None)
                deleted += 1
            self.storage.delete_blob(marker_key(oid, version))
            with self._lock:
                self._reclaimable.discard((oid, version))
        if deleted:
            log.info("garbage collected", extra={"extra": {"overlay_id": overlay_id, "tiles": deleted}})
        return deleted

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            refs = list(self._index.values())
            reclaimable = set(self._reclaimable)
        return {
            "overlays": len({r.overlay_id for r in refs}),
            "versions": len({(r.overlay_id, r.version) for r in refs}),
            "tiles": len(refs),
            "bytes": sum(r.size for r in refs),
            "reclaimable_tiles": sum(1 for r in refs if (r.overlay_id, r.version) in reclaimable),
        }

    # -------- internals --------

    def _scan(self) -> None:
        """Rebuild the index from sidecars and reclaim markers already in storage."""
        for key in self.storage.list_keys(OVERLAY_PREFIX + "/"):
            marker = parse_marker_key(key)
            if marker is not None:
                self._reclaimable.add(marker)
                continue
            parsed = parse_tile_key(key)
            if parsed is None or parsed[5] != "json":
                continue
            overlay_id, version, z, x, y, _ = parsed
            try:
                meta = json.loads(self.storage.get_blob(key).decode("utf-8"))
                ref = TileRef(
                    overlay_id=overlay_id, version=version, z=z, x=x, y=y,
                    fmt=str(meta.get("format", "png")),
                    etag=str(meta["etag"]),
                    size=int(meta.get("size", 0)),
                    created_at=str(meta.get("created_at", "")),
                )
            except (BlobNotFound, KeyError, TypeError, ValueError) as e:
                log.warning("skipping unreadable tile sidecar", extra={"extra": {"key": key, "error": str(e)}})
                continue
            self._index[(overlay_id, version, z, x, y)] = ref
        if self._index:
            log.info("tile index loaded", extra={"extra": {"tiles": len(self._index)}})
