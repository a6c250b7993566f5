"""
Unit tests for object storage backends and the versioned tile store
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from common.errors import BlobNotFound, InvalidInput, StorageFailure, TileNotFound
from common.types import Tile, content_etag
from tile_store import FileSystemObjectStorage, InMemoryObjectStorage, TileStore, make_storage, tile_key


def make_tile(version=1, z=3, x=2, y=5, payload=b"\x89PNG fake", overlay="ov1"):
    return Tile(overlay_id=overlay, transform_version=version, z=z, x=x, y=y, payload=payload)


@pytest.fixture(params=["memory", "filesystem"])
def storage(request, tmp_path):
    if request.param == "memory":
        return InMemoryObjectStorage()
    return FileSystemObjectStorage(str(tmp_path / "tiles"))


class TestObjectStorage:
    def test_put_get_delete(self, storage):
        storage.put_blob("a/b/c.bin", b"123")
        assert storage.get_blob("a/b/c.bin") == b"123"
        assert storage.list_keys("a/") == ["a/b/c.bin"]
        assert storage.delete_blob("a/b/c.bin") is True
        assert storage.delete_blob("a/b/c.bin") is False
        with pytest.raises(BlobNotFound):
            storage.get_blob("a/b/c.bin")

    def test_overwrite_last_writer_wins(self, storage):
        storage.put_blob("k", b"one")
        storage.put_blob("k", b"two")
        assert storage.get_blob("k") == b"two"

    def test_list_keys_filters_prefix(self, storage):
        for k in ("x/1", "x/2", "y/1"):
            storage.put_blob(k, b"")
        assert storage.list_keys("x/") == ["x/1", "x/2"]

    def test_filesystem_rejects_escaping_keys(self, tmp_path):
        fs = FileSystemObjectStorage(str(tmp_path))
        with pytest.raises(InvalidInput):
            fs.put_blob("../outside", b"")
        with pytest.raises(InvalidInput):
            fs.put_blob("/abs", b"")

    def test_filesystem_oserror_is_storage_failure(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")
        fs = FileSystemObjectStorage(str(blocker))  # root is a regular file
        with pytest.raises(StorageFailure):
            fs.put_blob("a/b.png", b"x")

    def test_filesystem_layout(self, tmp_path):
        fs = FileSystemObjectStorage(str(tmp_path))
        store = TileStore(fs)
        store.put(make_tile())
        assert (tmp_path / "overlays/ov1/v1/3/2/5.png").read_bytes() == b"\x89PNG fake"
        meta = json.loads((tmp_path / "overlays/ov1/v1/3/2/5.json").read_text())
        assert meta["etag"] == content_etag(b"\x89PNG fake")
        assert len(meta["bbox"]) == 4

    def test_make_storage(self, tmp_path):
        assert isinstance(make_storage({"storage": {"backend": "memory"}}), InMemoryObjectStorage)
        fs = make_storage({"storage": {"backend": "filesystem", "root": str(tmp_path)}})
        assert isinstance(fs, FileSystemObjectStorage)
        with pytest.raises(InvalidInput):
            make_storage({"storage": {"backend": "s3"}})


class TestTileStore:
    def test_put_then_get(self, storage):
        store = TileStore(storage)
        tile = make_tile()
        store.put(tile)
        got = store.get("ov1", 3, 2, 5, transform_version=1)
        assert got.payload == tile.payload
        assert got.etag == tile.etag

    def test_get_missing(self, storage):
        store = TileStore(storage)
        with pytest.raises(TileNotFound):
            store.get("ov1", 0, 0, 0, transform_version=1)

    def test_put_is_idempotent_per_key(self, storage):
        store = TileStore(storage)
        store.put(make_tile(payload=b"first"))
        store.put(make_tile(payload=b"second"))
        got = store.get("ov1", 3, 2, 5, transform_version=1)
        assert got.payload == b"second"
        assert got.etag == content_etag(b"second")
        assert store.stats()["tiles"] == 1

    def test_versions_are_isolated(self, storage):
        store = TileStore(storage)
        store.put(make_tile(version=1, payload=b"v1"))
        store.put(make_tile(version=2, payload=b"v2"))
        assert store.get("ov1", 3, 2, 5, transform_version=1).payload == b"v1"
        assert store.get("ov1", 3, 2, 5, transform_version=2).payload == b"v2"
        assert store.versions("ov1") == [1, 2]

    def test_invalidated_tiles_readable_until_gc(self, storage):
        store = TileStore(storage)
        store.put(make_tile(version=1))
        store.put(make_tile(version=1, x=3))
        store.put(make_tile(version=2))
        assert store.invalidate("ov1", 1) == 2
        assert store.get("ov1", 3, 2, 5, transform_version=1)
        assert store.collect_garbage() == 2
        with pytest.raises(TileNotFound):
            store.get("ov1", 3, 2, 5, transform_version=1)
        assert store.get("ov1", 3, 2, 5, transform_version=2)
        assert not storage.list_keys(tile_key("ov1", 1, 3, 2, 5)[: -len("3/2/5.png")])

    def test_restore_before_gc(self, storage):
        store = TileStore(storage)
        store.put(make_tile(version=1))
        store.invalidate("ov1", 1)
        assert store.restore("ov1", 1) == 1
        assert store.collect_garbage() == 0
        assert not store.is_reclaimable("ov1", 1)

    def test_evict_keeps_newest_versions(self, storage):
        store = TileStore(storage)
        for v in (1, 2, 3, 4):
            store.put(make_tile(version=v))
        assert store.evict_older_than("ov1", 2) == 2
        assert store.is_reclaimable("ov1", 1)
        assert store.is_reclaimable("ov1", 2)
        assert not store.is_reclaimable("ov1", 3)
        assert store.evict_older_than("ov1", 1, protect=[3]) == 0
        assert store.collect_garbage("ov1") == 2
        assert store.versions("ov1") == [3, 4]

    def test_gc_scoped_to_overlay(self, storage):
        store = TileStore(storage)
        store.put(make_tile(overlay="a"))
        store.put(make_tile(overlay="b"))
        store.invalidate("a", 1)
        store.invalidate("b", 1)
        assert store.collect_garbage("a") == 1
        assert store.versions("b") == [1]

    def test_index_rebuilt_from_filesystem(self, tmp_path):
        fs = FileSystemObjectStorage(str(tmp_path))
        first = TileStore(fs)
        first.put(make_tile(version=1))
        first.put(make_tile(version=2, payload=b"v2"))
        first.invalidate("ov1", 1)
        second = TileStore(FileSystemObjectStorage(str(tmp_path)))
        assert second.get("ov1", 3, 2, 5, transform_version=2).payload == b"v2"
        assert second.is_reclaimable("ov1", 1)
        assert second.collect_garbage() == 1

    def test_concurrent_puts_same_key(self, storage):
        store = TileStore(storage)
        payloads = [bytes([i]) * 16 for i in range(8)]
        threads = [threading.Thread(target=store.put, args=(make_tile(payload=p),)) for p in payloads]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        got = store.get("ov1", 3, 2, 5, transform_version=1)
        assert got.payload in payloads
        assert store.stats()["tiles"] == 1

    def test_concurrent_puts_distinct_keys(self, tmp_path):
        store = TileStore(FileSystemObjectStorage(str(tmp_path)))
        tiles = [make_tile(z=4, x=x, y=y, payload=bytes([x, y]) * 8) for x in range(8) for y in range(4)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(store.put, tiles))
        assert store.stats()["tiles"] == len(tiles)

        reloaded = TileStore(FileSystemObjectStorage(str(tmp_path)))
        assert reloaded.list_tiles("ov1", 1) == sorted((4, t.x, t.y) for t in tiles)
        for t in tiles:
            got = reloaded.get("ov1", 4, t.x, t.y, transform_version=1)
            assert got.payload == t.payload
            assert got.etag == t.etag

    def test_stats(self, storage):
        store = TileStore(storage)
        store.put(make_tile(payload=b"12345"))
        store.put(make_tile(version=2, payload=b"123"))
        store.invalidate("ov1", 1)
        s = store.stats()
        assert s == {"overlays": 1, "versions": 2, "tiles": 2, "bytes": 8, "reclaimable_tiles": 1}

    def test_rejects_bad_overlay_id(self, storage):
        store = TileStore(storage)
        with pytest.raises(InvalidInput):
            store.put(make_tile(overlay="../etc"))
