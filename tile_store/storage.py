from __future__ import annotations

"""
Object storage backends.

The engine only needs four blob operations; placement, replication and
lifecycle policy belong to whatever sits behind them. Keys are '/'-separated
relative paths. Tiles live under

    overlays/{overlay_id}/v{version}/{z}/{x}/{y}.png    (payload)
    overlays/{overlay_id}/v{version}/{z}/{x}/{y}.json   (sidecar metadata)

and the job ownership token of an overlay under jobs/{overlay_id}/_owner.
"""

import os
import re
import threading
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Protocol, Tuple

from common.errors import BlobNotFound, InvalidInput, StorageFailure
from common.logging_setup import get_logger


log = get_logger(__name__)

OVERLAY_PREFIX = "overlays"
JOBS_PREFIX = "jobs"
RECLAIM_MARKER = "_reclaimable"
_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_TMP_SUFFIX = ".tmp"


class ObjectStorage(Protocol):
    def put_blob(self, key: str, data: bytes) -> None:
        ...

    def put_blob_if_absent(self, key: str, data: bytes) -> bool:
        ...

    def get_blob(self, key: str) -> bytes:
        ...

    def delete_blob(self, key: str) -> bool:
        ...

    def list_keys(self, prefix: str = "") -> List[str]:
        ...


# -------------------------
# Key layout
# -------------------------
def check_overlay_id(overlay_id: str) -> str:
    if not isinstance(overlay_id, str) or not _ID_RE.match(overlay_id):
        raise InvalidInput(f"invalid overlay id: {overlay_id!r}")
    return overlay_id


def version_prefix(overlay_id: str, version: int) -> str:
    return f"{OVERLAY_PREFIX}/{check_overlay_id(overlay_id)}/v{int(version)}/"


def tile_key(overlay_id: str, version: int, z: int, x: int, y: int, ext: str = "png") -> str:
    return f"{version_prefix(overlay_id, version)}{z}/{x}/{y}.{ext}"


def marker_key(overlay_id: str, version: int) -> str:
    return version_prefix(overlay_id, version) + RECLAIM_MARKER


def owner_key(overlay_id: str) -> str:
    return f"{JOBS_PREFIX}/{check_overlay_id(overlay_id)}/_owner"


def parse_tile_key(key: str) -> Optional[Tuple[str, int, int, int, int, str]]:
    """(overlay_id, version, z, x, y, ext) for a tile key, else None."""
    parts = key.split("/")
    if len(parts) != 6 or parts[0] != OVERLAY_PREFIX or not parts[2].startswith("v"):
        return None
    stem, _, ext = parts[5].partition(".")
    try:
        return parts[1], int(parts[2][1:]), int(parts[3]), int(parts[4]), int(stem), ext
    except ValueError:
        return None


def parse_marker_key(key: str) -> Optional[Tuple[str, int]]:
    parts = key.split("/")
    if len(parts) != 4 or parts[0] != OVERLAY_PREFIX or parts[3] != RECLAIM_MARKER:
        return None
    try:
        return parts[1], int(parts[2].lstrip("v"))
    except ValueError:
        return None


# -------------------------
# Backends
# -------------------------
class InMemoryObjectStorage:
    """Dict-backed storage for tests and single-process runs."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put_blob(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(data)

    def put_blob_if_absent(self, key: str, data: bytes) -> bool:
        with self._lock:
            if key in self._blobs:
                return False
            self._blobs[key] = bytes(data)
            return True

    def get_blob(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[key]
            except KeyError:
                raise BlobNotFound(f"no blob at {key}") from None

    def delete_blob(self, key: str) -> bool:
        with self._lock:
            return self._blobs.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))

    def __len__(self) -> int:
        return len(self._blobs)


class FileSystemObjectStorage:
    """
    Directory-backed storage. Each key is a file below `root`:

        root/
          └─ overlays/{overlay}/v{version}/
              └─ {z}/
                  └─ {x}/
                      ├─ {y}.json   (tile metadata)
                      └─ {y}.png    (imagery)

    Writes go to a temp file and are moved into place, so readers never see
    a partial payload. Any OSError surfaces as StorageFailure.
    """

    def __init__(self, root: str = "data/tiles"):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        rel = PurePosixPath(key)
        if not key or rel.is_absolute() or ".." in rel.parts:
            raise InvalidInput(f"invalid storage key: {key!r}")
        return self.root.joinpath(*rel.parts)

    def put_blob(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path.with_name(f"{path.name}.{threading.get_ident()}{_TMP_SUFFIX}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            raise StorageFailure(f"write failed for {key}: {e}", key=key) from e

    def put_blob_if_absent(self, key: str, data: bytes) -> bool:
        """Exclusive create; False when the key already exists."""
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise StorageFailure(f"create failed for {key}: {e}", key=key) from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as e:
            raise StorageFailure(f"write failed for {key}: {e}", key=key) from e
        return True

    def get_blob(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(f"no blob at {key}") from None
        except OSError as e:
            raise StorageFailure(f"read failed for {key}: {e}", key=key) from e

    def delete_blob(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"delete failed for {key}: {e}", key=key) from e
        return True

    def list_keys(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        try:
            keys = [
                p.relative_to(self.root).as_posix()
                for p in self.root.rglob("*")
                if p.is_file() and not p.name.endswith(_TMP_SUFFIX)
            ]
        except OSError as e:
            raise StorageFailure(f"listing failed under {self.root}: {e}") from e
        return sorted(k for k in keys if k.startswith(prefix))


def make_storage(cfg: Dict) -> ObjectStorage:
    """Build the backend named by the `storage` config section."""
    section = cfg.get("storage", cfg)
    backend = str(section.get("backend", "memory")).lower()
    if backend == "memory":
        return InMemoryObjectStorage()
    if backend == "filesystem":
        return FileSystemObjectStorage(section.get("root", "data/tiles"))
    raise InvalidInput(f"unknown storage backend: {backend!r}")
