from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.errors import BlobNotFound, InvalidInput, JobConflict, NotFound
from common.logging_setup import get_logger
from common.types import JobStatus, ProcessingJob, TransformModel
from common.utils import iso_now_ms
from tile_store import ObjectStorage, owner_key


log = get_logger(__name__)


@dataclass(slots=True)
class HistoryEntry:
    model: TransformModel
    applied: bool = False
    applied_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        m = self.model
        return {
            "version": m.version,
            "kind": m.kind.value,
            "rmse": m.rmse,
            "point_count": m.point_count,
            "bounds": m.bounds.to_dict(),
            "created_at": m.created_at,
            "applied": self.applied,
            "applied_at": self.applied_at,
        }


class TransformRegistry:
    """
    Every solved model per overlay, by version. Exactly one entry per overlay
    is `applied` (active) once anything has been activated.
    """

    def __init__(self) -> None:
        self._models: Dict[str, Dict[int, HistoryEntry]] = {}
        self._lock = threading.Lock()

    def next_version(self, overlay_id: str) -> int:
        with self._lock:
            versions = self._models.get(overlay_id, {})
            return max(versions, default=0) + 1

    def add(self, model: TransformModel) -> TransformModel:
        with self._lock:
            versions = self._models.setdefault(model.overlay_id, {})
            if model.version in versions:
                raise InvalidInput(f"version {model.version} already registered for {model.overlay_id}")
            versions[model.version] = HistoryEntry(model)
        return model

    def get(self, overlay_id: str, version: int) -> TransformModel:
        with self._lock:
            entry = self._models.get(overlay_id, {}).get(int(version))
        if entry is None:
            raise InvalidInput(f"unknown transform version {version} for {overlay_id}")
        return entry.model

    def activate(self, overlay_id: str, version: int) -> TransformModel:
        with self._lock:
            versions = self._models.get(overlay_id, {})
            if int(version) not in versions:
                raise InvalidInput(f"unknown transform version {version} for {overlay_id}")
            for v, entry in versions.items():
                if v == int(version):
                    entry.applied = True
                    entry.applied_at = iso_now_ms()
                else:
                    entry.applied = False
            model = versions[int(version)].model
        log.info("transform activated", extra={"extra": {"overlay_id": overlay_id, "version": model.version}})
        return model

    def active(self, overlay_id: str) -> Optional[TransformModel]:
        with self._lock:
            for entry in self._models.get(overlay_id, {}).values():
                if entry.applied:
                    return entry.model
        return None

    def history(self, overlay_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            entries = sorted(self._models.get(overlay_id, {}).values(), key=lambda e: e.model.version)
            return [e.to_dict() for e in entries]


class JobRegistry:
    """
    Jobs by id, with at most one pending or running job per overlay.

    The `_owner` map enforces that inside this process. With `storage`, the
    owner is also claimed as an exclusive-create blob at jobs/{overlay}/_owner,
    so registries in other worker processes sharing that storage see the
    conflict too. A token left by a crashed process blocks the overlay until
    the blob is deleted.
    """

    def __init__(self, storage: Optional[ObjectStorage] = None) -> None:
        self._storage = storage
        self._jobs: Dict[str, ProcessingJob] = {}
        self._owner: Dict[str, str] = {}
        self._seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def create(self, job: ProcessingJob) -> ProcessingJob:
        with self._lock:
            owner = self._owner.get(job.overlay_id)
            if owner is not None:
                raise JobConflict(f"overlay {job.overlay_id} already has active job {owner}", job_id=owner)
            self._claim(job)
            self._jobs[job.id] = job
            self._owner[job.overlay_id] = job.id
            self._seq[job.id] = next(self._counter)
        log.info("job created", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id, "priority": job.priority}})
        return job

    def get(self, job_id: str) -> ProcessingJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"unknown job: {job_id}")
        return job

    def active_for(self, overlay_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            job_id = self._owner.get(overlay_id)
            return self._jobs.get(job_id) if job_id else None

    def latest_for(self, overlay_id: str) -> Optional[ProcessingJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.overlay_id == overlay_id]
            if not jobs:
                return None
            return max(jobs, key=lambda j: self._seq[j.id])

    def for_overlay(self, overlay_id: str) -> List[ProcessingJob]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.overlay_id == overlay_id]
            return sorted(jobs, key=lambda j: self._seq[j.id])

    def pending(self) -> List[ProcessingJob]:
        """Pending jobs, most urgent first (priority 1 before 10), then creation order."""
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.status is JobStatus.PENDING]
            return sorted(jobs, key=lambda j: (j.priority, self._seq[j.id]))

    def release(self, job: ProcessingJob) -> None:
        """Drop the overlay's ownership token once `job` is terminal."""
        with self._lock:
            if job.status.active:
                raise InvalidInput(f"job {job.id} is still {job.status.value}")
            if self._owner.get(job.overlay_id) == job.id:
                del self._owner[job.overlay_id]
                if self._storage is not None:
                    self._storage.delete_blob(owner_key(job.overlay_id))

    def _claim(self, job: ProcessingJob) -> None:
        if self._storage is None:
            return
        key = owner_key(job.overlay_id)
        if self._storage.put_blob_if_absent(key, job.id.encode("utf-8")):
            return
        try:
            owner = self._storage.get_blob(key).decode("utf-8")
        except BlobNotFound:
            owner = None
        raise JobConflict(f"overlay {job.overlay_id} is owned by job {owner} in another worker", job_id=owner)
