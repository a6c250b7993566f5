from __future__ import annotations

"""
Job orchestrator.

Drives one overlay through
    PENDING -> SOLVING -> RASTERIZING -> READY
with FAILED reachable from SOLVING and RASTERIZING. Validation errors are
raised to the caller of commit_control_points and never create a job.

Rasterizing runs level by level; `completed_zoom` is advanced only after a
whole level is persisted, so a retried attempt resumes at the next level.
Transient errors (StorageFailure, JobTimeout, LevelFailed) are retried with
exponential backoff up to `max_attempts`; SourceUnavailable and every solver
error end the job.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from common.config import load_config
from common.errors import (
    InvalidInput,
    JobCancelled,
    JobConflict,
    LevelFailed,
    OverlayEngineError,
    SourceUnavailable,
    TileNotFound,
)
from common.logging_setup import get_logger
from common.types import (
    JobStatus,
    ProcessingJob,
    Stage,
    Tile,
    TransformKind,
    TransformModel,
)
from common.utils import CancelToken, Deadline, backoff_delay, iso_now_ms, new_id
from control_points import ControlPointStore, coerce_points
from orchestrator.registry import JobRegistry, TransformRegistry
from rasterizer import FileSystemPageReader, PagePyramid, PageReader, TileCursor, render_level, validate_zoom_levels
from solver import build_transform, check_geometry, flag_outliers, solve
from tile_store import ObjectStorage, TileStore, check_overlay_id, make_storage


log = get_logger(__name__)

SOLVE_PROGRESS = 10.0


@dataclass(slots=True)
class OverlayRecord:
    overlay_id: str
    source_ref: str
    width: int
    height: int
    kind: TransformKind
    zoom_levels: List[int]
    order: int = 2
    smoothing: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overlay_id": self.overlay_id,
            "source_ref": self.source_ref,
            "width": self.width,
            "height": self.height,
            "kind": self.kind.value,
            "zoom_levels": list(self.zoom_levels),
            "order": self.order,
            "smoothing": self.smoothing,
        }


class Orchestrator:
    """
    Usage:
        with Orchestrator(cfg, storage=InMemoryObjectStorage(), page_reader=reader) as orch:
            orch.register_overlay("map1", "map1.png", 2048, 1536, zoom_levels=[0, 1, 2])
            job = orch.commit_control_points("map1", [(0, 0, -1.0, 1.0), ...])
            orch.run(job.id)
            orch.get_status("map1")["stage"]  # "READY"
    """

    def __init__(
        self,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        storage: Optional[ObjectStorage] = None,
        page_reader: Optional[PageReader] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg if cfg is not None else load_config()
        self.storage = storage if storage is not None else make_storage(self.cfg)
        self.pages = page_reader if page_reader is not None else FileSystemPageReader(".")
        self.points = ControlPointStore()
        self.transforms = TransformRegistry()
        self.jobs = JobRegistry(self.storage)
        self.tiles = TileStore(self.storage)
        self._sleep = sleep
        self._overlays: Dict[str, OverlayRecord] = {}
        self._queued: Dict[str, ProcessingJob] = {}
        self._tokens: Dict[str, CancelToken] = {}
        self._lock = threading.RLock()
        self._pool: Optional[ThreadPoolExecutor] = None

    # -------- lifecycle --------

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            workers = max(1, int(self.cfg["rasterizer"]["workers"]))
            self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tile")
        return self._pool

    # -------- public API --------

    def register_overlay(
        self,
        overlay_id: str,
        source_ref: str,
        width: int,
        height: int,
        *,
        kind: Optional[TransformKind | str] = None,
        zoom_levels: Optional[Sequence[int]] = None,
        order: Optional[int] = None,
        smoothing: Optional[float] = None,
    ) -> OverlayRecord:
        check_overlay_id(overlay_id)
        s = self.cfg["solver"]
        record = OverlayRecord(
            overlay_id=overlay_id,
            source_ref=source_ref,
            width=int(width),
            height=int(height),
            kind=TransformKind.parse(kind or s["default_kind"]),
            zoom_levels=validate_zoom_levels(zoom_levels if zoom_levels is not None else self.cfg["rasterizer"]["zoom_levels"]),
            order=int(order if order is not None else s["polynomial_order"]),
            smoothing=float(smoothing if smoothing is not None else s["tps_smoothing"]),
        )
        self.points.register_page(overlay_id, record.width, record.height)
        with self._lock:
            self._overlays[overlay_id] = record
        log.info("overlay registered", extra={"extra": record.to_dict()})
        return record

    def overlay(self, overlay_id: str) -> OverlayRecord:
        with self._lock:
            record = self._overlays.get(overlay_id)
        if record is None:
            raise InvalidInput(f"unknown overlay: {overlay_id}")
        return record

    def commit_control_points(
        self,
        overlay_id: str,
        points: Iterable,
        *,
        kind: Optional[TransformKind | str] = None,
        priority: Optional[int] = None,
    ) -> ProcessingJob:
        """
        Validate and stage a point set, then create the job that solves it.

        Raises InvalidInput, TooManyPoints or DegenerateGeometry before any job
        exists. If the overlay already has an active job the new job is held
        back and starts when the active one ends; a later commit replaces a
        held-back one.
        """
        record = self.overlay(overlay_id)
        pts = coerce_points(points)
        for p in pts:
            self.points.validate(overlay_id, p)
        job_kind = TransformKind.parse(kind) if kind is not None else record.kind
        check_geometry(pts, job_kind, **self._solver_options(record))
        self.points.replace(overlay_id, pts)

        job = ProcessingJob(
            id=new_id("job_"),
            overlay_id=overlay_id,
            points=pts,
            kind=job_kind,
            zoom_levels=list(record.zoom_levels),
            priority=int(priority if priority is not None else self.cfg["jobs"]["default_priority"]),
            max_attempts=int(self.cfg["jobs"]["max_attempts"]),
        )
        with self._lock:
            if self.jobs.active_for(overlay_id) is None:
                return self.jobs.create(job)
            superseded = self._queued.get(overlay_id)
            if superseded is not None:
                self._mark_cancelled(superseded, "superseded by a newer commit")
            self._queued[overlay_id] = job
        log.info("commit queued behind active job", extra={"extra": {"overlay_id": overlay_id, "job_id": job.id}})
        return job

    def run(self, job_id: str) -> ProcessingJob:
        """Execute a pending job to a terminal state and return it."""
        job = self.jobs.get(job_id)
        with self._lock:
            if job.status is not JobStatus.PENDING:
                return job
            job.status = JobStatus.RUNNING
            token = self._tokens.setdefault(job.id, CancelToken())
        self._touch(job)
        log.info("job started", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id}})
        try:
            self._execute(job, token)
        except Exception as e:
            # Anything not in the error taxonomy still ends the job.
            log.exception("job crashed", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id}})
            self._fail(job, job.stage, e)
        finally:
            self._finish(job)
        return job

    def run_pending(self) -> List[ProcessingJob]:
        """Run pending jobs (priority, then creation order) until none remain."""
        done: List[ProcessingJob] = []
        while True:
            pending = self.jobs.pending()
            if not pending:
                return done
            for job in pending:
                done.append(self.run(job.id))

    def cancel(self, overlay_id: str) -> bool:
        """
        Cancel the overlay's active job and drop a held-back commit. A running
        job stops between tiles. Returns False if there was nothing to cancel.
        """
        self.overlay(overlay_id)
        with self._lock:
            cancelled = False
            queued = self._queued.pop(overlay_id, None)
            if queued is not None:
                self._mark_cancelled(queued, "cancelled before start")
                cancelled = True
            job = self.jobs.active_for(overlay_id)
            if job is None:
                return cancelled
            if job.status is JobStatus.PENDING:
                self._mark_cancelled(job, "cancelled before start")
                self.jobs.release(job)
            else:
                self._tokens.setdefault(job.id, CancelToken()).cancel()
        log.info("job cancel requested", extra={"extra": {"overlay_id": overlay_id, "job_id": job.id}})
        return True

    def get_status(self, overlay_id: str) -> Dict[str, Any]:
        self.overlay(overlay_id)
        job = self.jobs.latest_for(overlay_id)
        active = self.transforms.active(overlay_id)
        with self._lock:
            queued = overlay_id in self._queued
        status: Dict[str, Any] = {
            "overlay_id": overlay_id,
            "job_id": None,
            "stage": Stage.PENDING.value,
            "status": None,
            "progress_pct": 0.0,
            "error": None,
            "transform_version": active.version if active else None,
            "attempt_count": 0,
            "tile_failures": 0,
            "queued": queued,
        }
        if job is not None:
            status.update({
                "job_id": job.id,
                "stage": job.stage.value,
                "status": job.status.value,
                "progress_pct": round(job.progress_pct, 2),
                "error": job.error,
                "attempt_count": job.attempt_count,
                "tile_failures": len(job.tile_failures),
            })
        return status

    def get_tile(self, overlay_id: str, z: int, x: int, y: int) -> Tile:
        """Tile of the active transform version."""
        active = self.transforms.active(overlay_id)
        if active is None:
            raise TileNotFound(f"overlay {overlay_id} has no active transform")
        return self.tiles.get(overlay_id, z, x, y, active.version)

    def rollback(self, overlay_id: str, version: int) -> Optional[ProcessingJob]:
        """
        Re-activate a retained transform version. Its tiles are restored if
        they have not been collected; otherwise a job re-renders them, and
        that job is returned.
        """
        record = self.overlay(overlay_id)
        with self._lock:
            if self.jobs.active_for(overlay_id) is not None:
                raise JobConflict(f"overlay {overlay_id} has an active job; cancel it first")
            model = self.transforms.get(overlay_id, version)
            current = self.transforms.active(overlay_id)
            self.transforms.activate(overlay_id, model.version)
            if current is not None and current.version != model.version:
                self.tiles.invalidate(overlay_id, current.version)
            self.tiles.restore(overlay_id, model.version)
            expected = TileCursor(model.bounds, record.zoom_levels).total()
            present = len(self.tiles.list_tiles(overlay_id, model.version))
            log.info("transform rolled back", extra={"extra": {"overlay_id": overlay_id, "version": model.version,
                                                               "tiles_present": present, "tiles_expected": expected}})
            if present >= expected:
                return None
            job = ProcessingJob(
                id=new_id("job_"),
                overlay_id=overlay_id,
                points=self.points.list(overlay_id),
                kind=model.kind,
                zoom_levels=list(record.zoom_levels),
                priority=int(self.cfg["jobs"]["default_priority"]),
                max_attempts=int(self.cfg["jobs"]["max_attempts"]),
                transform_version=model.version,
            )
            return self.jobs.create(job)

    def history(self, overlay_id: str) -> List[Dict[str, Any]]:
        self.overlay(overlay_id)
        return self.transforms.history(overlay_id)

    def collect_garbage(self, overlay_id: Optional[str] = None) -> int:
        return self.tiles.collect_garbage(overlay_id)

    # -------- stages --------

    def _execute(self, job: ProcessingJob, token: CancelToken) -> None:
        record = self.overlay(job.overlay_id)
        if token.cancelled:
            self._cancelled(job)
            return

        self._transition(job, Stage.SOLVING)
        try:
            model = self._solve_stage(job, record)
        except OverlayEngineError as e:
            self._fail(job, Stage.SOLVING, e)
            return
        job.progress_pct = SOLVE_PROGRESS
        self._touch(job)

        self._transition(job, Stage.RASTERIZING)
        try:
            self._rasterize_stage(job, record, model, token)
        except JobCancelled:
            self._cancelled(job)
            return
        except OverlayEngineError as e:
            self._fail(job, Stage.RASTERIZING, e)
            return

        job.progress_pct = 100.0
        job.status = JobStatus.SUCCEEDED
        self._transition(job, Stage.READY)
        log.info("job ready", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id,
                                               "version": job.transform_version, "attempts": job.attempt_count,
                                               "tile_failures": len(job.tile_failures)}})

    def _solve_stage(self, job: ProcessingJob, record: OverlayRecord) -> TransformModel:
        if job.transform_version is not None:
            return self.transforms.get(job.overlay_id, job.transform_version)

        opts = self._solver_options(record)
        model, residuals = solve(
            job.points,
            job.kind,
            order=opts["order"],
            smoothing=opts["smoothing"],
            max_points=opts["max_points"],
            source_size=(record.width, record.height),
            overlay_id=job.overlay_id,
            version=self.transforms.next_version(job.overlay_id),
        )
        outliers = flag_outliers(residuals, model.rmse, float(self.cfg["solver"]["outlier_factor"]))
        if outliers:
            log.warning("control points flagged for review",
                        extra={"extra": {"overlay_id": job.overlay_id, "indices": outliers, "rmse_m": model.rmse}})

        previous = self.transforms.active(job.overlay_id)
        self.transforms.add(model)
        self.transforms.activate(job.overlay_id, model.version)
        job.transform_version = model.version
        if previous is not None:
            self.tiles.invalidate(job.overlay_id, previous.version)
        self.tiles.evict_older_than(job.overlay_id, int(self.cfg["storage"]["keep_versions"]), protect=[model.version])
        return model

    def _rasterize_stage(self, job: ProcessingJob, record: OverlayRecord, model: TransformModel,
                         token: CancelToken) -> None:
        rc = self.cfg["rasterizer"]
        jc = self.cfg["jobs"]
        page = self.pages.read_page(record.source_ref)
        if (page.width, page.height) != (record.width, record.height):
            raise SourceUnavailable(
                "page size differs from the registered size",
                expected=[record.width, record.height], actual=[page.width, page.height],
            )
        transform = build_transform(model)
        pyramid = PagePyramid(page, enabled=bool(rc.get("pyramid", True)))
        cursor = TileCursor(model.bounds, job.zoom_levels, job.completed_zoom)
        total = max(1, cursor.total())
        pool = self._executor()

        while True:
            job.attempt_count += 1
            self._touch(job)
            deadline = Deadline(float(jc["job_timeout_s"]) if jc.get("job_timeout_s") else None)
            try:
                for z in cursor.pending_levels():
                    self._render_one_level(job, model, page, z, pool, token, deadline, transform, pyramid,
                                           cursor, total)
                return
            except JobCancelled:
                raise
            except OverlayEngineError as e:
                if isinstance(e, LevelFailed):
                    job.tile_failures.extend(e.failures)
                    job.level_stats[e.zoom] = {"total": e.total, "rendered": e.total - e.failed, "failed": e.failed}
                if not e.retryable or job.attempt_count >= job.max_attempts:
                    raise
                delay = backoff_delay(job.attempt_count, float(jc["backoff_base_s"]), float(jc["backoff_max_s"]))
                log.warning("rasterizing attempt failed, retrying",
                            extra={"extra": {"job_id": job.id, "attempt": job.attempt_count, "error": e.kind,
                                             "resume_after": job.completed_zoom, "delay_s": delay}})
                self._sleep(delay)

    def _render_one_level(self, job, model, page, z, pool, token, deadline, transform, pyramid, cursor, total):
        done_before = sum(len(cursor.tiles_at(lvl)) for lvl in cursor.zoom_levels
                          if job.completed_zoom is not None and lvl <= job.completed_zoom)
        counter = {"n": 0}

        def sink(tile: Tile) -> None:
            self.tiles.put(tile)
            counter["n"] += 1
            job.progress_pct = SOLVE_PROGRESS + (100.0 - SOLVE_PROGRESS) * (done_before + counter["n"]) / total

        result = render_level(
            model, page, z, pool, token, deadline,
            transform=transform,
            pyramid=pyramid,
            tile_size=int(self.cfg["rasterizer"]["tile_size"]),
            max_failed_ratio=float(self.cfg["rasterizer"]["max_failed_ratio"]),
            sink=sink,
        )
        job.tile_failures.extend(result.failures)
        job.level_stats[z] = result.stats()
        cursor.mark_level_done(z)
        job.completed_zoom = z
        job.progress_pct = SOLVE_PROGRESS + (100.0 - SOLVE_PROGRESS) * (done_before + result.total) / total
        self._touch(job)

    # -------- bookkeeping --------

    def _solver_options(self, record: OverlayRecord) -> Dict[str, Any]:
        return {
            "order": record.order,
            "smoothing": record.smoothing,
            "max_points": int(self.cfg["solver"]["tps_max_points"]),
        }

    def _touch(self, job: ProcessingJob) -> None:
        job.updated_at = iso_now_ms()

    def _transition(self, job: ProcessingJob, stage: Stage) -> None:
        job.stage = stage
        job.transitions.append(stage)
        self._touch(job)
        log.info("job stage", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id, "stage": stage.value}})

    def _fail(self, job: ProcessingJob, stage: Stage, error: Exception) -> None:
        if isinstance(error, OverlayEngineError):
            kind, message = error.kind, error.message or str(error)
        else:
            kind, message = type(error).__name__, str(error)
        job.error = {"kind": kind, "stage": stage.value, "message": message}
        job.status = JobStatus.FAILED
        if job.stage is not Stage.FAILED:
            self._transition(job, Stage.FAILED)
        log.error("job failed", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id, **job.error}})

    def _cancelled(self, job: ProcessingJob) -> None:
        self._mark_cancelled(job, "job cancelled")
        log.info("job cancelled", extra={"extra": {"job_id": job.id, "overlay_id": job.overlay_id,
                                                   "completed_zoom": job.completed_zoom}})

    def _mark_cancelled(self, job: ProcessingJob, message: str) -> None:
        job.status = JobStatus.CANCELLED
        job.error = {"kind": JobCancelled.__name__, "stage": job.stage.value, "message": message}
        self._touch(job)

    def _finish(self, job: ProcessingJob) -> None:
        """Release ownership and start the held-back commit, if any."""
        with self._lock:
            self._tokens.pop(job.id, None)
            self.jobs.release(job)
            queued = self._queued.pop(job.overlay_id, None)
            if queued is not None and queued.status is JobStatus.PENDING:
                self.jobs.create(queued)
                log.info("queued commit promoted", extra={"extra": {"overlay_id": job.overlay_id, "job_id": queued.id}})
