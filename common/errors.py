from __future__ import annotations

"""
Error taxonomy shared by every component.

Validation errors (InvalidInput, DegenerateGeometry, TooManyPoints) are raised
synchronously to the caller and never enter the job pipeline. Pipeline errors
carry `retryable` so the orchestrator can decide between backoff and FAILED.
"""

from typing import Any, Dict, List, Optional


class OverlayEngineError(Exception):
    """Base class. `kind` is what the status surface reports."""

    retryable: bool = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


# --- validation ---
class InvalidInput(OverlayEngineError):
    """Bad control point data or request arguments."""


class DegenerateGeometry(OverlayEngineError):
    """Point configuration cannot determine the requested transform."""


class TooManyPoints(OverlayEngineError):
    """Point count exceeds the solver's cost ceiling."""


# --- pipeline ---
class SourceUnavailable(OverlayEngineError):
    """Source page missing or undecodable. Fatal for the job."""


class StorageFailure(OverlayEngineError):
    """Object storage temporarily failed."""

    retryable = True


class JobTimeout(OverlayEngineError):
    """A job attempt exceeded its time budget."""

    retryable = True

    @property
    def kind(self) -> str:
        return "Timeout"


class PartialTileFailure(OverlayEngineError):
    """Resampling of a single tile failed."""


class LevelFailed(PartialTileFailure):
    """Failed-tile ratio at one zoom level exceeded the threshold."""

    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        zoom: Optional[int] = None,
        failed: int = 0,
        total: int = 0,
        failures: Optional[List[Any]] = None,
    ):
        super().__init__(message, zoom=zoom, failed=failed, total=total)
        self.zoom = zoom
        self.failed = failed
        self.total = total
        self.failures = list(failures or [])


class JobCancelled(OverlayEngineError):
    """Cooperative cancellation observed between tiles."""


class JobConflict(OverlayEngineError):
    """An active job already owns the overlay."""


# --- lookups ---
class NotFound(OverlayEngineError):
    pass


class TileNotFound(NotFound):
    pass


class BlobNotFound(NotFound):
    pass
