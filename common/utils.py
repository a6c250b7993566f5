from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    """Exponential backoff for the given 1-based attempt: base * 2^(attempt-1), capped."""
    if attempt < 1:
        return 0.0
    return float(min(max_s, base_s * (2 ** (attempt - 1))))


@dataclass(slots=True)
class Deadline:
    """
    Monotonic time budget for one job attempt.

    Usage:
        dl = Deadline(30.0)
        ...
        if dl.expired: raise JobTimeout(...)
    """
    budget_s: Optional[float]
    _t0: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._t0

    @property
    def expired(self) -> bool:
        return self.budget_s is not None and self.elapsed > self.budget_s


class CancelToken:
    """Cooperative cancellation flag shared between the orchestrator and workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
