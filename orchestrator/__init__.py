"""
Job Orchestrator

Runs control point commits through solving and tile rendering, with one
active job per overlay, bounded retries, cancellation and status reporting.
"""
from .engine import Orchestrator, OverlayRecord
from .registry import HistoryEntry, JobRegistry, TransformRegistry

__all__ = ["HistoryEntry", "JobRegistry", "Orchestrator", "OverlayRecord", "TransformRegistry"]
