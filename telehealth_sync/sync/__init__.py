"""Sync module: cross-store detection and drift reconciliation."""

from .detectors import (
    ConflictDetector,
    ConflictMatches,
    DuplicateDetector,
    DuplicateMatches,
    intervals_overlap,
)
from .reconciliation import ReconciliationReport, ReconciliationService

__all__ = [
    "ConflictDetector",
    "ConflictMatches",
    "DuplicateDetector",
    "DuplicateMatches",
    "intervals_overlap",
    "ReconciliationReport",
    "ReconciliationService",
]
