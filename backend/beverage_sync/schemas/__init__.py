"""Pydantic schemas for run files, the control protocol and API responses."""

from beverage_sync.schemas.admin import FreshnessReport, StoreBoundaries
from beverage_sync.schemas.run import (
    Checkpoint,
    LockInfo,
    RunOptions,
    RunOutcome,
    RunReport,
    RunStatus,
    StartResult,
    StartStatus,
)

__all__ = [
    "Checkpoint",
    "FreshnessReport",
    "LockInfo",
    "RunOptions",
    "RunOutcome",
    "RunReport",
    "RunStatus",
    "StartResult",
    "StartStatus",
    "StoreBoundaries",
]
