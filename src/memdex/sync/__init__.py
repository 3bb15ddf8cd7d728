"""Memdex sync pipeline: change detection, the sync controller, progress."""

from memdex.sync.controller import SyncController, SyncReport
from memdex.sync.detector import FULL, INCREMENTAL, REPAIR, SyncPlan, classify, plan_sync
from memdex.sync.progress import ProgressUpdate, SyncProgress

__all__ = [
    "FULL",
    "INCREMENTAL",
    "REPAIR",
    "ProgressUpdate",
    "SyncController",
    "SyncPlan",
    "SyncProgress",
    "SyncReport",
    "classify",
    "plan_sync",
]
