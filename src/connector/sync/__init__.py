"""Synchronization settings -- what may be synchronized, and from when.

Provides:
- OrganizationSyncState: per-entity permission map and direction-gated checks
- SynchronizationHistory: recency/success queries over the run log
- SyncWindowCalculator: incremental-sync watermark and the historical-data latch
"""

from src.connector.sync.history import SynchronizationHistory
from src.connector.sync.state import OrganizationSyncState
from src.connector.sync.window import HistoricalDataState, SyncWindowCalculator

__all__ = [
    "HistoricalDataState",
    "OrganizationSyncState",
    "SyncWindowCalculator",
    "SynchronizationHistory",
]
