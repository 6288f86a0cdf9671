"""Background reconciliation of the local cache with the server."""

from wani.sync.backoff import FlowSchedule, RateLimitWindow, backoff_delay
from wani.sync.coordinator import SyncCoordinator, SyncStatus

__all__ = [
    "FlowSchedule",
    "RateLimitWindow",
    "SyncCoordinator",
    "SyncStatus",
    "backoff_delay",
]
