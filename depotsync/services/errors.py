from __future__ import annotations


class DepotSyncError(Exception):
    """Base class for failures that end a scan job in the Error state."""


class AuthError(DepotSyncError):
    """Steam rejected the login; re-authenticate before another authenticated scan."""


class NetworkError(DepotSyncError):
    """A catalog or download request kept failing after all retries."""


class CorruptSnapshotError(DepotSyncError):
    """The downloaded mapping snapshot failed validation; nothing was applied."""


class FullScanRequiredError(DepotSyncError):
    """Steam refused an incremental delta for the stored change number."""


class ScanCancelled(Exception):
    """Raised inside the worker once a cancellation request is observed."""
