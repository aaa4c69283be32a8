from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import queue
import threading

logger = logging.getLogger(__name__)


class ScanStatus(str, Enum):
    IDLE = "Idle"
    STARTING = "Starting"
    CONNECTING = "Connecting"
    AUTHENTICATING = "Authenticating"
    CRAWLING = "Crawling"
    APPLYING = "Applying"
    COMPLETE = "Complete"
    ERROR = "Error"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETE, ScanStatus.ERROR, ScanStatus.CANCELLED})


class ScanMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"
    SNAPSHOT_IMPORT = "github"
    LOCAL_IMPORT = "local"


class AuthMode(str, Enum):
    ANONYMOUS = "anonymous"
    ACCOUNT = "account"


@dataclass(frozen=True)
class ScanJob:
    id: Optional[str] = None
    mode: Optional[ScanMode] = None
    auth_mode: AuthMode = AuthMode.ANONYMOUS
    status: ScanStatus = ScanStatus.IDLE
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processed_batches: int = 0
    total_batches: int = 0
    processed_apps: int = 0
    total_apps: int = 0
    mappings_found_this_session: int = 0
    mappings_found_total: int = 0
    last_change_number: int = 0
    current_change_number: int = 0
    is_connected: bool = False
    is_logged_on: bool = False
    error_detail: Optional[str] = None
    cancel_requested: bool = False
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_running(self) -> bool:
        return self.status != ScanStatus.IDLE and not self.is_terminal

    @property
    def progress_percent(self) -> float:
        if self.status == ScanStatus.COMPLETE:
            return 100.0
        if self.total_batches > 0:
            ratio = self.processed_batches / self.total_batches
        elif self.total_apps > 0:
            ratio = self.processed_apps / self.total_apps
        else:
            return 0.0
        return round(min(1.0, max(0.0, ratio)) * 100.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "scanMode": self.mode.value if self.mode else None,
            "authMode": self.auth_mode.value,
            "status": self.status.value,
            "isRunning": self.is_running,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "processedBatches": self.processed_batches,
            "totalBatches": self.total_batches,
            "progressPercent": self.progress_percent,
            "processedApps": self.processed_apps,
            "totalApps": self.total_apps,
            "depotMappingsFoundInSession": self.mappings_found_this_session,
            "depotMappingsFound": self.mappings_found_total,
            "lastChangeNumber": self.last_change_number,
            "currentChangeNumber": self.current_change_number,
            "isConnected": self.is_connected,
            "isLoggedOn": self.is_logged_on,
            "errorDetail": self.error_detail,
            "cancelRequested": self.cancel_requested,
            "message": self.message,
        }


def idle_job(mappings_found_total: int = 0, last_change_number: int = 0) -> ScanJob:
    return ScanJob(mappings_found_total=mappings_found_total, last_change_number=last_change_number)


def render_progress(job: ScanJob, next_crawl_in: int, total_mappings: int) -> Dict[str, Any]:
    """Polling payload: the job snapshot plus store-wide figures."""
    payload = job.to_dict()
    found = max(int(total_mappings), job.mappings_found_total)
    payload["depotMappingsFound"] = found
    payload["isReady"] = found > 0
    payload["nextCrawlIn"] = max(0, int(next_crawl_in))
    return payload


@dataclass(frozen=True)
class ProgressEvent:
    kind: str
    job: ScanJob
    success: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"event": self.kind}
        payload.update(self.job.to_dict())
        if self.success is not None:
            payload["success"] = self.success
        return payload


@dataclass(eq=False)
class Subscription:
    """
    Bounded mailbox for one subscriber. ``on_event`` is called on the
    publishing thread after every offer, including the one that drops it.
    """

    max_pending: int
    on_event: Optional[Callable[[], None]] = None
    closed: bool = False
    _queue: "queue.Queue[ProgressEvent]" = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._queue = queue.Queue(maxsize=max(1, int(self.max_pending)))

    def offer(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.closed = True
            self._wake()
            return False
        self._wake()
        return True

    def _wake(self) -> None:
        if self.on_event is not None:
            self.on_event()

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def get_nowait(self) -> Optional[ProgressEvent]:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()


class ProgressBroadcaster:
    """
    Holds the one current ScanJob snapshot and fans every replacement out to
    subscribers. A subscriber whose queue is full is dropped; it can
    resubscribe and reconcile from ``snapshot()``.
    """

    def __init__(self, initial: Optional[ScanJob] = None, max_pending: int = 64):
        self._lock = threading.Lock()
        self._current = initial or idle_job()
        self._subscribers: List[Subscription] = []
        self._max_pending = max_pending

    def snapshot(self) -> ScanJob:
        with self._lock:
            return self._current

    def publish(self, job: ScanJob, kind: Optional[str] = None) -> None:
        if kind is None:
            kind = "Complete" if job.is_terminal else "Progress"
        success = job.status == ScanStatus.COMPLETE if kind == "Complete" else None
        event = ProgressEvent(kind=kind, job=job, success=success)

        with self._lock:
            self._current = job
            subscribers = list(self._subscribers)

        dropped = [sub for sub in subscribers if not sub.offer(event)]
        if dropped:
            with self._lock:
                self._subscribers = [sub for sub in self._subscribers if sub not in dropped]
            logger.info("Dropped %s slow progress subscriber(s)", len(dropped))

    def subscribe(
        self,
        max_pending: Optional[int] = None,
        on_event: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        subscription = Subscription(max_pending=max_pending or self._max_pending, on_event=on_event)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.closed = True
        with self._lock:
            self._subscribers = [sub for sub in self._subscribers if sub is not subscription]

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
