from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional
import logging
import threading
import time
import uuid

from ..core.config import DEPOT_GAP_THRESHOLD, DEPOT_VIABILITY_CACHE_SECONDS
from .acquisition import AcquisitionStrategy, FullCrawl, IncrementalCrawl
from .errors import DepotSyncError, ScanCancelled
from .gap_policy import GapDecision, evaluate
from .mapping_applier import MappingApplier
from .mapping_store import MappingStore
from .pics_client import PicsCatalogClient
from .progress import AuthMode, ProgressBroadcaster, ScanJob, ScanMode, ScanStatus, idle_job
from .snapshot_import import LocalSnapshotImport, SnapshotImport

logger = logging.getLogger(__name__)

StrategyFactory = Callable[[ScanMode, AuthMode, int], AcquisitionStrategy]

_PROBE_ERRORS = (DepotSyncError, ConnectionError, TimeoutError, OSError)


def default_strategy_factory(mode: ScanMode, auth_mode: AuthMode, last_change_number: int) -> AcquisitionStrategy:
    if mode == ScanMode.SNAPSHOT_IMPORT:
        return SnapshotImport()
    if mode == ScanMode.LOCAL_IMPORT:
        return LocalSnapshotImport()
    if mode == ScanMode.INCREMENTAL:
        return IncrementalCrawl(last_change_number, auth_mode)
    return FullCrawl(auth_mode)


def fetch_current_change_number() -> int:
    """Short anonymous PICS session that only asks for the current change number."""
    client = PicsCatalogClient()
    try:
        client.connect()
        client.login("anonymous")
        return client.current_change_number()
    finally:
        client.disconnect()


class ChangeNumberProbe:
    """Caches Steam's current change number so repeated viability checks stay cheap."""

    def __init__(
        self,
        fetch: Callable[[], int] = fetch_current_change_number,
        ttl_seconds: float = DEPOT_VIABILITY_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[int] = None
        self._fetched_at = 0.0

    def current(self, refresh: bool = False) -> int:
        with self._lock:
            if not refresh and self._value is not None and self._clock() - self._fetched_at < self._ttl:
                return self._value
        value = int(self._fetch())
        self.prime(value)
        return value

    def prime(self, value: int) -> None:
        if not value or value <= 0:
            return
        with self._lock:
            self._value = int(value)
            self._fetched_at = self._clock()


class JobHandle:
    def __init__(self, job_id: str, mode: ScanMode):
        self.job_id = job_id
        self.mode = mode
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def mark_done(self) -> None:
        self._done.set()


@dataclass(frozen=True)
class StartResult:
    outcome: str
    handle: Optional[JobHandle] = None
    decision: Optional[GapDecision] = None

    STARTED = "started"
    BUSY = "busy"
    GAP_EXCEEDED = "gap_exceeded"

    @property
    def started(self) -> bool:
        return self.outcome == self.STARTED

    @property
    def is_busy(self) -> bool:
        return self.outcome == self.BUSY

    @property
    def gap_exceeded(self) -> bool:
        return self.outcome == self.GAP_EXCEEDED

    @classmethod
    def busy(cls) -> "StartResult":
        return cls(outcome=cls.BUSY)

    @classmethod
    def rejected(cls, decision: GapDecision) -> "StartResult":
        return cls(outcome=cls.GAP_EXCEEDED, decision=decision)

    @classmethod
    def running(cls, handle: JobHandle, decision: Optional[GapDecision] = None) -> "StartResult":
        return cls(outcome=cls.STARTED, handle=handle, decision=decision)


@dataclass
class _ActiveJob:
    job_id: str
    cancel_event: threading.Event
    handle: JobHandle


class _WorkerContext:
    """What a running strategy may touch: the cancel flag and its own job's progress."""

    def __init__(self, controller: "ScanJobController", job_id: str, cancel_event: threading.Event):
        self._controller = controller
        self.job_id = job_id
        self.cancel_event = cancel_event

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ScanCancelled(self.job_id)

    def set_status(self, status: ScanStatus, message: str = "") -> None:
        self._controller._mutate(self.job_id, lambda job: replace(job, status=status, message=message))

    def set_connection(self, connected: bool, logged_on: bool) -> None:
        self._controller._mutate(
            self.job_id,
            lambda job: replace(job, is_connected=bool(connected), is_logged_on=bool(logged_on)),
        )

    def report(
        self,
        *,
        processed_batches: Optional[int] = None,
        total_batches: Optional[int] = None,
        processed_apps: Optional[int] = None,
        total_apps: Optional[int] = None,
        current_change_number: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        def _apply(job: ScanJob) -> ScanJob:
            values = {}
            done_batches = job.processed_batches
            if processed_batches is not None:
                done_batches = max(done_batches, int(processed_batches))
                values["processed_batches"] = done_batches
            if total_batches is not None or processed_batches is not None:
                values["total_batches"] = max(job.total_batches, int(total_batches or 0), done_batches)
            done_apps = job.processed_apps
            if processed_apps is not None:
                done_apps = max(done_apps, int(processed_apps))
                values["processed_apps"] = done_apps
            if total_apps is not None or processed_apps is not None:
                values["total_apps"] = max(job.total_apps, int(total_apps or 0), done_apps)
            if current_change_number:
                values["current_change_number"] = int(current_change_number)
            if message is not None:
                values["message"] = message
            return replace(job, **values) if values else job

        self._controller._mutate(self.job_id, _apply)

    def rebase(self, last_change_number: int, total_mappings: int) -> None:
        self._controller._mutate(
            self.job_id,
            lambda job: replace(
                job,
                last_change_number=int(last_change_number),
                mappings_found_total=max(job.mappings_found_total, int(total_mappings)),
            ),
        )

    def add_found(self, seen: int, inserted: int) -> None:
        self._controller._mutate(
            self.job_id,
            lambda job: replace(
                job,
                mappings_found_this_session=job.mappings_found_this_session + max(0, int(seen)),
                mappings_found_total=job.mappings_found_total + max(0, int(inserted)),
            ),
        )


class ScanJobController:
    """
    Runs at most one depot scan at a time. ``start``, ``cancel`` and
    ``get_snapshot`` only touch the active-job slot and the broadcaster;
    all Steam and snapshot traffic happens on the job's worker thread.
    """

    def __init__(
        self,
        store: MappingStore,
        applier: MappingApplier,
        broadcaster: ProgressBroadcaster,
        *,
        strategy_factory: StrategyFactory = default_strategy_factory,
        probe: Optional[ChangeNumberProbe] = None,
        gap_threshold: int = DEPOT_GAP_THRESHOLD,
    ):
        self.store = store
        self.applier = applier
        self.broadcaster = broadcaster
        self.strategy_factory = strategy_factory
        self.probe = probe or ChangeNumberProbe()
        self.gap_threshold = gap_threshold
        self._slot_lock = threading.Lock()
        self._job_lock = threading.Lock()
        self._active: Optional[_ActiveJob] = None

    # queries

    def get_snapshot(self) -> ScanJob:
        return self.broadcaster.snapshot()

    def is_busy(self) -> bool:
        with self._slot_lock:
            return self._active is not None

    def check_viability(self, last_change_number: Optional[int] = None, refresh: bool = False) -> Optional[GapDecision]:
        """
        Gap decision for an incremental run. Returns None when Steam's current
        change number cannot be read right now.
        """
        last = self.store.get_last_change_number() if last_change_number is None else last_change_number
        if not last or last <= 0:
            return evaluate(0, 0, self.gap_threshold)
        try:
            current = self.probe.current(refresh=refresh)
        except _PROBE_ERRORS as exc:
            logger.warning("Could not read the current Steam change number: %s", exc)
            return None
        return evaluate(last, current, self.gap_threshold)

    # commands

    def start(
        self,
        mode: ScanMode,
        auth_mode: AuthMode = AuthMode.ANONYMOUS,
        force_full: bool = False,
    ) -> StartResult:
        mode = ScanMode(mode)
        auth_mode = AuthMode(auth_mode)
        if mode in (ScanMode.SNAPSHOT_IMPORT, ScanMode.LOCAL_IMPORT):
            auth_mode = AuthMode.ANONYMOUS
        if mode == ScanMode.INCREMENTAL and force_full:
            mode = ScanMode.FULL

        if self.is_busy():
            logger.info("Scan request (%s) ignored: another scan is running", mode.value)
            return StartResult.busy()

        last = self.store.get_last_change_number()
        decision: Optional[GapDecision] = None
        if mode == ScanMode.INCREMENTAL:
            decision = self.check_viability(last)
            if decision is not None and not decision.allow_incremental:
                logger.info(
                    "Incremental scan not started: change gap %s exceeds %s (about %s apps)",
                    decision.gap,
                    decision.threshold,
                    decision.estimated_affected_apps,
                )
                return StartResult.rejected(decision)

        total_mappings = self.store.count()

        with self._slot_lock:
            if self._active is not None:
                logger.info("Scan request (%s) ignored: another scan is running", mode.value)
                return StartResult.busy()
            job_id = uuid.uuid4().hex
            handle = JobHandle(job_id, mode)
            cancel_event = threading.Event()
            self._active = _ActiveJob(job_id=job_id, cancel_event=cancel_event, handle=handle)
            job = ScanJob(
                id=job_id,
                mode=mode,
                auth_mode=auth_mode,
                status=ScanStatus.STARTING,
                started_at=datetime.utcnow(),
                mappings_found_total=total_mappings,
                last_change_number=last,
                current_change_number=decision.current_change_number if decision else 0,
                message=f"Starting {mode.value} scan",
            )
            with self._job_lock:
                self.broadcaster.publish(job, kind="Started")

        context = _WorkerContext(self, job_id, cancel_event)
        worker = threading.Thread(
            target=self._run,
            args=(mode, auth_mode, context, handle),
            name=f"depot-scan-{job_id[:8]}",
            daemon=True,
        )
        worker.start()
        logger.info("Started %s scan %s (auth=%s)", mode.value, job_id, auth_mode.value)
        return StartResult.running(handle, decision)

    def cancel(self) -> bool:
        with self._slot_lock:
            active = self._active
            if active is None:
                return False
            active.cancel_event.set()
        self._mutate(
            active.job_id,
            lambda job: replace(job, cancel_requested=True, message="Cancellation requested"),
        )
        logger.info("Cancellation requested for scan %s", active.job_id)
        return True

    def acknowledge(self) -> bool:
        """Return a finished job's snapshot to Idle."""
        last = self.store.get_last_change_number()
        with self._job_lock:
            job = self.broadcaster.snapshot()
            if not job.is_terminal:
                return False
            self.broadcaster.publish(
                idle_job(
                    mappings_found_total=job.mappings_found_total,
                    last_change_number=last,
                ),
                kind="Progress",
            )
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._slot_lock:
            active = self._active
        return True if active is None else active.handle.wait(timeout)

    # worker

    def _mutate(self, job_id: str, change: Callable[[ScanJob], ScanJob]) -> None:
        with self._job_lock:
            job = self.broadcaster.snapshot()
            if job.id != job_id or job.is_terminal:
                return
            updated = change(job)
            if updated != job:
                self.broadcaster.publish(updated)

    def _refresh_baseline(self, ctx: _WorkerContext) -> int:
        # Another job may have finished between start()'s reads and the slot claim.
        last = self.store.get_last_change_number()
        total = self.store.count()
        ctx.rebase(last, total)
        return last

    def _run(self, mode: ScanMode, auth_mode: AuthMode, ctx: _WorkerContext, handle: JobHandle) -> None:
        status = ScanStatus.ERROR
        detail: Optional[str] = None
        strategy: Optional[AcquisitionStrategy] = None
        try:
            last = self._refresh_baseline(ctx)
            strategy = self.strategy_factory(mode, auth_mode, last)
            strategy.connect(ctx)
            ctx.check_cancelled()
            for batch in strategy.batches(ctx):
                ctx.check_cancelled()
                applied = self.applier.apply(batch)
                ctx.add_found(applied.mappings, applied.new_mappings)

            ctx.check_cancelled()
            ctx.set_status(ScanStatus.APPLYING, "Re-tagging downloads")
            self.applier.apply_all_unresolved()
            self.store.record_successful_run(strategy.current_change_number)
            self.probe.prime(strategy.current_change_number)
            status = ScanStatus.COMPLETE
        except ScanCancelled:
            status = ScanStatus.CANCELLED
            logger.info("Scan %s cancelled", ctx.job_id)
        except Exception as exc:
            if ctx.cancel_event.is_set():
                status = ScanStatus.CANCELLED
                logger.info("Scan %s cancelled during %s", ctx.job_id, type(exc).__name__)
            else:
                detail = str(exc) or type(exc).__name__
                logger.exception("Scan %s failed", ctx.job_id)
        finally:
            change_number = 0
            if strategy is not None:
                self._close_strategy(strategy, ctx.job_id)
                change_number = strategy.current_change_number
            self._finish(ctx.job_id, status, detail, change_number)
            handle.mark_done()

    @staticmethod
    def _close_strategy(strategy: AcquisitionStrategy, job_id: str) -> None:
        try:
            strategy.close()
        except Exception:
            logger.warning("Scan %s: closing the strategy failed", job_id, exc_info=True)

    def _finish(self, job_id: str, status: ScanStatus, detail: Optional[str], change_number: int) -> None:
        messages = {
            ScanStatus.COMPLETE: "Depot mappings are up to date",
            ScanStatus.CANCELLED: "Scan cancelled",
            ScanStatus.ERROR: "Scan failed",
        }
        with self._slot_lock:
            with self._job_lock:
                job = self.broadcaster.snapshot()
                if job.id == job_id and not job.is_terminal:
                    values = {
                        "status": status,
                        "finished_at": datetime.utcnow(),
                        "error_detail": detail,
                        "is_connected": False,
                        "is_logged_on": False,
                        "message": messages[status],
                    }
                    if status == ScanStatus.COMPLETE and change_number:
                        values["last_change_number"] = int(change_number)
                        values["current_change_number"] = int(change_number)
                    self.broadcaster.publish(replace(job, **values), kind="Complete")
            if self._active is not None and self._active.job_id == job_id:
                self._active = None
        logger.info("Scan %s finished: %s", job_id, status.value)
