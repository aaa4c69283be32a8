from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
import logging
import threading
import time

from ..core.config import DEPOT_BACKFILL_INTERVAL_SECONDS, DEPOT_SCHEDULER_TICK_SECONDS
from .mapping_applier import MappingApplier
from .mapping_store import EngineSettings, MappingStore
from .progress import ScanMode
from .scan_controller import ScanJobController, StartResult

logger = logging.getLogger(__name__)

_MODE_BY_SETTING = {
    "incremental": ScanMode.INCREMENTAL,
    "full": ScanMode.FULL,
    "github": ScanMode.SNAPSHOT_IMPORT,
}


def seconds_until_next_crawl(settings: EngineSettings, now: datetime) -> int:
    if settings.crawl_interval_hours <= 0 or settings.last_crawl_at is None:
        return 0
    elapsed = (now - settings.last_crawl_at).total_seconds()
    remaining = settings.crawl_interval_hours * 3600.0 - elapsed
    return max(0, int(remaining))


class CrawlScheduler:
    """
    Starts a scan in the configured crawl mode whenever the crawl interval
    has passed since the last successful run. An incremental run refused by
    the gap policy is not retried until a manual scan completes.

    Between scans it also re-tags downloads the ingestion pipeline wrote
    after their depot was mapped.
    """

    def __init__(
        self,
        controller: ScanJobController,
        store: MappingStore,
        *,
        applier: Optional[MappingApplier] = None,
        tick_seconds: float = DEPOT_SCHEDULER_TICK_SECONDS,
        backfill_seconds: float = DEPOT_BACKFILL_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.controller = controller
        self.store = store
        self.applier = applier
        self.tick_seconds = max(1.0, float(tick_seconds))
        self.backfill_seconds = max(0.0, float(backfill_seconds))
        self.clock = clock
        self.monotonic = monotonic
        self.automatic_scan_skipped = False
        self._skipped_at: Optional[datetime] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def _backfill_enabled(self) -> bool:
        return self.applier is not None and self.backfill_seconds > 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="depot-crawl-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "Crawl scheduler started (tick=%ss, backfill=%ss)",
            self.tick_seconds,
            self.backfill_seconds if self._backfill_enabled else "off",
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        wait = min(self.tick_seconds, self.backfill_seconds) if self._backfill_enabled else self.tick_seconds
        next_tick = self.monotonic() + self.tick_seconds
        next_backfill = self.monotonic() + self.backfill_seconds
        while not self._stop.wait(wait):
            now = self.monotonic()
            if self._backfill_enabled and now >= next_backfill:
                next_backfill = now + self.backfill_seconds
                self._guarded(self.backfill, "Depot mapping backfill")
            if now >= next_tick:
                next_tick = now + self.tick_seconds
                self._guarded(self.tick, "Crawl scheduler tick")

    @staticmethod
    def _guarded(action: Callable[[], object], label: str) -> None:
        try:
            action()
        except Exception:
            logger.exception("%s failed", label)

    def next_crawl_in(self) -> int:
        return seconds_until_next_crawl(self.store.load_settings(), self.clock())

    def clear_skip(self) -> None:
        self.automatic_scan_skipped = False
        self._skipped_at = None

    def backfill(self) -> int:
        """Re-tag unresolved downloads from stored mappings while no scan is running."""
        if self.applier is None or self.controller.is_busy():
            return 0
        return self.applier.apply_all_unresolved()

    def tick(self) -> Optional[StartResult]:
        settings = self.store.load_settings()
        now = self.clock()

        if self.automatic_scan_skipped:
            if settings.last_crawl_at and self._skipped_at and settings.last_crawl_at > self._skipped_at:
                self.clear_skip()
            else:
                return None
        if settings.crawl_interval_hours <= 0:
            return None
        if settings.last_crawl_at is not None and seconds_until_next_crawl(settings, now) > 0:
            return None
        if self.controller.is_busy():
            return None

        mode = _MODE_BY_SETTING.get(settings.crawl_mode, ScanMode.INCREMENTAL)
        logger.info("Scheduled %s crawl is due", mode.value)
        result = self.controller.start(mode)
        if result.gap_exceeded:
            self.automatic_scan_skipped = True
            self._skipped_at = now
            logger.info(
                "Scheduled incremental crawl skipped: change gap %s needs a full scan or snapshot import",
                result.decision.gap if result.decision else "unknown",
            )
        return result
