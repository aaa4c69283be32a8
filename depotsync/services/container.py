from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import DEPOT_BACKFILL_INTERVAL_SECONDS, DEPOT_GAP_THRESHOLD, DEPOT_SCHEDULER_TICK_SECONDS
from .mapping_applier import MappingApplier
from .mapping_store import MappingStore
from .progress import ProgressBroadcaster, idle_job, render_progress
from .scan_controller import ChangeNumberProbe, ScanJobController, StrategyFactory, default_strategy_factory
from .scheduler import CrawlScheduler


@dataclass
class DepotServices:
    store: MappingStore
    applier: MappingApplier
    broadcaster: ProgressBroadcaster
    controller: ScanJobController
    scheduler: CrawlScheduler

    def progress_payload(self) -> Dict[str, Any]:
        return render_progress(
            self.controller.get_snapshot(),
            self.scheduler.next_crawl_in(),
            self.store.count(),
        )


def build_services(
    session_factory: Callable[[], Session],
    *,
    strategy_factory: StrategyFactory = default_strategy_factory,
    probe: Optional[ChangeNumberProbe] = None,
    gap_threshold: int = DEPOT_GAP_THRESHOLD,
    tick_seconds: float = DEPOT_SCHEDULER_TICK_SECONDS,
    backfill_seconds: float = DEPOT_BACKFILL_INTERVAL_SECONDS,
) -> DepotServices:
    store = MappingStore(session_factory)
    applier = MappingApplier(store)
    broadcaster = ProgressBroadcaster(
        idle_job(mappings_found_total=store.count(), last_change_number=store.get_last_change_number())
    )
    controller = ScanJobController(
        store,
        applier,
        broadcaster,
        strategy_factory=strategy_factory,
        probe=probe,
        gap_threshold=gap_threshold,
    )
    scheduler = CrawlScheduler(
        controller,
        store,
        applier=applier,
        tick_seconds=tick_seconds,
        backfill_seconds=backfill_seconds,
    )
    return DepotServices(
        store=store,
        applier=applier,
        broadcaster=broadcaster,
        controller=controller,
        scheduler=scheduler,
    )
