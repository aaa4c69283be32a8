import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import DepotMapping
from ..schemas import (
    AcknowledgeOut,
    ApplyMappingsOut,
    CancelOut,
    DepotMappingOut,
    RebuildOut,
    RebuildRequest,
    ScheduleOut,
    ScheduleUpdate,
)
from ..services.container import DepotServices
from ..services.progress import AuthMode, ScanMode
from .deps import get_services

logger = logging.getLogger(__name__)
router = APIRouter()

_BUSY_DETAIL = "A depot mapping scan is already running"


def _schedule_out(services: DepotServices) -> ScheduleOut:
    settings = services.store.load_settings()
    return ScheduleOut(
        intervalHours=settings.crawl_interval_hours,
        mode=settings.crawl_mode,
        nextCrawlIn=services.scheduler.next_crawl_in(),
        lastCrawlAt=settings.last_crawl_at.isoformat() if settings.last_crawl_at else None,
        automaticScanSkipped=services.scheduler.automatic_scan_skipped,
    )


@router.get("/progress")
def get_progress(services: DepotServices = Depends(get_services)):
    return services.progress_payload()


def _busy_out() -> RebuildOut:
    return RebuildOut(started=False, requiresFullScan=False, rebuildInProgress=True, message=_BUSY_DETAIL)


def _import_started(services: DepotServices, mode: ScanMode, message: str) -> RebuildOut:
    result = services.controller.start(mode)
    if result.is_busy:
        return _busy_out()
    services.scheduler.clear_skip()
    return RebuildOut(
        started=True,
        jobId=result.handle.job_id,
        scanMode=mode.value,
        message=message,
    )


@router.post("/rebuild", response_model=RebuildOut)
def rebuild(payload: RebuildRequest, services: DepotServices = Depends(get_services)):
    mode = ScanMode.INCREMENTAL if payload.incremental else ScanMode.FULL
    result = services.controller.start(mode, AuthMode(payload.auth_mode), payload.force_full)
    if result.is_busy:
        return _busy_out()

    decision = result.decision
    if result.gap_exceeded:
        return RebuildOut(
            started=False,
            requiresFullScan=True,
            changeGap=decision.gap,
            estimatedApps=decision.estimated_affected_apps,
            message=(
                f"Steam is {decision.gap} changes ahead of the stored change number; "
                "run a full scan or download the pre-created mappings instead"
            ),
        )

    services.scheduler.clear_skip()
    return RebuildOut(
        started=True,
        changeGap=decision.gap if decision else 0,
        estimatedApps=decision.estimated_affected_apps if decision else 0,
        jobId=result.handle.job_id,
        scanMode=result.handle.mode.value,
        message=f"{result.handle.mode.value.capitalize()} scan started",
    )


@router.post("/download-precreated", response_model=RebuildOut)
def download_precreated(services: DepotServices = Depends(get_services)):
    return _import_started(services, ScanMode.SNAPSHOT_IMPORT, "Downloading pre-created depot mappings")


@router.post("/import", response_model=RebuildOut)
def import_mappings(
    source: str = Query("github"),
    services: DepotServices = Depends(get_services),
):
    cleaned = (source or "").strip().lower()
    if cleaned == "github":
        return _import_started(services, ScanMode.SNAPSHOT_IMPORT, "Downloading pre-created depot mappings")
    if cleaned == "local":
        return _import_started(services, ScanMode.LOCAL_IMPORT, "Importing depot mappings from the local snapshot file")
    raise HTTPException(status_code=400, detail="Invalid source. Must be 'github' or 'local'")


@router.post("/cancel", response_model=CancelOut)
def cancel(services: DepotServices = Depends(get_services)):
    return CancelOut(cancelled=services.controller.cancel())


@router.post("/acknowledge", response_model=AcknowledgeOut)
def acknowledge(services: DepotServices = Depends(get_services)):
    return AcknowledgeOut(acknowledged=services.controller.acknowledge())


@router.get("/viability")
def viability(
    refresh: bool = Query(False),
    services: DepotServices = Depends(get_services),
):
    decision = services.controller.check_viability(refresh=refresh)
    if decision is None:
        raise HTTPException(status_code=503, detail="Steam change number is unavailable")
    payload = decision.to_dict()
    payload["requiresFullScan"] = not decision.allow_incremental
    return payload


@router.get("/status")
def status(services: DepotServices = Depends(get_services)):
    settings = services.store.load_settings()
    job = services.controller.get_snapshot()
    return {
        "totalMappings": services.store.count(),
        "lastChangeNumber": services.store.get_last_change_number(),
        "lastCrawlAt": settings.last_crawl_at.isoformat() if settings.last_crawl_at else None,
        "crawlIntervalHours": settings.crawl_interval_hours,
        "crawlMode": settings.crawl_mode,
        "nextCrawlIn": services.scheduler.next_crawl_in(),
        "automaticScanSkipped": services.scheduler.automatic_scan_skipped,
        "isRunning": job.is_running,
        "status": job.status.value,
    }


@router.get("/schedule", response_model=ScheduleOut)
def get_schedule(services: DepotServices = Depends(get_services)):
    return _schedule_out(services)


@router.put("/schedule", response_model=ScheduleOut)
def update_schedule(payload: ScheduleUpdate, services: DepotServices = Depends(get_services)):
    services.store.save_settings(payload.interval_hours, payload.mode)
    logger.info("Crawl schedule updated: every %sh, mode=%s", payload.interval_hours, payload.mode)
    return _schedule_out(services)


@router.get("/mappings/{depot_id}", response_model=DepotMappingOut)
def get_mapping(depot_id: int, db: Session = Depends(get_db)):
    row = db.query(DepotMapping).filter(DepotMapping.depot_id == depot_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Depot mapping not found")
    return DepotMappingOut(
        depotId=int(row.depot_id),
        appId=int(row.app_id),
        gameName=row.game_name,
        observedAt=row.observed_at.isoformat() if row.observed_at else None,
        source=row.source or "pics",
    )


@router.post("/apply-mappings", response_model=ApplyMappingsOut)
def apply_mappings(services: DepotServices = Depends(get_services)):
    return ApplyMappingsOut(updated=services.applier.apply_all_unresolved())
