from typing import Optional
from pydantic import BaseModel, Field, field_validator

from .services.mapping_store import CRAWL_MODES


class RebuildRequest(BaseModel):
    incremental: bool = True
    auth_mode: str = Field("anonymous", alias="authMode")
    force_full: bool = Field(False, alias="forceFull")

    @field_validator("auth_mode")
    @classmethod
    def auth_mode_known(cls, value: str) -> str:
        cleaned = str(value or "anonymous").strip().lower()
        if cleaned not in ("anonymous", "account"):
            raise ValueError("must be 'anonymous' or 'account'")
        return cleaned

    class Config:
        populate_by_name = True


class RebuildOut(BaseModel):
    started: bool
    requiresFullScan: bool = False
    rebuildInProgress: bool = False
    changeGap: int = 0
    estimatedApps: int = 0
    jobId: Optional[str] = None
    scanMode: Optional[str] = None
    message: str = ""


class CancelOut(BaseModel):
    cancelled: bool


class AcknowledgeOut(BaseModel):
    acknowledged: bool


class ApplyMappingsOut(BaseModel):
    updated: int


class ScheduleUpdate(BaseModel):
    interval_hours: float = Field(alias="intervalHours", ge=0)
    mode: str = "incremental"

    @field_validator("mode")
    @classmethod
    def mode_known(cls, value: str) -> str:
        cleaned = str(value or "").strip().lower()
        if cleaned not in CRAWL_MODES:
            raise ValueError(f"must be one of {', '.join(CRAWL_MODES)}")
        return cleaned

    class Config:
        populate_by_name = True


class ScheduleOut(BaseModel):
    intervalHours: float
    mode: str
    nextCrawlIn: int
    lastCrawlAt: Optional[str] = None
    automaticScanSkipped: bool = False


class DepotMappingOut(BaseModel):
    depotId: int
    appId: int
    gameName: str
    observedAt: Optional[str] = None
    source: str = "pics"
