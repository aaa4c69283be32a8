from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Optional, Tuple
import json
import logging

import requests

from ..core.config import (
    DEPOT_SNAPSHOT_BATCH_SIZE,
    DEPOT_SNAPSHOT_MIN_MAPPINGS,
    DEPOT_SNAPSHOT_PATH,
    DEPOT_SNAPSHOT_TIMEOUT_SECONDS,
    DEPOT_SNAPSHOT_URL,
)
from ..core.retry import RetryPolicy, call_with_retry
from .acquisition import AcquisitionStrategy, JobContext, MappingBatch, chunk_batches
from .errors import CorruptSnapshotError, NetworkError
from .mapping_store import DepotMappingRecord
from .progress import ScanMode, ScanStatus

logger = logging.getLogger(__name__)

_USER_AGENT = "depotsync/1.0"


def _positive_int(value: Any) -> Optional[int]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _parse_timestamp(raw: Any, fallback: datetime) -> datetime:
    if not raw or not isinstance(raw, str):
        return fallback
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _entry_to_record(depot_key: str, entry: Any, fallback: datetime) -> Optional[DepotMappingRecord]:
    depot_id = _positive_int(depot_key)
    if depot_id is None or not isinstance(entry, dict):
        return None

    raw_ids = entry.get("appIds") or []
    app_ids = [app_id for app_id in (_positive_int(v) for v in raw_ids) if app_id]
    owner = _positive_int(entry.get("ownerId")) or (app_ids[0] if app_ids else None)
    if owner is None:
        return None

    names = entry.get("appNames") or []
    name = ""
    if len(names) == len(raw_ids):
        for raw_id, candidate in zip(raw_ids, names):
            if _positive_int(raw_id) == owner:
                name = str(candidate or "")
                break
    if not name and names:
        name = str(names[0] or "")
    name = name.strip() or f"App {owner}"

    return DepotMappingRecord(
        depot_id=depot_id,
        app_id=owner,
        game_name=name,
        observed_at=_parse_timestamp(entry.get("discoveredAt"), fallback),
        source="snapshot",
    )


def parse_snapshot(
    body: Any,
    min_mappings: int = DEPOT_SNAPSHOT_MIN_MAPPINGS,
    observed_at: Optional[datetime] = None,
) -> Tuple[List[DepotMappingRecord], int]:
    """
    Validate a ``pics_depot_mappings.json`` body and return
    (mappings, last_change_number). Raises CorruptSnapshotError on anything
    that is not a complete snapshot.
    """
    if body is None or (isinstance(body, (bytes, str)) and not body.strip()):
        raise CorruptSnapshotError("Snapshot download was empty")
    try:
        payload = json.loads(body) if isinstance(body, (bytes, str)) else body
    except ValueError as exc:
        raise CorruptSnapshotError(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CorruptSnapshotError("Snapshot root is not an object")

    depot_mappings = payload.get("depotMappings")
    if not isinstance(depot_mappings, dict):
        raise CorruptSnapshotError("Snapshot has no depotMappings object")

    fallback = observed_at or datetime.utcnow()
    records: List[DepotMappingRecord] = []
    skipped = 0
    for depot_key, entry in depot_mappings.items():
        record = _entry_to_record(depot_key, entry, fallback)
        if record is None:
            skipped += 1
            continue
        records.append(record)

    if len(records) < max(0, int(min_mappings)):
        raise CorruptSnapshotError(
            f"Snapshot holds {len(records)} usable mappings, expected at least {min_mappings}"
        )
    if skipped:
        logger.warning("Skipped %s malformed snapshot entries", skipped)

    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    change_number = _positive_int(metadata.get("lastChangeNumber")) or 0
    return records, change_number


class SnapshotImport(AcquisitionStrategy):
    """Bulk import of the published depot mapping snapshot. No Steam login."""

    mode = ScanMode.SNAPSHOT_IMPORT

    def __init__(
        self,
        url: str = DEPOT_SNAPSHOT_URL,
        *,
        http: Any = None,
        timeout: float = DEPOT_SNAPSHOT_TIMEOUT_SECONDS,
        min_mappings: int = DEPOT_SNAPSHOT_MIN_MAPPINGS,
        batch_size: int = DEPOT_SNAPSHOT_BATCH_SIZE,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__()
        self.url = url
        self.http = http or requests
        self.timeout = timeout
        self.min_mappings = min_mappings
        self.batch_size = max(1, int(batch_size))
        self.retry_policy = retry_policy or RetryPolicy()
        self._mappings: List[DepotMappingRecord] = []

    def _download(self) -> bytes:
        response = self.http.get(self.url, timeout=self.timeout, headers={"User-Agent": _USER_AGENT})
        response.raise_for_status()
        return response.content

    def _load_body(self, ctx: JobContext) -> bytes:
        ctx.set_status(ScanStatus.CONNECTING, "Downloading depot mapping snapshot")
        try:
            return call_with_retry(
                self._download,
                policy=self.retry_policy,
                retry_on=(requests.RequestException,),
                label="snapshot download",
                cancel_event=ctx.cancel_event,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"Snapshot download failed: {exc}") from exc

    def connect(self, ctx: JobContext) -> None:
        body = self._load_body(ctx)
        ctx.check_cancelled()

        self._mappings, self.current_change_number = parse_snapshot(body, self.min_mappings)
        ctx.report(current_change_number=self.current_change_number, total_apps=len(self._mappings))
        logger.info(
            "Snapshot validated: %s mappings, change number %s",
            len(self._mappings),
            self.current_change_number or "unknown",
        )

    def batches(self, ctx: JobContext) -> Iterator[MappingBatch]:
        ctx.set_status(ScanStatus.CRAWLING, "Importing depot mapping snapshot")

        def produce(chunk: List[DepotMappingRecord]) -> MappingBatch:
            return MappingBatch(mappings=list(chunk))

        yield from chunk_batches(ctx, self._mappings, self.batch_size, produce, self.mode.value)


class LocalSnapshotImport(SnapshotImport):
    """Same file format, read from disk instead of downloaded."""

    mode = ScanMode.LOCAL_IMPORT

    def __init__(
        self,
        path: str = DEPOT_SNAPSHOT_PATH,
        *,
        min_mappings: int = 1,
        batch_size: int = DEPOT_SNAPSHOT_BATCH_SIZE,
    ):
        super().__init__(url="", min_mappings=min_mappings, batch_size=batch_size)
        self.path = Path(path)

    def _load_body(self, ctx: JobContext) -> bytes:
        ctx.set_status(ScanStatus.CONNECTING, f"Reading {self.path.name}")
        try:
            return self.path.read_bytes()
        except FileNotFoundError as exc:
            raise CorruptSnapshotError(f"Snapshot file not found: {self.path}") from exc
        except OSError as exc:
            raise CorruptSnapshotError(f"Snapshot file could not be read: {exc}") from exc
