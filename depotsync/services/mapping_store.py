from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import DEPOT_CRAWL_INTERVAL_HOURS, DEPOT_CRAWL_MODE
from ..models import CatalogState, DepotMapping

logger = logging.getLogger(__name__)

LAST_CHANGE_NUMBER_KEY = "last_change_number"
LAST_CRAWL_AT_KEY = "last_crawl_at"
CRAWL_INTERVAL_KEY = "crawl_interval_hours"
CRAWL_MODE_KEY = "crawl_mode"

CRAWL_MODES = ("incremental", "full", "github")
_IN_CLAUSE_CHUNK = 500


@dataclass(frozen=True)
class DepotMappingRecord:
    depot_id: int
    app_id: int
    game_name: str
    observed_at: datetime
    source: str = "pics"


@dataclass(frozen=True)
class EngineSettings:
    crawl_interval_hours: float = DEPOT_CRAWL_INTERVAL_HOURS
    crawl_mode: str = DEPOT_CRAWL_MODE
    last_crawl_at: Optional[datetime] = None


def normalize_crawl_mode(value: Optional[str]) -> str:
    mode = str(value or "").strip().lower()
    return mode if mode in CRAWL_MODES else "incremental"


def chunked(values: List[int], size: int = _IN_CLAUSE_CHUNK) -> Iterable[List[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


class MappingStore:
    """
    Durable depot -> game table plus the small key/value state the engine
    keeps across restarts (last change number, schedule settings).
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def session(self) -> Session:
        return self._session_factory()

    # depot mappings

    def count(self) -> int:
        with self._session_factory() as db:
            return int(db.query(func.count(DepotMapping.depot_id)).scalar() or 0)

    def get(self, depot_id: int) -> Optional[DepotMappingRecord]:
        with self._session_factory() as db:
            row = db.query(DepotMapping).filter(DepotMapping.depot_id == int(depot_id)).first()
            return _to_record(row) if row else None

    def list_for_app(self, app_id: int) -> List[DepotMappingRecord]:
        with self._session_factory() as db:
            rows = (
                db.query(DepotMapping)
                .filter(DepotMapping.app_id == int(app_id))
                .order_by(DepotMapping.depot_id)
                .all()
            )
            return [_to_record(row) for row in rows]

    def upsert_many(self, db: Session, mappings: List[DepotMappingRecord]) -> Tuple[int, int]:
        """
        Upsert inside the caller's transaction; a later entry for the same
        depot wins. Returns (upserted, newly_inserted).
        """
        latest: Dict[int, DepotMappingRecord] = {}
        for mapping in mappings:
            latest[int(mapping.depot_id)] = mapping
        if not latest:
            return 0, 0

        ids = list(latest.keys())
        existing: Dict[int, DepotMapping] = {}
        for chunk in chunked(ids):
            for row in db.query(DepotMapping).filter(DepotMapping.depot_id.in_(chunk)).all():
                existing[int(row.depot_id)] = row

        now = datetime.utcnow()
        inserted = 0
        for depot_id, mapping in latest.items():
            row = existing.get(depot_id)
            if row:
                row.app_id = int(mapping.app_id)
                row.game_name = mapping.game_name
                row.source = mapping.source
                row.observed_at = mapping.observed_at or now
                row.updated_at = now
            else:
                db.add(
                    DepotMapping(
                        depot_id=depot_id,
                        app_id=int(mapping.app_id),
                        game_name=mapping.game_name,
                        source=mapping.source,
                        observed_at=mapping.observed_at or now,
                        created_at=now,
                        updated_at=now,
                    )
                )
                inserted += 1
        db.flush()
        return len(latest), inserted

    # catalog state

    def get_last_change_number(self) -> int:
        raw = self._get_value(LAST_CHANGE_NUMBER_KEY)
        try:
            return max(0, int(raw or 0))
        except (TypeError, ValueError):
            return 0

    def record_successful_run(self, change_number: int, finished_at: Optional[datetime] = None) -> None:
        """
        Persist the outcome of a completed job in one transaction. A zero
        change number leaves the stored one untouched.
        """
        finished = finished_at or datetime.utcnow()
        with self._session_factory() as db:
            with db.begin():
                if change_number and int(change_number) > 0:
                    self._set_value(db, LAST_CHANGE_NUMBER_KEY, str(int(change_number)))
                self._set_value(db, LAST_CRAWL_AT_KEY, finished.isoformat())
        logger.info("Catalog state saved (change_number=%s, finished_at=%s)", change_number, finished.isoformat())

    def load_settings(self) -> EngineSettings:
        with self._session_factory() as db:
            rows = {
                row.state_key: row.state_value
                for row in db.query(CatalogState)
                .filter(CatalogState.state_key.in_([CRAWL_INTERVAL_KEY, CRAWL_MODE_KEY, LAST_CRAWL_AT_KEY]))
                .all()
            }
        settings = EngineSettings()
        interval_raw = rows.get(CRAWL_INTERVAL_KEY)
        if interval_raw not in (None, ""):
            try:
                settings = replace(settings, crawl_interval_hours=max(0.0, float(interval_raw)))
            except ValueError:
                logger.warning("Ignoring invalid stored crawl interval %r", interval_raw)
        if rows.get(CRAWL_MODE_KEY):
            settings = replace(settings, crawl_mode=normalize_crawl_mode(rows[CRAWL_MODE_KEY]))
        else:
            settings = replace(settings, crawl_mode=normalize_crawl_mode(settings.crawl_mode))
        return replace(settings, last_crawl_at=_parse_datetime(rows.get(LAST_CRAWL_AT_KEY)))

    def save_settings(self, crawl_interval_hours: float, crawl_mode: str) -> EngineSettings:
        interval = max(0.0, float(crawl_interval_hours))
        mode = normalize_crawl_mode(crawl_mode)
        with self._session_factory() as db:
            with db.begin():
                self._set_value(db, CRAWL_INTERVAL_KEY, str(interval))
                self._set_value(db, CRAWL_MODE_KEY, mode)
        return self.load_settings()

    def _get_value(self, key: str) -> Optional[str]:
        with self._session_factory() as db:
            row = db.query(CatalogState).filter(CatalogState.state_key == key).first()
            return row.state_value if row else None

    def _set_value(self, db: Session, key: str, value: str) -> None:
        row = db.query(CatalogState).filter(CatalogState.state_key == key).first()
        if row is None:
            db.add(CatalogState(state_key=key, state_value=value))
        else:
            row.state_value = value
            row.updated_at = datetime.utcnow()


def _to_record(row: DepotMapping) -> DepotMappingRecord:
    return DepotMappingRecord(
        depot_id=int(row.depot_id),
        app_id=int(row.app_id),
        game_name=row.game_name,
        observed_at=row.observed_at,
        source=row.source or "pics",
    )
