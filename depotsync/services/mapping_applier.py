from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import DepotMapping, DownloadRecord
from .mapping_store import DepotMappingRecord, MappingStore, chunked

if TYPE_CHECKING:
    from .acquisition import MappingBatch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedCount:
    mappings: int = 0
    new_mappings: int = 0
    downloads_tagged: int = 0


def _unresolved_filter():
    return or_(DownloadRecord.game_name.is_(None), DownloadRecord.game_name == "")


def _retag(db: Session, mappings: Dict[int, DepotMappingRecord]) -> int:
    """
    Tag download rows that are still unresolved right now. The ingestion
    pipeline keeps inserting rows, so the candidates are queried inside the
    current transaction instead of being taken from an earlier read.
    """
    if not mappings:
        return 0
    pending: List[int] = []
    for chunk in chunked(list(mappings.keys())):
        rows = (
            db.query(DownloadRecord.depot_id)
            .filter(DownloadRecord.depot_id.in_(chunk), _unresolved_filter())
            .distinct()
            .all()
        )
        pending.extend(int(row[0]) for row in rows)

    updated = 0
    for depot_id in pending:
        mapping = mappings[depot_id]
        updated += (
            db.query(DownloadRecord)
            .filter(DownloadRecord.depot_id == depot_id, _unresolved_filter())
            .update(
                {
                    DownloadRecord.game_name: mapping.game_name,
                    DownloadRecord.game_app_id: int(mapping.app_id),
                },
                synchronize_session=False,
            )
        )
    return updated


class MappingApplier:
    def __init__(self, store: MappingStore):
        self.store = store

    def apply(self, batch: "MappingBatch") -> AppliedCount:
        """Upsert one batch and re-tag its downloads in a single transaction."""
        latest: Dict[int, DepotMappingRecord] = {}
        for mapping in batch.mappings:
            latest[int(mapping.depot_id)] = mapping
        if not latest:
            return AppliedCount()

        with self.store.session() as db:
            with db.begin():
                upserted, inserted = self.store.upsert_many(db, list(latest.values()))
                tagged = _retag(db, latest)

        logger.debug(
            "Applied batch %s: %s mappings (%s new), %s downloads tagged",
            batch.batch_index,
            upserted,
            inserted,
            tagged,
        )
        return AppliedCount(mappings=upserted, new_mappings=inserted, downloads_tagged=tagged)

    def apply_all_unresolved(self) -> int:
        """Re-tag every unresolved download whose depot is already mapped."""
        with self.store.session() as db:
            depot_ids = [
                int(row[0])
                for row in db.query(DownloadRecord.depot_id)
                .filter(DownloadRecord.depot_id.isnot(None), _unresolved_filter())
                .distinct()
                .all()
            ]

        updated = 0
        for chunk in chunked(depot_ids):
            with self.store.session() as db:
                with db.begin():
                    known = {
                        int(row.depot_id): DepotMappingRecord(
                            depot_id=int(row.depot_id),
                            app_id=int(row.app_id),
                            game_name=row.game_name,
                            observed_at=row.observed_at,
                            source=row.source or "pics",
                        )
                        for row in db.query(DepotMapping).filter(DepotMapping.depot_id.in_(chunk)).all()
                    }
                    updated += _retag(db, known)

        if updated:
            logger.info("Re-tagged %s downloads from stored depot mappings", updated)
        return updated
