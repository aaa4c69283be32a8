from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import logging

from ..core.config import (
    DEPOT_APPS_PER_CHANGE,
    DEPOT_FULL_CATALOG_APPS,
    DEPOT_GAP_THRESHOLD,
)

logger = logging.getLogger("gap_policy")


@dataclass(frozen=True)
class GapDecision:
    allow_incremental: bool
    gap: int
    estimated_affected_apps: int
    last_change_number: int
    current_change_number: int
    threshold: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowIncremental": self.allow_incremental,
            "changeGap": self.gap,
            "estimatedApps": self.estimated_affected_apps,
            "lastChangeNumber": self.last_change_number,
            "currentChangeNumber": self.current_change_number,
            "threshold": self.threshold,
        }


def _safe_change_number(value: Any) -> int:
    try:
        if value is None or value == "":
            return 0
        parsed = int(value)
    except (TypeError, ValueError):
        return 0
    return parsed if parsed > 0 else 0


def evaluate(
    last_change_number: Optional[int],
    current_change_number: Optional[int],
    threshold: Optional[int] = None,
    *,
    apps_per_change: Optional[int] = None,
    full_catalog_apps: Optional[int] = None,
    log_decision: bool = True,
) -> GapDecision:
    """
    Decide whether Steam will still serve an incremental delta.

    An unknown (zero) last change number never allows an incremental run and
    reports a gap of 0 with the full-catalog estimate. The estimate is only
    used for messages shown to people.
    """
    last = _safe_change_number(last_change_number)
    current = _safe_change_number(current_change_number)
    limit = DEPOT_GAP_THRESHOLD if threshold is None else max(0, int(threshold))
    ratio = DEPOT_APPS_PER_CHANGE if apps_per_change is None else max(0, int(apps_per_change))
    full_catalog = DEPOT_FULL_CATALOG_APPS if full_catalog_apps is None else max(0, int(full_catalog_apps))

    if last <= 0:
        gap = 0
        allow = False
        estimated = full_catalog
    else:
        gap = max(0, current - last)
        allow = gap <= limit
        estimated = min(gap * ratio, full_catalog)

    decision = GapDecision(
        allow_incremental=allow,
        gap=gap,
        estimated_affected_apps=estimated,
        last_change_number=last,
        current_change_number=current,
        threshold=limit,
    )

    if log_decision:
        logger.info(
            "gap_policy allow_incremental=%s last=%s current=%s gap=%s threshold=%s estimated_apps=%s",
            decision.allow_incremental,
            decision.last_change_number,
            decision.current_change_number,
            decision.gap,
            decision.threshold,
            decision.estimated_affected_apps,
        )
    return decision
