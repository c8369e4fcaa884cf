"""
Read-side views over a history snapshot.

These functions never touch the store; the API layer reads a snapshot once
and derives lists, lookups and dashboard summaries from it.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .history import AnalysisRecord, HistoryState, DEFAULT_HISTORY_MAX

DEFAULT_PAGE_LIMIT = 200
CRITICAL_SCORE_THRESHOLD = 60


def clamp(value: int, lower: int, upper: int) -> int:
    """Clamp value into [lower, upper]."""
    return min(max(value, lower), upper)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values, unlike round()'s banker's rounding."""
    return int(math.floor(value + 0.5))


@dataclass
class HistoryPage:
    """One page of a filtered, newest-first history listing."""

    records: List[AnalysisRecord]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "history": [record.to_dict() for record in self.records],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass
class HistorySummary:
    """Dashboard aggregate over the whole history."""

    total: int
    avg_score: int
    critical: int
    last_update: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "avgScore": self.avg_score,
            "critical": self.critical,
            "lastUpdate": self.last_update,
        }


def sort_newest_first(records: List[AnalysisRecord]) -> List[AnalysisRecord]:
    """Order by timestamp descending; equal timestamps keep storage order."""
    return sorted(records, key=lambda record: record.created_at, reverse=True)


def query_history(
    state: HistoryState,
    camera_id: Optional[str] = None,
    limit: int = DEFAULT_PAGE_LIMIT,
    offset: int = 0,
    history_max: int = DEFAULT_HISTORY_MAX,
) -> HistoryPage:
    """
    Filter, sort and paginate a history snapshot.

    Args:
        state: Snapshot returned by HistoryStore.read()
        camera_id: Exact-match camera filter, ignored when empty
        limit: Page size, clamped to [1, history_max]
        offset: Records to skip, clamped to >= 0
        history_max: Upper bound for limit

    Returns:
        HistoryPage whose total is the filtered count before paging
    """
    limit = clamp(limit, 1, max(history_max, 1))
    offset = max(offset, 0)

    records = state.history
    if camera_id:
        records = [record for record in records if record.camera_id == camera_id]

    ordered = sort_newest_first(records)
    return HistoryPage(
        records=ordered[offset:offset + limit],
        total=len(ordered),
        limit=limit,
        offset=offset,
    )


def find_record(state: HistoryState, record_id: str) -> Optional[AnalysisRecord]:
    """Return the record with the given id, or None."""
    for record in state.history:
        if record.id == record_id:
            return record
    return None


def summarize(state: HistoryState) -> HistorySummary:
    """
    Aggregate a snapshot for the dashboard header.

    avg_score is the mean health score rounded half-up (0 when empty);
    critical counts records scoring at or below CRITICAL_SCORE_THRESHOLD.
    """
    history = state.history
    total = len(history)
    if not total:
        return HistorySummary(total=0, avg_score=0, critical=0, last_update=None)

    avg_score = round_half_up(sum(record.health_score for record in history) / total)
    critical = sum(1 for record in history if record.health_score <= CRITICAL_SCORE_THRESHOLD)
    latest = sort_newest_first(history)[0]

    return HistorySummary(
        total=total,
        avg_score=avg_score,
        critical=critical,
        last_update=latest.timestamp or None,
    )
