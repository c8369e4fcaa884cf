"""
Analysis module for storing and querying herd analysis history.

This module provides the durable, serialized history store and the
read-side views (pagination, lookup, summary) the API layer serves.
"""

from .history import (
    AnalysisRecord,
    IdentifiedIssue,
    HistoryState,
    HistoryStore,
    create_seed_history,
    enforce_bound,
)
from .queries import HistoryPage, HistorySummary, query_history, find_record, summarize

__all__ = [
    "AnalysisRecord",
    "IdentifiedIssue",
    "HistoryState",
    "HistoryStore",
    "create_seed_history",
    "enforce_bound",
    "HistoryPage",
    "HistorySummary",
    "query_history",
    "find_record",
    "summarize",
]
