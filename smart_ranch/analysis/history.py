"""
Analysis history persistence layer.

This module stores cattle health analyses in a single JSON document,
newest first, bounded to a configured maximum length. All mutations go
through HistoryStore.update(), which runs them one at a time in submission
order and replaces the file atomically so readers never see a torn write.
"""

import asyncio
import inspect
import json
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import structlog

from ..exceptions import HistoryCorruptionError, HistoryReadError, HistoryWriteError

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_MAX = 500
DEFAULT_RAW_ANALYSIS = "Analysis complete."

# Sorts unparseable timestamps behind every real one
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Format an instant as ISO-8601 UTC with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp for ordering purposes.

    Naive values are treated as UTC. Missing or malformed values map to
    the oldest possible instant so they sort last in newest-first views.
    """
    if not isinstance(value, str) or not value:
        return _OLDEST
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return _OLDEST
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return default


def _to_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


@dataclass
class IdentifiedIssue:
    """A single visual problem spotted in the herd."""

    issue: str
    description: str = ""
    possible_causes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentifiedIssue":
        return cls(
            issue=str(data.get("issue") or ""),
            description=str(data.get("description") or ""),
            possible_causes=_to_str_list(data.get("possibleCauses")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue": self.issue,
            "description": self.description,
            "possibleCauses": list(self.possible_causes),
        }


@dataclass
class AnalysisRecord:
    """
    Represents one completed herd analysis.

    Attributes:
        id: Opaque unique identifier, assigned once at creation
        timestamp: ISO-8601 UTC creation instant
        camera_id: Originating camera, used only for filtering
        cattle_count: Number of animals seen (non-negative)
        health_score: Overall visual health score, 0-100
        identified_issues: Problems observed, in provider order
        recommendations: Suggested actions, in provider order
        raw_analysis: Free-text summary

    Example:
        >>> record = AnalysisRecord.from_provider_result(
        ...     {"cattleCount": 14, "healthScore": 88, "summary": "Calm herd."},
        ...     camera_id="cam-01",
        ... )
        >>> record.to_dict()["healthScore"]
        88
    """

    id: str
    timestamp: str
    camera_id: Optional[str] = None
    cattle_count: int = 0
    health_score: int = 0
    identified_issues: List[IdentifiedIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    raw_analysis: str = DEFAULT_RAW_ANALYSIS

    def __post_init__(self):
        """Normalize numeric fields into their valid ranges."""
        self.cattle_count = max(0, _to_int(self.cattle_count))
        self.health_score = min(100, max(0, _to_int(self.health_score)))

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @classmethod
    def from_provider_result(
        cls,
        result: Optional[Dict[str, Any]],
        camera_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "AnalysisRecord":
        """
        Create a new record from a vision provider payload.

        Any field the provider left out, or returned with the wrong type,
        falls back to its default.

        Args:
            result: Provider payload (cattleCount, healthScore,
                identifiedIssues, recommendations, summary)
            camera_id: Camera the frame came from
            now: Creation instant, defaults to the current time

        Returns:
            A fresh AnalysisRecord with a new id
        """
        result = result if isinstance(result, dict) else {}
        issues = result.get("identifiedIssues")
        summary = result.get("summary")

        return cls(
            id=str(uuid.uuid4()),
            timestamp=utc_timestamp(now),
            camera_id=camera_id or None,
            cattle_count=result.get("cattleCount"),
            health_score=result.get("healthScore"),
            identified_issues=[
                IdentifiedIssue.from_dict(item)
                for item in (issues if isinstance(issues, list) else [])
                if isinstance(item, dict)
            ],
            recommendations=_to_str_list(result.get("recommendations")),
            raw_analysis=summary if isinstance(summary, str) and summary else DEFAULT_RAW_ANALYSIS,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisRecord":
        """Rebuild a record from its persisted JSON form."""
        issues = data.get("identifiedIssues")
        raw = data.get("rawAnalysis")
        return cls(
            id=str(data.get("id") or ""),
            timestamp=str(data.get("timestamp") or ""),
            camera_id=data.get("cameraId") or None,
            cattle_count=data.get("cattleCount"),
            health_score=data.get("healthScore"),
            identified_issues=[
                IdentifiedIssue.from_dict(item)
                for item in (issues if isinstance(issues, list) else [])
                if isinstance(item, dict)
            ],
            recommendations=_to_str_list(data.get("recommendations")),
            raw_analysis=raw if isinstance(raw, str) and raw else DEFAULT_RAW_ANALYSIS,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase dictionary used on disk and over HTTP."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "cameraId": self.camera_id,
            "cattleCount": self.cattle_count,
            "healthScore": self.health_score,
            "identifiedIssues": [issue.to_dict() for issue in self.identified_issues],
            "recommendations": list(self.recommendations),
            "rawAnalysis": self.raw_analysis,
        }


@dataclass
class HistoryState:
    """The persisted aggregate: analysis records, newest first."""

    history: List[AnalysisRecord] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "HistoryState":
        """
        Validate and load a parsed JSON document.

        Raises:
            HistoryCorruptionError: If the document is not an object with a
                list under "history"
        """
        if not isinstance(data, dict):
            raise HistoryCorruptionError(
                "History document must be a JSON object",
                details={"found": type(data).__name__},
            )
        entries = data.get("history")
        if not isinstance(entries, list):
            raise HistoryCorruptionError(
                "History document must hold a list under 'history'",
                details={"found": type(entries).__name__},
            )

        records = []
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                logger.warning("history_entry_skipped", position=position, found=type(entry).__name__)
                continue
            records.append(AnalysisRecord.from_dict(entry))
        return cls(history=records)

    def to_dict(self) -> Dict[str, Any]:
        return {"history": [record.to_dict() for record in self.history]}

    def prepend(self, record: AnalysisRecord) -> "HistoryState":
        """Return a new state with record placed at the head."""
        return HistoryState(history=[record, *self.history])


def enforce_bound(state: HistoryState, history_max: int) -> HistoryState:
    """
    Drop the oldest records so at most history_max remain.

    Over-long histories are stably sorted newest-first by timestamp before
    truncation, so eviction never depends on how writers ordered the list.
    States within the bound are returned untouched.
    """
    if len(state.history) <= history_max:
        return state
    ordered = sorted(state.history, key=lambda record: record.created_at, reverse=True)
    dropped = len(ordered) - history_max
    logger.debug("history_truncated", dropped=dropped, history_max=history_max)
    return HistoryState(history=ordered[:history_max])


def create_seed_history(now: Optional[datetime] = None) -> HistoryState:
    """Example records written the first time the store is opened."""
    now = now or datetime.now(timezone.utc)
    return HistoryState(history=[
        AnalysisRecord(
            id="seed-1",
            camera_id="cam-01",
            timestamp=utc_timestamp(now - timedelta(minutes=45)),
            cattle_count=15,
            health_score=94,
            recommendations=["Keep current routine"],
            raw_analysis="Herd grazing normally. No visual signs of stress.",
        ),
        AnalysisRecord(
            id="seed-2",
            camera_id="cam-01",
            timestamp=utc_timestamp(now - timedelta(hours=4)),
            cattle_count=14,
            health_score=88,
            identified_issues=[
                IdentifiedIssue(
                    issue="Mild agitation",
                    description="One animal shows repetitive head movement and frequent walking without grazing.",
                    possible_causes=["Mild heat stress", "Insect pressure", "Early physical discomfort"],
                ),
            ],
            recommendations=["Watch the isolated animal"],
            raw_analysis="Most of the herd is calm, but one animal is moving excessively.",
        ),
        AnalysisRecord(
            id="seed-3",
            camera_id="cam-02",
            timestamp=utc_timestamp(now - timedelta(minutes=30)),
            cattle_count=8,
            health_score=91,
            raw_analysis="Animals drinking water regularly.",
        ),
    ])


Mutator = Callable[[HistoryState], Union[Optional[HistoryState], Awaitable[Optional[HistoryState]]]]


class HistoryStore:
    """
    Durable, size-bounded analysis log backed by one JSON file.

    The store owns an async mutex that serializes every update(); since
    asyncio.Lock wakes waiters in FIFO order, mutations apply strictly in
    submission order and each one starts from its predecessor's result.

    Example:
        >>> store = HistoryStore("data/history.json", history_max=500)
        >>> record = AnalysisRecord.from_provider_result(result, camera_id="cam-01")
        >>> state = await store.update(lambda s: s.prepend(record))
    """

    def __init__(
        self,
        path: Union[str, Path],
        history_max: int = DEFAULT_HISTORY_MAX,
        lock: Optional[asyncio.Lock] = None,
    ):
        """
        Initialize the history store.

        Args:
            path: Location of the JSON history file
            history_max: Maximum number of records kept
            lock: Async mutex serializing updates; injectable for tests
        """
        if history_max < 1:
            raise ValueError("history_max must be at least 1")
        self.path = Path(path)
        self.history_max = history_max
        self._lock = lock or asyncio.Lock()
        self._seed_lock = asyncio.Lock()

        logger.info("history_store_initialized", path=str(self.path), history_max=history_max)

    async def read(self) -> HistoryState:
        """
        Load the current persisted state.

        Seeds the file on first access. A corrupted file reads as an empty
        history and is logged rather than raised.

        Returns:
            A freshly parsed HistoryState

        Raises:
            HistoryReadError: If the file exists but cannot be read
            HistoryWriteError: If the seed cannot be persisted
        """
        await self._ensure_seeded()

        try:
            raw = await asyncio.to_thread(self.path.read_bytes)
        except FileNotFoundError:
            # Removed after seeding; treat like a fresh store
            await self._ensure_seeded()
            raw = await asyncio.to_thread(self.path.read_bytes)
        except OSError as e:
            raise HistoryReadError("Failed to read history file", path=str(self.path), cause=e) from e

        # UnicodeDecodeError and JSONDecodeError are ValueErrors; deep nesting raises RecursionError
        try:
            return HistoryState.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, RecursionError, HistoryCorruptionError) as e:
            logger.warning("history_corrupted", path=str(self.path), error=str(e))
            return HistoryState()

    async def write(self, state: HistoryState) -> None:
        """
        Persist state as the canonical history.

        The document is written to a temporary file beside the target and
        moved into place with os.replace(), which is atomic on POSIX and
        Windows.

        Raises:
            HistoryWriteError: If the file cannot be written or replaced
        """
        payload = json.dumps(enforce_bound(state, self.history_max).to_dict(), indent=2, ensure_ascii=False)
        await asyncio.to_thread(self._write_atomic, payload)

    async def update(self, mutator: Mutator) -> HistoryState:
        """
        Apply mutator to the current state and persist the result.

        The mutator may be sync or async. Returning None keeps the current
        state. Exceptions raised by the mutator propagate to this caller
        only; later updates still run.

        Args:
            mutator: Function from the current HistoryState to the next one

        Returns:
            The persisted post-mutation state
        """
        async with self._lock:
            current = await self.read()
            outcome = mutator(current)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            next_state = enforce_bound(outcome if outcome is not None else current, self.history_max)
            await self.write(next_state)
            return next_state

    async def _ensure_seeded(self) -> None:
        if await asyncio.to_thread(self.path.exists):
            return
        async with self._seed_lock:
            if await asyncio.to_thread(self.path.exists):
                return
            seed = create_seed_history()
            await self.write(seed)
            logger.info("history_seeded", path=str(self.path), records=len(seed.history))

    def _write_atomic(self, payload: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
        except OSError as e:
            raise HistoryWriteError("Failed to create history temp file", path=str(self.path), cause=e) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except OSError as e:
            try:
                os.unlink(temp_path)
            except OSError:
                logger.debug("history_temp_cleanup_failed", temp_path=temp_path)
            raise HistoryWriteError("Failed to write history file", path=str(self.path), cause=e) from e
