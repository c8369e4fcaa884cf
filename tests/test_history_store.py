"""
Tests for HistoryStore persistence and the serialized update path.

Covers:
- Seeding on first access
- Read-after-write
- Corruption recovery
- FIFO ordering of concurrent updates
- Mutator failures not wedging the queue
- Size bound and eviction order
- Atomic replace and I/O error propagation
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from smart_ranch.analysis.history import (
    AnalysisRecord,
    HistoryState,
    HistoryStore,
    IdentifiedIssue,
    utc_timestamp,
)
from smart_ranch.exceptions import HistoryWriteError

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_record(record_id: str, minutes: int = 0, camera_id: str = "cam-01", score: int = 80) -> AnalysisRecord:
    return AnalysisRecord(
        id=record_id,
        timestamp=utc_timestamp(BASE_TIME + timedelta(minutes=minutes)),
        camera_id=camera_id,
        cattle_count=10,
        health_score=score,
        raw_analysis=f"analysis {record_id}",
    )


def prepend_mutator(record: AnalysisRecord, delay: float = 0.0):
    async def mutator(state: HistoryState) -> HistoryState:
        if delay:
            await asyncio.sleep(delay)
        return state.prepend(record)
    return mutator


@pytest.fixture
def history_path(tmp_path):
    return tmp_path / "data" / "history.json"


class TestSeeding:
    """Test seed-on-first-access behaviour."""

    @pytest.mark.asyncio
    async def test_first_read_seeds_history(self, history_path):
        """A store with no file should return a non-empty seeded history."""
        store = HistoryStore(history_path)

        state = await store.read()

        assert len(state.history) == 3
        assert {record.id for record in state.history} == {"seed-1", "seed-2", "seed-3"}
        assert history_path.exists()

    @pytest.mark.asyncio
    async def test_existence_check_runs_in_worker_thread(self, history_path):
        """The seed check should go through asyncio.to_thread like other file I/O."""
        store = HistoryStore(history_path)
        real_to_thread = asyncio.to_thread

        with patch("smart_ranch.analysis.history.asyncio.to_thread", side_effect=real_to_thread) as to_thread:
            await store.read()

        offloaded = [getattr(call.args[0], "__name__", "") for call in to_thread.call_args_list]
        assert "exists" in offloaded

    @pytest.mark.asyncio
    async def test_seed_is_persisted_not_regenerated(self, history_path):
        """A second read should return exactly the persisted seed."""
        store = HistoryStore(history_path)

        first = await store.read()
        second = await store.read()

        assert first == second

    @pytest.mark.asyncio
    async def test_seed_not_applied_over_existing_file(self, history_path):
        """An existing (even empty) history should never be reseeded."""
        store = HistoryStore(history_path)
        await store.write(HistoryState())

        state = await store.read()

        assert state.history == []

    @pytest.mark.asyncio
    async def test_seed_contains_issue_details(self, history_path):
        """Seed records should carry structured issues."""
        store = HistoryStore(history_path)

        state = await store.read()
        seed_2 = next(record for record in state.history if record.id == "seed-2")

        assert isinstance(seed_2.identified_issues[0], IdentifiedIssue)
        assert len(seed_2.identified_issues[0].possible_causes) == 3


class TestReadWrite:
    """Test the read/write primitives."""

    @pytest.mark.asyncio
    async def test_read_after_write_round_trip(self, history_path):
        """write(S) followed by read() should return a value equal to S."""
        store = HistoryStore(history_path)
        record = make_record("r1")
        record.identified_issues = [
            IdentifiedIssue(issue="Lameness", description="Left hind leg", possible_causes=["Hoof rot"]),
        ]
        record.recommendations = ["Call the vet"]
        state = HistoryState(history=[record, make_record("r2", minutes=-5, camera_id=None)])

        await store.write(state)

        assert await store.read() == state

    @pytest.mark.asyncio
    async def test_written_document_layout(self, history_path):
        """The file should hold a single 'history' array of camelCase records."""
        store = HistoryStore(history_path)
        await store.write(HistoryState(history=[make_record("r1")]))

        document = json.loads(history_path.read_text(encoding="utf-8"))

        assert list(document.keys()) == ["history"]
        assert document["history"][0]["id"] == "r1"
        assert document["history"][0]["healthScore"] == 80
        assert document["history"][0]["cameraId"] == "cam-01"

    @pytest.mark.asyncio
    async def test_read_returns_independent_snapshots(self, history_path):
        """Mutating one read result must not leak into the next read."""
        store = HistoryStore(history_path)
        await store.write(HistoryState(history=[make_record("r1")]))

        snapshot = await store.read()
        snapshot.history.clear()

        assert len((await store.read()).history) == 1

    @pytest.mark.asyncio
    async def test_write_leaves_no_temp_files(self, history_path):
        """Successful writes should not leave temp files beside the history."""
        store = HistoryStore(history_path)
        await store.write(HistoryState(history=[make_record("r1")]))

        leftovers = [p for p in history_path.parent.iterdir() if p.name != "history.json"]

        assert leftovers == []


class TestCorruptionRecovery:
    """Test that unparseable history reads as empty without raising."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [
        b"{not json",
        b'{"history": "not-an-array"}',
        b"[1, 2, 3]",
        b'{"records": []}',
        b"",
        b'{"history": [\xff\xfe]}',
        b"[" * 100000 + b"]" * 100000,
    ], ids=["invalid-json", "history-not-list", "top-level-list", "missing-key", "empty", "invalid-utf8", "deep-nesting"])
    async def test_corrupted_file_reads_empty(self, history_path, content):
        """Undecodable bytes, invalid JSON or the wrong shape should recover to an empty history."""
        history_path.parent.mkdir(parents=True)
        history_path.write_bytes(content)
        store = HistoryStore(history_path)

        state = await store.read()

        assert state == HistoryState(history=[])

    @pytest.mark.asyncio
    async def test_corrupted_file_is_not_reseeded(self, history_path):
        """Recovery should not overwrite the corrupted file with seed data."""
        history_path.parent.mkdir(parents=True)
        history_path.write_text("{not json", encoding="utf-8")
        store = HistoryStore(history_path)

        await store.read()

        assert history_path.read_text(encoding="utf-8") == "{not json"

    @pytest.mark.asyncio
    async def test_non_object_entries_are_skipped(self, history_path):
        """Entries that are not objects should be dropped, keeping valid ones."""
        history_path.parent.mkdir(parents=True)
        history_path.write_text(
            json.dumps({"history": ["junk", make_record("r1").to_dict(), 42]}),
            encoding="utf-8",
        )
        store = HistoryStore(history_path)

        state = await store.read()

        assert [record.id for record in state.history] == ["r1"]

    @pytest.mark.asyncio
    async def test_update_after_corruption_rewrites_valid_file(self, history_path):
        """The next update should start from empty and persist a valid document."""
        history_path.parent.mkdir(parents=True)
        history_path.write_text("{not json", encoding="utf-8")
        store = HistoryStore(history_path)

        state = await store.update(prepend_mutator(make_record("r1")))

        assert [record.id for record in state.history] == ["r1"]
        assert json.loads(history_path.read_text(encoding="utf-8"))["history"][0]["id"] == "r1"

    @pytest.mark.asyncio
    async def test_update_after_undecodable_bytes_recovers(self, history_path):
        """A file with invalid UTF-8 should not block new records."""
        history_path.parent.mkdir(parents=True)
        history_path.write_bytes(b'{"history": [\xff\xfe]}')
        store = HistoryStore(history_path)

        state = await store.update(prepend_mutator(make_record("r1")))

        assert [record.id for record in state.history] == ["r1"]
        assert [record.id for record in (await store.read()).history] == ["r1"]


class TestSerializedUpdates:
    """Test FIFO serialization of update()."""

    @pytest.mark.asyncio
    async def test_concurrent_updates_apply_in_submission_order(self, history_path):
        """Slow early mutators must not be overtaken by fast later ones."""
        store = HistoryStore(history_path, history_max=50)
        await store.write(HistoryState())

        delays = [0.05, 0.0, 0.02, 0.0, 0.01]
        results = await asyncio.gather(*(
            store.update(prepend_mutator(make_record(f"r{i}", minutes=i), delay))
            for i, delay in enumerate(delays)
        ))

        final = await store.read()
        assert [record.id for record in final.history] == ["r4", "r3", "r2", "r1", "r0"]
        assert [len(result.history) for result in results] == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_second_update_observes_first_result(self, history_path):
        """A queued update should start from its predecessor's state, not a stale read."""
        store = HistoryStore(history_path)
        await store.write(HistoryState())
        seen_sizes = []

        def make_counter(record_id: str, delay: float):
            async def mutator(state: HistoryState) -> HistoryState:
                seen_sizes.append(len(state.history))
                await asyncio.sleep(delay)
                return state.prepend(make_record(record_id))
            return mutator

        await asyncio.gather(
            store.update(make_counter("a", 0.03)),
            store.update(make_counter("b", 0.0)),
        )

        assert seen_sizes == [0, 1]

    @pytest.mark.asyncio
    async def test_sync_mutator_supported(self, history_path):
        """Plain functions should work as mutators."""
        store = HistoryStore(history_path)
        await store.write(HistoryState())

        state = await store.update(lambda s: s.prepend(make_record("sync")))

        assert [record.id for record in state.history] == ["sync"]

    @pytest.mark.asyncio
    async def test_mutator_returning_none_keeps_state(self, history_path):
        """A mutator returning None should leave the history unchanged."""
        store = HistoryStore(history_path)
        await store.write(HistoryState(history=[make_record("r1")]))

        state = await store.update(lambda s: None)

        assert [record.id for record in state.history] == ["r1"]

    @pytest.mark.asyncio
    async def test_failing_mutator_does_not_wedge_queue(self, history_path):
        """A mutator error reaches its own caller only; later updates still run."""
        store = HistoryStore(history_path)
        await store.write(HistoryState())

        async def boom(state: HistoryState) -> HistoryState:
            raise RuntimeError("mutator exploded")

        results = await asyncio.gather(
            store.update(prepend_mutator(make_record("a", minutes=1))),
            store.update(boom),
            store.update(prepend_mutator(make_record("b", minutes=2))),
            return_exceptions=True,
        )

        assert isinstance(results[1], RuntimeError)
        assert [record.id for record in (await store.read()).history] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_injected_lock_is_used(self, history_path):
        """Updates should serialize through the injected lock."""

        class RecordingLock(asyncio.Lock):
            def __init__(self):
                super().__init__()
                self.acquisitions = 0

            async def acquire(self):
                self.acquisitions += 1
                return await super().acquire()

        lock = RecordingLock()
        store = HistoryStore(history_path, lock=lock)

        await store.update(lambda s: s)
        await store.update(lambda s: s)

        assert lock.acquisitions == 2
        assert not lock.locked()


class TestSizeBound:
    """Test the history_max invariant and eviction order."""

    @pytest.mark.asyncio
    async def test_bound_holds_after_every_update(self, history_path):
        """len(history) should never exceed history_max."""
        store = HistoryStore(history_path, history_max=3)
        await store.write(HistoryState())

        for i in range(6):
            state = await store.update(prepend_mutator(make_record(f"r{i}", minutes=i)))
            assert len(state.history) <= 3

        assert [record.id for record in (await store.read()).history] == ["r5", "r4", "r3"]

    @pytest.mark.asyncio
    async def test_eviction_drops_oldest_by_timestamp(self, history_path):
        """Appending instead of prepending must not evict the newest record."""
        store = HistoryStore(history_path, history_max=2)
        await store.write(HistoryState(history=[make_record("mid", minutes=5), make_record("old", minutes=0)]))

        def append_newest(state: HistoryState) -> HistoryState:
            return HistoryState(history=[*state.history, make_record("new", minutes=10)])

        state = await store.update(append_newest)

        assert [record.id for record in state.history] == ["new", "mid"]

    @pytest.mark.asyncio
    async def test_within_bound_order_is_preserved(self, history_path):
        """States inside the bound should be persisted in the given order."""
        store = HistoryStore(history_path, history_max=5)
        state = HistoryState(history=[make_record("old", minutes=0), make_record("new", minutes=10)])

        await store.write(state)

        assert [record.id for record in (await store.read()).history] == ["old", "new"]

    def test_rejects_non_positive_bound(self, history_path):
        """history_max below 1 is a programming error."""
        with pytest.raises(ValueError):
            HistoryStore(history_path, history_max=0)


class TestWriteFailures:
    """Test I/O error propagation."""

    @pytest.mark.asyncio
    async def test_write_failure_raises_and_cleans_up(self, history_path):
        """A failed replace should raise HistoryWriteError and remove the temp file."""
        store = HistoryStore(history_path)
        await store.write(HistoryState(history=[make_record("r1")]))

        with patch("smart_ranch.analysis.history.os.replace", side_effect=OSError("read-only filesystem")):
            with pytest.raises(HistoryWriteError) as exc_info:
                await store.write(HistoryState())

        assert isinstance(exc_info.value.cause, OSError)
        assert [p.name for p in history_path.parent.iterdir()] == ["history.json"]
        assert [record.id for record in (await store.read()).history] == ["r1"]

    @pytest.mark.asyncio
    async def test_update_propagates_write_failure_and_recovers(self, history_path):
        """update() should surface I/O errors and keep working once the disk recovers."""
        store = HistoryStore(history_path)
        await store.write(HistoryState())

        with patch("smart_ranch.analysis.history.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(HistoryWriteError):
                await store.update(prepend_mutator(make_record("lost")))

        state = await store.update(prepend_mutator(make_record("kept")))

        assert [record.id for record in state.history] == ["kept"]
